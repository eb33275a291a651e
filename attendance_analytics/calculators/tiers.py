"""
Attendance Tier / Risk Classifier

Maps an attendance rate to a support tier and risk label. The same
thresholds apply to individual students and to grade or district rates:

    rate >= 95        Tier 1, low risk
    90 <= rate < 95   Tier 2, medium risk
    rate < 90         Tier 3, high risk (chronic absenteeism)
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional

TIER1_THRESHOLD = 95.0
TIER2_THRESHOLD = 90.0


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class TierClassification:
    """Tier (1-3) and risk label for one attendance rate."""

    attendance_rate: float
    tier: int
    risk_level: RiskLevel

    @property
    def is_chronic(self) -> bool:
        return self.tier == 3

    def to_dict(self) -> dict:
        return {
            "attendance_rate": self.attendance_rate,
            "tier": self.tier,
            "risk_level": self.risk_level.value,
        }


def classify_attendance(
    attendance_rate: float,
    tier1_threshold: float = TIER1_THRESHOLD,
    tier2_threshold: float = TIER2_THRESHOLD,
) -> TierClassification:
    """
    Classify an attendance rate percentage.

    Args:
        attendance_rate: Percentage between 0 and 100
        tier1_threshold: Lowest rate counted as Tier 1
        tier2_threshold: Lowest rate counted as Tier 2

    Returns:
        TierClassification

    Raises:
        ValueError: If the rate is outside 0-100

    Example:
        >>> classify_attendance(85.0).tier
        3
        >>> classify_attendance(95.0).risk_level.value
        'low'
    """
    if attendance_rate is None or not 0 <= attendance_rate <= 100:
        raise ValueError(f"Attendance rate must be between 0 and 100, got {attendance_rate}")

    if attendance_rate >= tier1_threshold:
        return TierClassification(attendance_rate, 1, RiskLevel.LOW)
    if attendance_rate >= tier2_threshold:
        return TierClassification(attendance_rate, 2, RiskLevel.MEDIUM)
    return TierClassification(attendance_rate, 3, RiskLevel.HIGH)


def student_attendance_rate(days_present: int, days_recorded: int) -> Optional[float]:
    """Percentage of recorded days present, or None with no records."""
    if days_recorded <= 0:
        return None
    return days_present / days_recorded * 100


def count_tiers(
    rates: Iterable[Optional[float]],
    tier1_threshold: float = TIER1_THRESHOLD,
    tier2_threshold: float = TIER2_THRESHOLD,
) -> Dict[str, int]:
    """
    Count students per tier.

    A None rate (no attendance recorded yet) counts as Tier 1.
    """
    counts = {"tier1": 0, "tier2": 0, "tier3": 0}
    for rate in rates:
        if rate is None:
            counts["tier1"] += 1
            continue
        tier = classify_attendance(rate, tier1_threshold, tier2_threshold).tier
        counts[f"tier{tier}"] += 1
    return counts
