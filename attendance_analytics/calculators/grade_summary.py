"""
Grade-level attendance summaries for dashboards.

Each grade gets a year-to-date attendance rate, a tier breakdown of its
students, a monthly trend and a trend direction.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

import pandas as pd

from ..database.store import AttendanceStore
from ..utilities.config import TimelineSettings
from ..utilities.school_calendar import school_year_bounds
from .aggregation import calculate_rates
from .tiers import classify_attendance, count_tiers, student_attendance_rate

logger = logging.getLogger(__name__)

# Month-over-month rate change (percentage points) that counts as a trend
TREND_THRESHOLD = 1.0


def grade_display_name(grade_level: int) -> str:
    """
    Human-readable grade name.

    Examples:
        >>> grade_display_name(-1)
        'Pre-K'
        >>> grade_display_name(0)
        'Kindergarten'
        >>> grade_display_name(7)
        'Grade 7'
    """
    if grade_level == -1:
        return "Pre-K"
    if grade_level == 0:
        return "Kindergarten"
    return f"Grade {grade_level}"


def monthly_attendance_rates(rows: Sequence[Dict]) -> List[Dict]:
    """
    Attendance rate per calendar month from daily summary rows.

    Returns:
        [{"month": "2024-09", "attendance_rate": 93.5}, ...] in month order
    """
    if not rows:
        return []
    df = pd.DataFrame.from_records(list(rows), columns=["summary_date", "students_present", "total_students"])
    df["month"] = pd.to_datetime(df["summary_date"]).dt.to_period("M").astype(str)
    totals = df.groupby("month", sort=True)[["students_present", "total_students"]].sum()

    trend = []
    for month, row in totals.iterrows():
        rate, _ = calculate_rates(int(row["students_present"]), int(row["total_students"]))
        trend.append({"month": month, "attendance_rate": rate})
    return trend


def calculate_trend(monthly: Sequence[Dict]) -> str:
    """'up', 'down' or 'stable' from the last two months."""
    if len(monthly) < 2:
        return "stable"
    change = monthly[-1]["attendance_rate"] - monthly[-2]["attendance_rate"]
    if change > TREND_THRESHOLD:
        return "up"
    if change < -TREND_THRESHOLD:
        return "down"
    return "stable"


def _last_updated(rows: Sequence[Dict]) -> Optional[str]:
    stamps = [row["updated_at"] for row in rows if row.get("updated_at")]
    return max(stamps).isoformat() if stamps else None


@dataclass
class GradeLevelSummary:
    grade_level: int
    grade_name: str
    school_id: Optional[str]
    school_year: str
    total_students: int
    attendance_rate: float
    chronic_absentees: int
    tier1: int
    tier2: int
    tier3: int
    tier: int
    risk_level: str
    trend: str
    monthly_trend: List[Dict] = field(default_factory=list)
    last_updated: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class GradeSummaryBuilder:
    """Build GradeLevelSummary rows for a school or the whole district."""

    def __init__(self, store: AttendanceStore, settings: Optional[TimelineSettings] = None):
        self.store = store
        self.settings = settings or TimelineSettings()

    def build(
        self,
        school_id: Optional[str],
        school_year: str,
        as_of: Optional[date] = None,
    ) -> List[GradeLevelSummary]:
        """
        Summaries per grade, ordered by grade level.

        Args:
            school_id: One school, or None for the district
            school_year: School year to summarize
            as_of: Last date included (defaults to the end of the school year)
        """
        year_start, year_end = school_year_bounds(school_year, self.settings)
        end = min(as_of, year_end) if as_of else year_end
        school_ids = [school_id] if school_id else None

        students = self.store.select_students(school_id)
        totals = self.store.select_student_totals(school_year, year_start, end, school_ids=school_ids)
        daily_rows = self.store.select_grade_summaries(
            school_year, year_start, end, school_ids=school_ids
        )

        # Enrolled students without attendance yet have no rate (Tier 1)
        student_grades: Dict[str, int] = {s["id"]: s["grade_level"] for s in students}
        rates: Dict[str, Optional[float]] = {s["id"]: None for s in students}
        present_by_grade: Dict[int, int] = {}
        recorded_by_grade: Dict[int, int] = {}
        for row in totals:
            student_grades[row["student_id"]] = row["grade_level"]
            rates[row["student_id"]] = student_attendance_rate(
                int(row["days_present"]), int(row["days_recorded"])
            )
            grade = row["grade_level"]
            present_by_grade[grade] = present_by_grade.get(grade, 0) + int(row["days_present"])
            recorded_by_grade[grade] = recorded_by_grade.get(grade, 0) + int(row["days_recorded"])

        rows_by_grade: Dict[int, List[Dict]] = {}
        for row in daily_rows:
            rows_by_grade.setdefault(row["grade_level"], []).append(row)

        summaries = []
        for grade in sorted(set(student_grades.values())):
            grade_rates = [rates[sid] for sid, g in student_grades.items() if g == grade]
            tiers = count_tiers(
                grade_rates, self.settings.tier1_threshold, self.settings.tier2_threshold
            )
            recorded = recorded_by_grade.get(grade, 0)
            rate = round(present_by_grade.get(grade, 0) / recorded * 100, 1) if recorded else 100.0
            classification = classify_attendance(
                rate, self.settings.tier1_threshold, self.settings.tier2_threshold
            )
            monthly = monthly_attendance_rates(rows_by_grade.get(grade, []))
            summaries.append(GradeLevelSummary(
                grade_level=grade,
                grade_name=grade_display_name(grade),
                school_id=school_id,
                school_year=school_year,
                total_students=len(grade_rates),
                attendance_rate=rate,
                chronic_absentees=tiers["tier3"],
                tier1=tiers["tier1"],
                tier2=tiers["tier2"],
                tier3=tiers["tier3"],
                tier=classification.tier,
                risk_level=classification.risk_level.value,
                trend=calculate_trend(monthly),
                monthly_trend=monthly,
                last_updated=_last_updated(rows_by_grade.get(grade, [])),
            ))

        logger.debug(f"Built {len(summaries)} grade summaries for {school_id or 'district'} {school_year}")
        return summaries
