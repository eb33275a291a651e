"""
Cumulative Total Calculator

cumulative_absences on a summary row is the sum of daily_absences over the
school days of its series (one school and grade, or one district grade)
up to and including the row's date.

The whole series is walked, not just the rows up to the day that changed:
a backfilled day shifts every later total, and rewriting them keeps each
series non-decreasing.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Sequence, Tuple

from ..database.models import DistrictAttendanceTimelineSummary, GradeAttendanceTimelineSummary
from ..database.store import AttendanceStore
from ..exceptions import UpstreamReadError, UpstreamWriteError
from .aggregation import CUMULATIVE_COLUMN, with_running_totals

logger = logging.getLogger(__name__)

GRADE_SERIES_KEYS = ("school_id", "grade_level")
DISTRICT_SERIES_KEYS = ("grade_level",)


@dataclass
class CumulativeResult:
    rows_updated: int = 0
    series_recomputed: int = 0
    errors: List[str] = field(default_factory=list)


def cumulative_updates(rows: Sequence[Dict], series_keys: Sequence[str]) -> List[Dict]:
    """
    Primary-key updates for rows whose stored running total is stale.

    Args:
        rows: Summary rows with id, summary_date, daily_absences and
            cumulative_absences, school days only
        series_keys: Columns identifying one series

    Returns:
        [{"id": ..., "cumulative_absences": ...}] for changed rows only
    """
    updates = []
    for row in with_running_totals(rows, series_keys, total_column="expected"):
        if row.get(CUMULATIVE_COLUMN) != row["expected"]:
            updates.append({"id": row["id"], CUMULATIVE_COLUMN: row["expected"]})
    return updates


class CumulativeTotalCalculator:
    """Recompute running absence totals for the series touched by a write."""

    def __init__(self, store: AttendanceStore):
        self.store = store

    def recalculate(
        self,
        school_year: str,
        grade_series: Iterable[Tuple[str, int]] = (),
        district_grades: Iterable[int] = (),
    ) -> CumulativeResult:
        """
        Recompute cumulative_absences for the given series.

        Args:
            school_year: Series never cross school years
            grade_series: (school_id, grade_level) pairs to recompute
            district_grades: District grade levels to recompute

        Returns:
            CumulativeResult; a failed series keeps its previous values
        """
        result = CumulativeResult()
        grade_series = sorted(set(grade_series))
        district_grades = sorted(set(district_grades))

        if grade_series:
            self._recalculate_model(
                result,
                GradeAttendanceTimelineSummary,
                GRADE_SERIES_KEYS,
                set(grade_series),
                lambda: self.store.select_grade_summaries(
                    school_year,
                    school_ids=sorted({school_id for school_id, _ in grade_series}),
                    grades=sorted({grade for _, grade in grade_series}),
                ),
            )
        if district_grades:
            self._recalculate_model(
                result,
                DistrictAttendanceTimelineSummary,
                DISTRICT_SERIES_KEYS,
                {(grade,) for grade in district_grades},
                lambda: self.store.select_district_summaries(school_year, grades=district_grades),
            )
        return result

    def _recalculate_model(self, result, model, series_keys, wanted, fetch) -> None:
        label = model.__tablename__
        try:
            rows = fetch()
        except UpstreamReadError as e:
            result.errors.append(f"Failed to read {label} for cumulative totals: {e.message}")
            return

        # The select filters schools and grades independently
        rows = [row for row in rows if tuple(row[k] for k in series_keys) in wanted]
        updates = cumulative_updates(rows, series_keys)
        result.series_recomputed += len(wanted)
        if not updates:
            return

        try:
            with self.store.session.begin_nested():
                result.rows_updated += self.store.update_cumulative_absences(model, updates)
        except UpstreamWriteError as e:
            result.errors.append(f"Failed to update cumulative totals in {label}: {e.message}")
            return

        logger.debug(f"Updated cumulative_absences on {len(updates)} {label} row(s)")
