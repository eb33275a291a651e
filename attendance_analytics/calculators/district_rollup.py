"""
District Rollup Engine

Sums the grade summaries of every school into one district row per grade
for a date. District rows are always derivable from the grade rows.
"""

import logging
from typing import Dict, List, Sequence

from ..database.models import DistrictAttendanceTimelineSummary
from ..database.store import AttendanceStore
from ..exceptions import UpstreamReadError
from ..utilities.school_calendar import DateLike, parse_date
from .aggregation import aggregate_counts, summaries_to_count_frame
from .results import BatchWriteResult, write_batch

logger = logging.getLogger(__name__)


def rollup_grade_rows(
    rows: Sequence[Dict],
    keys: Sequence[str] = ("summary_date", "grade_level"),
) -> List[Dict]:
    """
    Aggregate grade summary rows across schools.

    Counts (and cumulative_absences when present) are summed per key and
    rates recomputed from the sums. Each result carries schools_included
    and schools_count.
    """
    if not rows:
        return []
    return aggregate_counts(summaries_to_count_frame(rows), list(keys), track_schools=True)


class DistrictRollupEngine:
    """Write DistrictAttendanceTimelineSummary rows for one date."""

    def __init__(self, store: AttendanceStore):
        self.store = store

    def rollup(self, target_date: DateLike, school_year: str) -> BatchWriteResult:
        """
        Roll the grade summaries of a date up to the district.

        Must run after the daily aggregation of the same date; it reads
        whatever grade rows exist at call time.
        """
        summary_date = parse_date(target_date, "target_date")
        try:
            grade_rows = self.store.select_grade_summaries(
                school_year, start_date=summary_date, end_date=summary_date
            )
        except UpstreamReadError as e:
            return BatchWriteResult(
                errors=[f"Failed to read grade summaries for {summary_date}: {e.message}"],
                fetch_failed=True,
            )

        rows = self.build_district_rows(grade_rows, school_year)
        if not rows:
            logger.info(f"No grade summaries to roll up for {summary_date}")
            return BatchWriteResult()

        result = write_batch(self.store, DistrictAttendanceTimelineSummary, rows, "district summary")
        logger.info(f"District summaries for {summary_date}: {result.written} grade(s) written")
        return result

    def build_district_rows(self, grade_rows: Sequence[Dict], school_year: str) -> List[Dict]:
        district_rows = []
        for group in rollup_grade_rows(grade_rows):
            group.pop("cumulative_absences", None)
            group["school_year"] = school_year
            group["is_school_day"] = True
            district_rows.append(group)
        return district_rows
