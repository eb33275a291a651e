"""
Daily Aggregation Engine

Rolls one calendar date of raw attendance into one grade summary row per
(school, grade) pair. Rows are upserted on their natural key, so re-running
a date overwrites it with identical values.
"""

import logging
from datetime import date
from typing import Dict, List, Optional, Sequence, Set

from ..database.models import GradeAttendanceTimelineSummary
from ..database.store import AttendanceStore
from ..exceptions import InvalidRequestError, UpstreamReadError
from ..utilities.config import TimelineSettings
from ..utilities.school_calendar import DateLike, parse_date, school_year_bounds
from .aggregation import aggregate_counts, records_to_count_frame, split_absences
from .results import BatchWriteResult, write_batch
from .tiers import classify_attendance, student_attendance_rate

logger = logging.getLogger(__name__)


class DailyAggregationEngine:
    """
    Build and write GradeAttendanceTimelineSummary rows for one date.

    cumulative_absences is not written here; CumulativeTotalCalculator owns it.
    """

    def __init__(self, store: AttendanceStore, settings: Optional[TimelineSettings] = None):
        self.store = store
        self.settings = settings or TimelineSettings()

    def aggregate(
        self,
        target_date: DateLike,
        school_year: str,
        school_ids: Optional[Sequence[str]] = None,
    ) -> BatchWriteResult:
        """
        Aggregate and upsert grade summaries for a date.

        Args:
            target_date: Calendar date (date or YYYY-MM-DD string)
            school_year: School year the summaries are keyed under
            school_ids: Optional non-empty school filter

        Returns:
            BatchWriteResult; on a fetch error nothing is written and the
            error is reported with fetch_failed set
        """
        summary_date = parse_date(target_date, "target_date")
        if school_ids is not None and len(school_ids) == 0:
            raise InvalidRequestError("school_ids filter must not be empty when provided")

        try:
            records = self.store.select_attendance(summary_date, school_ids=school_ids)
            chronic = self._chronic_students(records, summary_date, school_year, school_ids)
        except UpstreamReadError as e:
            logger.error(f"Failed to fetch attendance data for {summary_date}: {e.message}")
            return BatchWriteResult(
                errors=[f"Failed to fetch attendance data for {summary_date}: {e.message}"],
                fetch_failed=True,
            )

        if not records:
            logger.info(f"No attendance data found for {summary_date}")
            return BatchWriteResult()

        rows = self.build_summaries(records, summary_date, school_year, chronic)
        result = write_batch(self.store, GradeAttendanceTimelineSummary, rows, "grade summary")
        logger.info(
            f"Grade summaries for {summary_date}: {result.written} written from "
            f"{len(records):,} attendance records"
        )
        return result

    def build_summaries(
        self,
        records: Sequence[Dict],
        summary_date: date,
        school_year: str,
        chronic_student_ids: Set[str] = frozenset(),
    ) -> List[Dict]:
        """
        Group raw records by (school, grade) into summary rows.

        Pure function of its inputs; no store access.
        """
        frame = records_to_count_frame(records, chronic_student_ids)
        rows = []
        for group in aggregate_counts(frame, ["school_id", "grade_level"]):
            excused, unexcused = split_absences(
                group["daily_absences"], self.settings.excused_absence_percent
            )
            rows.append({
                "school_id": group["school_id"],
                "grade_level": group["grade_level"],
                "summary_date": summary_date,
                "school_year": school_year,
                "total_students": group["total_students"],
                "students_present": group["students_present"],
                "students_absent": group["students_absent"],
                "daily_absences": group["daily_absences"],
                "excused_absences": excused,
                "unexcused_absences": unexcused,
                "tardy_count": group["tardy_count"],
                "chronic_absent_count": group["chronic_absent_count"],
                "attendance_rate": group["attendance_rate"],
                "absence_rate": group["absence_rate"],
                "is_school_day": True,
            })
        return rows

    def _chronic_students(
        self,
        records: Sequence[Dict],
        summary_date: date,
        school_year: str,
        school_ids: Optional[Sequence[str]],
    ) -> Set[str]:
        """Students in today's records whose year-to-date rate is Tier 3."""
        if not records:
            return set()

        year_start, _ = school_year_bounds(school_year, self.settings)
        totals = self.store.select_student_totals(
            school_year,
            min(year_start, summary_date),
            summary_date,
            school_ids=school_ids,
        )
        todays_students = {record["student_id"] for record in records}
        chronic = set()
        for row in totals:
            if row["student_id"] not in todays_students:
                continue
            rate = student_attendance_rate(row["days_present"], row["days_recorded"])
            if rate is None:
                continue
            classification = classify_attendance(
                rate, self.settings.tier1_threshold, self.settings.tier2_threshold
            )
            if classification.is_chronic:
                chronic.add(row["student_id"])
        return chronic
