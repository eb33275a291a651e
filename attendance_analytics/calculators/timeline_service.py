"""
Attendance Timeline Service

Facade used by the API layer and the refresh pipeline:

    service = AttendanceTimelineService()
    result = service.get_timeline("all", "2024-08-15", "2024-09-30", grades=[3, 4])
    service.refresh_timeline("2024-08-15", "2024-08-30")

Refresh runs daily aggregation, district rollup and cumulative totals for
each school day, one transaction per day, and invalidates every cached
timeline overlapping the refreshed range.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database.connection import session_scope
from ..database.models import (
    DistrictAttendanceTimelineSummary,
    GradeAttendanceTimelineSummary,
    TimelineProcessingRun,
)
from ..database.store import AttendanceStore
from ..exceptions import AttendanceAnalyticsError, InvalidRequestError
from ..utilities.common import safe_divide
from ..utilities.config import TimelineSettings, load_settings
from ..utilities.school_calendar import (
    DateLike,
    get_current_school_year,
    iter_school_days,
    normalize_school_year,
    parse_date,
    parse_date_range,
)
from .cumulative_totals import CumulativeTotalCalculator
from .daily_aggregation import DailyAggregationEngine
from .district_rollup import DistrictRollupEngine
from .grade_summary import GradeLevelSummary, GradeSummaryBuilder
from .results import ProcessingResult, RefreshResult
from .timeline_cache import TimelineCache, build_cache_key, normalize_grades
from .timeline_queries import DISTRICT_SCOPE, FallbackQueryChain, TimelineDataPoint

logger = logging.getLogger(__name__)

MIN_GRADE = -1
MAX_GRADE = 12


@dataclass
class TimelineResult:
    """Points for a timeline request plus where they came from."""

    points: List[TimelineDataPoint]
    cache_hit: bool
    scope: str
    start_date: date
    end_date: date
    school_year: str
    grades: List[int] = field(default_factory=list)
    source: Optional[str] = None

    @property
    def fast_path_used(self) -> bool:
        return self.source == "fast_path"

    def to_dict(self) -> dict:
        return {
            "points": [point.to_dict() for point in self.points],
            "cache_hit": self.cache_hit,
            "metadata": {
                "scope": self.scope,
                "start_date": self.start_date.isoformat(),
                "end_date": self.end_date.isoformat(),
                "school_year": self.school_year,
                "grades": self.grades,
                "source": self.source,
                "fast_path_used": self.fast_path_used,
                "point_count": len(self.points),
            },
        }


class AttendanceTimelineService:
    """
    Timeline reads, refreshes and grade summaries over one database.

    Args:
        session_factory: sessionmaker for the store (global factory if None)
        cache: TimelineCache (in-memory with the configured TTL if None)
        settings: TimelineSettings (loaded from config/timeline.yaml if None)
        today: Returns the current date; used to pick the default school year
    """

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        cache: Optional[TimelineCache] = None,
        settings: Optional[TimelineSettings] = None,
        today: Optional[Callable[[], date]] = None,
    ):
        self.session_factory = session_factory
        self.settings = settings or load_settings()
        self.cache = cache or TimelineCache(ttl_seconds=self.settings.cache_ttl_seconds)
        self.today = today or date.today

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _validate_scope(scope: str) -> str:
        if not isinstance(scope, str) or not scope.strip():
            raise InvalidRequestError(
                f"scope must be '{DISTRICT_SCOPE}' or a school id, got {scope!r}"
            )
        return scope.strip()

    @staticmethod
    def _validate_grades(grades: Optional[Iterable]) -> List[int]:
        try:
            levels = normalize_grades(grades)
        except (TypeError, ValueError):
            raise InvalidRequestError(f"grades must be integers, got {grades!r}")
        invalid = [g for g in levels if not MIN_GRADE <= g <= MAX_GRADE]
        if invalid:
            raise InvalidRequestError(
                f"grade levels must be between {MIN_GRADE} and {MAX_GRADE}, got {invalid}"
            )
        return levels

    @staticmethod
    def _validate_school_ids(school_ids: Optional[Sequence[str]]) -> Optional[List[str]]:
        if school_ids is None:
            return None
        school_ids = [s for s in school_ids if s]
        if not school_ids:
            raise InvalidRequestError("school_ids filter must not be empty when provided")
        return school_ids

    def _school_year(self, school_year: Optional[str], reference: Optional[date] = None) -> str:
        if school_year:
            return normalize_school_year(school_year)
        return get_current_school_year(
            reference or self.today(), self.settings.school_year_rollover_month
        )

    # =========================================================================
    # READS
    # =========================================================================

    def get_timeline(
        self,
        scope: str,
        start_date: DateLike,
        end_date: DateLike,
        grades: Optional[Iterable[int]] = None,
        school_year: Optional[str] = None,
    ) -> TimelineResult:
        """
        Attendance timeline for the district ("all") or one school.

        Served from the cache when a live entry exists, otherwise from the
        fallback query chain. Non-empty results are cached.

        Raises:
            InvalidRequestError: Malformed dates, scope or grades
            TimelineUnavailableError: Every source failed
        """
        scope = self._validate_scope(scope)
        start, end = parse_date_range(start_date, end_date)
        grade_levels = self._validate_grades(grades)
        school_year = self._school_year(school_year, start)
        key = build_cache_key(scope, start, end, grade_levels, school_year)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Timeline cache hit: {key}")
            return TimelineResult(
                points=[TimelineDataPoint.from_dict(p) for p in cached],
                cache_hit=True,
                scope=scope,
                start_date=start,
                end_date=end,
                school_year=school_year,
                grades=grade_levels,
                source="cache",
            )

        with session_scope(self.session_factory) as session:
            chain = FallbackQueryChain(AttendanceStore(session), self.settings).fetch(
                scope, start, end, grade_levels, school_year
            )

        source = chain.source.value if chain.source else None
        if chain.points:
            self.cache.set(
                key,
                scope,
                start,
                end,
                school_year,
                [point.to_dict() for point in chain.points],
                grades=grade_levels,
                metadata={"source": source},
            )

        return TimelineResult(
            points=chain.points,
            cache_hit=False,
            scope=scope,
            start_date=start,
            end_date=end,
            school_year=school_year,
            grades=grade_levels,
            source=source,
        )

    def get_grade_summary(
        self,
        scope: str = DISTRICT_SCOPE,
        school_year: Optional[str] = None,
        as_of: Optional[DateLike] = None,
    ) -> List[GradeLevelSummary]:
        """Per-grade attendance, tiers and trend for the district or one school."""
        scope = self._validate_scope(scope)
        school_year = self._school_year(school_year)
        as_of_date = parse_date(as_of, "as_of") if as_of is not None else None

        with session_scope(self.session_factory) as session:
            builder = GradeSummaryBuilder(AttendanceStore(session), self.settings)
            return builder.build(
                None if scope == DISTRICT_SCOPE else scope, school_year, as_of_date
            )

    def get_summary_stats(
        self,
        start_date: DateLike,
        end_date: DateLike,
        school_year: Optional[str] = None,
    ) -> dict:
        """District-level totals over a date range."""
        start, end = parse_date_range(start_date, end_date)
        school_year = self._school_year(school_year, start)

        with session_scope(self.session_factory) as session:
            rows = AttendanceStore(session).select_district_summaries(school_year, start, end)

        school_days = {row["summary_date"] for row in rows}
        total_absences = sum(int(row["daily_absences"]) for row in rows)
        return {
            "total_school_days": len(school_days),
            "total_absences": total_absences,
            "average_daily_absences": round(safe_divide(total_absences, len(school_days)), 2),
            "grades_tracked": sorted({row["grade_level"] for row in rows}),
            "schools_tracked": max((int(row["schools_count"]) for row in rows), default=0),
        }

    # =========================================================================
    # REFRESH
    # =========================================================================

    def process_date(
        self,
        target_date: DateLike,
        school_year: str,
        school_ids: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
    ) -> ProcessingResult:
        """
        Aggregate, roll up and accumulate one date in a single transaction.

        Store failures are reported in the result, not raised; re-running
        the same date is always safe. Cached timelines covering the date
        are invalidated afterwards.
        """
        day = parse_date(target_date, "target_date")
        school_ids = self._validate_school_ids(school_ids)
        started = time.perf_counter()
        result = ProcessingResult(date=day, school_year=school_year)

        try:
            with session_scope(self.session_factory) as session:
                store = AttendanceStore(session)
                cleared_series, cleared_grades = [], []
                if force_refresh:
                    cleared_series, cleared_grades = self._clear_date(
                        store, day, school_year, school_ids
                    )

                daily = DailyAggregationEngine(store, self.settings).aggregate(
                    day, school_year, school_ids
                )
                result.grade_rows_written = daily.written
                result.grades_processed = daily.grades
                result.errors.extend(daily.errors)

                if not daily.fetch_failed:
                    district = DistrictRollupEngine(store).rollup(day, school_year)
                    result.district_rows_written = district.written
                    result.errors.extend(district.errors)

                    cumulative = CumulativeTotalCalculator(store).recalculate(
                        school_year,
                        grade_series=[(r["school_id"], r["grade_level"]) for r in daily.rows]
                        + cleared_series,
                        district_grades=district.grades + cleared_grades,
                    )
                    result.cumulative_rows_updated = cumulative.rows_updated
                    result.errors.extend(cumulative.errors)
        except (AttendanceAnalyticsError, SQLAlchemyError) as e:
            logger.error(f"Error processing {day}: {e}")
            result.errors.append(f"Error processing {day}: {e}")

        self.cache.invalidate_range(day, day)

        result.success = not result.errors
        result.processing_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            f"Processed {day}: {result.grade_rows_written} grade rows, "
            f"{result.district_rows_written} district rows, {len(result.errors)} error(s) "
            f"in {result.processing_time_ms}ms"
        )
        return result

    def _clear_date(
        self,
        store: AttendanceStore,
        day: date,
        school_year: str,
        school_ids: Optional[Sequence[str]],
    ) -> Tuple[List[Tuple[str, int]], List[int]]:
        """
        Delete the summaries of one date.

        Returns:
            The (school_id, grade_level) series and district grades that had
            rows on the date, so their running totals can be recomputed
        """
        grade_rows = store.select_grade_summaries(
            school_year, day, day, school_ids=school_ids, school_days_only=False
        )
        district_rows = store.select_district_summaries(
            school_year, day, day, school_days_only=False
        )

        if school_ids:
            for school_id in school_ids:
                store.delete_by_range(
                    GradeAttendanceTimelineSummary, day, day,
                    school_year=school_year, school_id=school_id,
                )
        else:
            store.delete_by_range(GradeAttendanceTimelineSummary, day, day, school_year=school_year)
        store.delete_by_range(DistrictAttendanceTimelineSummary, day, day, school_year=school_year)
        logger.info(f"Cleared existing summaries for {day}")
        return (
            [(row["school_id"], row["grade_level"]) for row in grade_rows],
            [row["grade_level"] for row in district_rows],
        )

    def refresh_timeline(
        self,
        start_date: DateLike,
        end_date: DateLike,
        school_year: Optional[str] = None,
        school_ids: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> RefreshResult:
        """
        Recompute summaries for every school day in a range.

        Weekends and configured holidays are skipped. Cached timelines that
        overlap the range are invalidated before and after the run. Setting
        cancel_event stops the run between dates; finished dates stay written.

        Args:
            start_date: First date, inclusive
            end_date: Last date, inclusive
            school_year: Defaults to the school year containing start_date
            school_ids: Optional school filter
            force_refresh: Delete existing summaries for each date first
            cancel_event: Optional threading.Event checked between dates

        Returns:
            RefreshResult with one ProcessingResult per processed date
        """
        start, end = parse_date_range(start_date, end_date)
        school_ids = self._validate_school_ids(school_ids)
        school_year = self._school_year(school_year, start)
        result = RefreshResult(start_date=start, end_date=end, school_year=school_year)

        with session_scope(self.session_factory) as session:
            result.run_id = TimelineProcessingRun.start_run(session, school_year, start, end).run_id

        logger.info(f"Refreshing timeline {start} to {end} ({school_year}), run {result.run_id}")
        self.cache.invalidate_range(start, end)

        for day in iter_school_days(start, end, self.settings.holidays):
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Refresh run {result.run_id} cancelled before {day}")
                result.cancelled = True
                break
            result.days.append(self.process_date(day, school_year, school_ids, force_refresh))

        self.cache.invalidate_range(start, end)

        if result.cancelled:
            status = "cancelled"
        elif result.errors:
            status = "failed"
        else:
            status = "completed"

        with session_scope(self.session_factory) as session:
            run = session.get(TimelineProcessingRun, result.run_id)
            run.finish(status, result.school_days_processed, result.records_written, result.errors)

        logger.info(
            f"Refresh run {result.run_id} {status}: {result.school_days_processed} school days, "
            f"{result.records_written} rows written, {len(result.errors)} error(s)"
        )
        return result
