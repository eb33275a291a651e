"""
Fallback query chain for timeline reads.

Three sources are tried in order, each only if the previous one failed or
returned nothing:

1. fast path: precomputed district or grade summaries
2. on-demand: grade summaries aggregated across schools in process
3. degraded: raw attendance aggregated in process, capped in size

Every source yields the same TimelineDataPoint shape.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Sequence

from ..database.store import AttendanceStore
from ..exceptions import AttendanceAnalyticsError, TimelineUnavailableError
from ..utilities.config import TimelineSettings
from .aggregation import aggregate_counts, records_to_count_frame, with_running_totals
from .district_rollup import rollup_grade_rows

logger = logging.getLogger(__name__)

DISTRICT_SCOPE = "all"
DISTRICT_SCHOOL_NAME = "All Schools (District)"
DISTRICT_SCHOOL_CODE = "ALL"


class TimelineSource(str, Enum):
    FAST_PATH = "fast_path"
    ON_DEMAND = "on_demand"
    DEGRADED = "degraded"


@dataclass(frozen=True)
class TimelineDataPoint:
    """One (date, grade) point of an attendance timeline."""

    date: date
    grade: int
    daily_absences: int
    cumulative_absences: int
    total_students: int
    attendance_rate: float
    absence_rate: float
    school_name: Optional[str] = None
    school_code: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> "TimelineDataPoint":
        value = data["date"]
        return cls(
            date=value if isinstance(value, date) else date.fromisoformat(value),
            grade=int(data["grade"]),
            daily_absences=int(data["daily_absences"]),
            cumulative_absences=int(data["cumulative_absences"]),
            total_students=int(data["total_students"]),
            attendance_rate=float(data["attendance_rate"]),
            absence_rate=float(data["absence_rate"]),
            school_name=data.get("school_name"),
            school_code=data.get("school_code"),
        )

    @classmethod
    def from_summary(
        cls, row: Dict, school_name: Optional[str] = None, school_code: Optional[str] = None
    ) -> "TimelineDataPoint":
        return cls(
            date=row["summary_date"],
            grade=int(row["grade_level"]),
            daily_absences=int(row["daily_absences"]),
            cumulative_absences=int(row.get("cumulative_absences") or 0),
            total_students=int(row["total_students"]),
            attendance_rate=float(row["attendance_rate"]),
            absence_rate=float(row["absence_rate"]),
            school_name=school_name,
            school_code=school_code,
        )


@dataclass
class SourceAttempt:
    source: TimelineSource
    rows: int = 0
    error: Optional[str] = None


@dataclass
class ChainResult:
    points: List[TimelineDataPoint]
    source: Optional[TimelineSource]
    attempts: List[SourceAttempt] = field(default_factory=list)

    @property
    def fast_path_used(self) -> bool:
        return self.source == TimelineSource.FAST_PATH


class FallbackQueryChain:
    """Serve a timeline from the first source that has data."""

    def __init__(self, store: AttendanceStore, settings: Optional[TimelineSettings] = None):
        self.store = store
        self.settings = settings or TimelineSettings()

    def fetch(
        self,
        scope: str,
        start_date: date,
        end_date: date,
        grades: Sequence[int],
        school_year: str,
    ) -> ChainResult:
        """
        Run the chain for a validated request.

        Raises:
            TimelineUnavailableError: no source returned data and the
                degraded source itself failed
        """
        sources: List[tuple] = [
            (TimelineSource.FAST_PATH, self.fast_path),
            (TimelineSource.ON_DEMAND, self.on_demand),
            (TimelineSource.DEGRADED, self.degraded),
        ]
        attempts = []
        for source, query in sources:
            attempt = SourceAttempt(source)
            attempts.append(attempt)
            try:
                points = query(scope, start_date, end_date, grades, school_year)
            except AttendanceAnalyticsError as e:
                attempt.error = e.message
                self.store.rollback()
                logger.warning(
                    f"Timeline source {source.value} failed for scope={scope} "
                    f"{start_date}..{end_date}: {e.message}"
                )
                continue

            attempt.rows = len(points)
            if points:
                logger.info(f"Timeline for scope={scope} served from {source.value} ({len(points)} points)")
                return ChainResult(points, source, attempts)
            logger.info(f"Timeline source {source.value} empty for scope={scope}, falling back")

        if attempts[-1].error is not None:
            raise TimelineUnavailableError(
                start_date,
                end_date,
                details={
                    "scope": scope,
                    "attempts": [
                        {"source": a.source.value, "rows": a.rows, "error": a.error} for a in attempts
                    ],
                },
            )
        return ChainResult([], None, attempts)

    def _school_label(self, scope: str):
        if scope == DISTRICT_SCOPE:
            return DISTRICT_SCHOOL_NAME, DISTRICT_SCHOOL_CODE
        school = self.store.select_school(scope)
        if school is None:
            return None, None
        return school["school_name"], school["school_code"]

    def _school_ids(self, scope: str) -> Optional[List[str]]:
        return None if scope == DISTRICT_SCOPE else [scope]

    def fast_path(self, scope, start_date, end_date, grades, school_year) -> List[TimelineDataPoint]:
        """Precomputed rows, read as-is."""
        if scope == DISTRICT_SCOPE:
            rows = self.store.select_district_summaries(
                school_year, start_date, end_date, grades=grades
            )
        else:
            rows = self.store.select_grade_summaries(
                school_year,
                start_date,
                end_date,
                school_ids=[scope],
                grades=grades,
                limit=self.settings.school_fast_path_limit,
            )
        if not rows:
            return []
        name, code = self._school_label(scope)
        return [TimelineDataPoint.from_summary(row, name, code) for row in rows]

    def on_demand(self, scope, start_date, end_date, grades, school_year) -> List[TimelineDataPoint]:
        """Grade summaries aggregated per (date, grade) across schools."""
        rows = self.store.select_grade_summaries(
            school_year, start_date, end_date, school_ids=self._school_ids(scope), grades=grades
        )
        if not rows:
            return []
        name, code = self._school_label(scope)
        return [TimelineDataPoint.from_summary(row, name, code) for row in rollup_grade_rows(rows)]

    def degraded(self, scope, start_date, end_date, grades, school_year) -> List[TimelineDataPoint]:
        """
        Raw attendance aggregated in process.

        Capped at degraded_row_limit records, so a long range may be
        truncated. When the cap is hit the last date read is dropped, since
        it may be partial, unless it is the only date.
        cumulative_absences is a running sum within the range.
        """
        limit = self.settings.degraded_row_limit
        records = self.store.select_attendance(
            start_date,
            end_date,
            school_ids=self._school_ids(scope),
            grades=grades,
            school_year=school_year,
            limit=limit,
        )
        if not records:
            return []
        if limit and len(records) >= limit:
            last_date = records[-1]["attendance_date"]
            complete = [r for r in records if r["attendance_date"] != last_date]
            if complete:
                records = complete
            logger.warning(
                f"Degraded timeline read hit the {limit} record cap for scope={scope}; "
                f"results are truncated at {records[-1]['attendance_date']}"
            )

        grouped = aggregate_counts(records_to_count_frame(records), ["summary_date", "grade_level"])
        rows = with_running_totals(grouped, ["grade_level"])
        name, code = self._school_label(scope)
        return [TimelineDataPoint.from_summary(row, name, code) for row in rows]
