"""
Result types for timeline processing, and the batch writer that
reports per-group failures instead of dropping them.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, List, Optional, Sequence

from ..database.store import AttendanceStore
from ..exceptions import PartialBatchFailure, UpstreamWriteError

logger = logging.getLogger(__name__)


@dataclass
class BatchWriteResult:
    """Rows written by one engine step and the errors of the groups that failed."""

    written: int = 0
    rows: List[Dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    fetch_failed: bool = False

    @property
    def grades(self) -> List[int]:
        return sorted({row["grade_level"] for row in self.rows})


@dataclass
class ProcessingResult:
    """Outcome of processing one school day."""

    date: date
    school_year: str
    success: bool = False
    grades_processed: List[int] = field(default_factory=list)
    grade_rows_written: int = 0
    district_rows_written: int = 0
    cumulative_rows_updated: int = 0
    errors: List[str] = field(default_factory=list)
    processing_time_ms: int = 0

    @property
    def records_written(self) -> int:
        return self.grade_rows_written + self.district_rows_written

    def to_dict(self) -> dict:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        data["records_written"] = self.records_written
        return data


@dataclass
class RefreshResult:
    """Outcome of refresh_timeline() over a date range."""

    start_date: date
    end_date: date
    school_year: str
    run_id: Optional[str] = None
    days: List[ProcessingResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def school_days_processed(self) -> int:
        return len(self.days)

    @property
    def errors(self) -> List[str]:
        return [f"{day.date}: {error}" for day in self.days for error in day.errors]

    @property
    def success(self) -> bool:
        return not self.cancelled and all(day.success for day in self.days)

    @property
    def records_written(self) -> int:
        return sum(day.records_written for day in self.days)

    def raise_for_errors(self) -> None:
        """Raise PartialBatchFailure if any date reported errors."""
        errors = self.errors
        if errors:
            succeeded = sum(1 for day in self.days if day.success)
            raise PartialBatchFailure(
                f"{len(errors)} error(s) refreshing {self.start_date} to {self.end_date}",
                errors,
                succeeded,
            )

    def to_dict(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "school_year": self.school_year,
            "run_id": self.run_id,
            "school_days_processed": self.school_days_processed,
            "cancelled": self.cancelled,
            "success": self.success,
            "errors": self.errors,
            "days": [day.to_dict() for day in self.days],
        }


def _describe(row: Dict, keys: Sequence[str]) -> str:
    return ", ".join(f"{k}={row.get(k)}" for k in keys)


def write_batch(store: AttendanceStore, model, rows: List[Dict], label: str) -> BatchWriteResult:
    """
    Upsert rows in one statement, falling back to one savepoint per row.

    A rejected bulk statement is retried row by row so the groups that can
    be written are, and every rejected group is reported in errors.
    """
    result = BatchWriteResult()
    if not rows:
        return result

    try:
        with store.session.begin_nested():
            result.written = store.upsert(model, rows)
        result.rows = list(rows)
        return result
    except UpstreamWriteError as e:
        logger.warning(f"Bulk upsert of {len(rows)} {label} rows failed ({e.message}); retrying per group")

    for row in rows:
        try:
            with store.session.begin_nested():
                store.upsert(model, [row])
        except UpstreamWriteError as e:
            result.errors.append(
                f"Failed to upsert {label} ({_describe(row, model.NATURAL_KEY)}): {e.message}"
            )
            continue
        result.written += 1
        result.rows.append(row)

    if result.errors:
        logger.error(f"{len(result.errors)} {label} group(s) failed, {result.written} written")
    return result
