"""
Timeline cache.

Timeline responses are cached per (scope, range, grades, school year) for a
fixed TTL. Expired entries are treated as absent and removed lazily on the
next read. Writes are best-effort: a cache failure is logged and never
fails the read that produced the data.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database.connection import session_scope
from ..database.models import AttendanceTimelineCache, utcnow
from ..database.store import AttendanceStore
from ..exceptions import CacheWriteFailure, UpstreamReadError, UpstreamWriteError
from ..utilities.school_calendar import DateLike, parse_date, parse_date_range

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600


def normalize_grades(grades: Optional[Iterable[int]]) -> List[int]:
    """Distinct grade levels in ascending numeric order."""
    if not grades:
        return []
    return sorted({int(grade) for grade in grades})


def build_cache_key(
    scope: str,
    start_date: DateLike,
    end_date: DateLike,
    grades: Optional[Iterable[int]],
    school_year: str,
) -> str:
    """
    Deterministic cache key for a timeline request.

    Grades are deduplicated and sorted numerically, so any ordering of the
    same grade set maps to the same key.

    Example:
        >>> build_cache_key("all", "2024-08-15", "2024-08-20", [3, 1, 2], "2024-2025")
        'timeline:all:2024-08-15:2024-08-20:1,2,3:2024-2025'
    """
    grade_part = ",".join(str(g) for g in normalize_grades(grades)) or "all"
    return (
        f"timeline:{scope}:{parse_date(start_date, 'start_date').isoformat()}:"
        f"{parse_date(end_date, 'end_date').isoformat()}:{grade_part}:{school_year}"
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class CacheEntry:
    key: str
    scope: str
    start_date: date
    end_date: date
    school_year: str
    points: List[Dict]
    expires_at: datetime
    grades: List[int] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return _as_utc(now) >= _as_utc(self.expires_at)

    def overlaps(self, start_date: date, end_date: date) -> bool:
        return self.start_date <= end_date and self.end_date >= start_date


class CacheBackend(ABC):
    """Storage for cache entries. Implementations must be thread-safe."""

    @abstractmethod
    def get(self, key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    def set(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> int:
        ...

    @abstractmethod
    def delete_overlapping(self, start_date: date, end_date: date) -> int:
        ...


class InMemoryCacheBackend(CacheBackend):
    """Process-local cache backend guarded by a lock."""

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def set(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry

    def delete(self, key: str) -> int:
        with self._lock:
            return 1 if self._entries.pop(key, None) is not None else 0

    def delete_overlapping(self, start_date: date, end_date: date) -> int:
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.overlaps(start_date, end_date)]
            for key in stale:
                del self._entries[key]
            return len(stale)


class DatabaseCacheBackend(CacheBackend):
    """
    Cache backend over the attendance_timeline_cache table.

    Each call runs in its own transaction. Any failure, including one at
    commit, surfaces as UpstreamReadError or CacheWriteFailure.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    @contextmanager
    def _writing(self, operation: str):
        try:
            with session_scope(self.session_factory) as session:
                yield AttendanceStore(session)
        except UpstreamWriteError as e:
            raise CacheWriteFailure(e.message, e.details) from e
        except SQLAlchemyError as e:
            raise CacheWriteFailure(
                f"Failed to {operation}: {e.__class__.__name__}", {"operation": operation}
            ) from e

    def get(self, key: str) -> Optional[CacheEntry]:
        try:
            with session_scope(self.session_factory) as session:
                row = AttendanceStore(session).select_cache_entry(key)
        except SQLAlchemyError as e:
            raise UpstreamReadError(
                f"Failed to read cache entry: {e.__class__.__name__}", {"cache_key": key}
            ) from e
        if row is None:
            return None
        return CacheEntry(
            key=row["cache_key"],
            scope=row["school_filter"],
            start_date=row["range_start"],
            end_date=row["range_end"],
            school_year=row["school_year"],
            points=row["timeline_data"],
            expires_at=row["expires_at"],
            grades=list(row["grade_levels"] or []),
            metadata=row["metadata"] or {},
        )

    def set(self, entry: CacheEntry) -> None:
        row = {
            "cache_key": entry.key,
            "school_filter": entry.scope,
            "grade_levels": entry.grades,
            "school_year": entry.school_year,
            "range_start": entry.start_date,
            "range_end": entry.end_date,
            "timeline_data": entry.points,
            "metadata": entry.metadata,
            "expires_at": entry.expires_at,
        }
        with self._writing("write cache entry") as store:
            store.upsert(AttendanceTimelineCache, [row], conflict_keys=["cache_key"])

    def delete(self, key: str) -> int:
        with self._writing("delete cache entry") as store:
            return store.delete_cache_entry(key)

    def delete_overlapping(self, start_date: date, end_date: date) -> int:
        with self._writing("invalidate cache range") as store:
            return store.delete_by_range(
                AttendanceTimelineCache,
                start_date,
                end_date,
                date_column="range_start",
                end_column="range_end",
            )


class TimelineCache:
    """
    TTL cache in front of the timeline query chain.

    Args:
        backend: Entry storage (in-memory by default)
        ttl_seconds: Lifetime of an entry from the time it is written
        clock: Returns the current timezone-aware time; injectable for tests
    """

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.backend = backend or InMemoryCacheBackend()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock or utcnow

    def get(self, key: str) -> Optional[List[Dict]]:
        """Cached points for a key, or None if absent or expired."""
        try:
            entry = self.backend.get(key)
        except UpstreamReadError as e:
            logger.warning(f"Cache read failed for {key}, treating as a miss: {e.message}")
            return None

        if entry is None:
            return None
        if entry.is_expired(self.clock()):
            logger.debug(f"Cache entry expired: {key}")
            try:
                self.backend.delete(key)
            except CacheWriteFailure as e:
                logger.warning(f"Could not evict expired cache entry {key}: {e.message}")
            return None
        return entry.points

    def set(
        self,
        key: str,
        scope: str,
        start_date: DateLike,
        end_date: DateLike,
        school_year: str,
        points: List[Dict],
        grades: Optional[Iterable[int]] = None,
        metadata: Optional[Dict] = None,
    ) -> bool:
        """
        Store points under key. Never raises on backend failure.

        Returns:
            True if the entry was written
        """
        start, end = parse_date_range(start_date, end_date)
        entry = CacheEntry(
            key=key,
            scope=scope,
            start_date=start,
            end_date=end,
            school_year=school_year,
            points=list(points),
            expires_at=_as_utc(self.clock()) + self.ttl,
            grades=normalize_grades(grades),
            metadata=dict(metadata or {}),
        )
        try:
            self.backend.set(entry)
        except CacheWriteFailure as e:
            logger.warning(f"Cache write failed for {key}: {e.message}")
            return False
        return True

    def invalidate_range(self, start_date: DateLike, end_date: DateLike) -> int:
        """
        Drop every entry whose date range overlaps [start_date, end_date].

        Returns:
            Number of entries removed (0 if the backend failed)
        """
        start, end = parse_date_range(start_date, end_date)
        try:
            removed = self.backend.delete_overlapping(start, end)
        except CacheWriteFailure as e:
            logger.error(f"Cache invalidation failed for {start} to {end}: {e.message}")
            return 0
        if removed:
            logger.info(f"Invalidated {removed} cached timeline(s) overlapping {start} to {end}")
        return removed
