"""
Tests for the timeline result cache.

Run: pytest tests/test_timeline_cache.py -v
"""

import threading
from datetime import date
from unittest.mock import MagicMock

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from attendance_analytics.calculators.timeline_cache import (
    CacheBackend,
    DatabaseCacheBackend,
    InMemoryCacheBackend,
    TimelineCache,
    build_cache_key,
)
from attendance_analytics.exceptions import CacheWriteFailure

SCHOOL_YEAR = "2024-2025"
POINTS = [{"date": "2024-08-15", "grade": 3, "daily_absences": 4}]


class FailingCommitSession(Session):
    def commit(self):
        raise OperationalError("COMMIT", {}, Exception("database is locked"))


def cache_entry(cache, key, start, end):
    return cache.set(key, "all", start, end, SCHOOL_YEAR, POINTS)


class TestBuildCacheKey:
    """Keys are deterministic and order-independent"""

    def test_grade_order_does_not_matter(self):
        a = build_cache_key("all", "2024-08-15", "2024-08-20", [3, 1, 2], SCHOOL_YEAR)
        b = build_cache_key("all", "2024-08-15", "2024-08-20", [1, 2, 3], SCHOOL_YEAR)
        assert a == b == "timeline:all:2024-08-15:2024-08-20:1,2,3:2024-2025"

    def test_grades_sorted_numerically(self):
        key = build_cache_key("all", "2024-08-15", "2024-08-20", [10, 9, -1, 9], SCHOOL_YEAR)
        assert key == "timeline:all:2024-08-15:2024-08-20:-1,9,10:2024-2025"

    def test_no_grades(self):
        key = build_cache_key("S1", date(2024, 8, 15), date(2024, 8, 20), None, SCHOOL_YEAR)
        assert key == "timeline:S1:2024-08-15:2024-08-20:all:2024-2025"


class TestTimelineCacheTTL:
    """Entries expire after the TTL and are then absent"""

    def test_hit_before_expiry(self, clock):
        cache = TimelineCache(ttl_seconds=3600, clock=clock)
        cache_entry(cache, "k", "2024-08-15", "2024-08-20")
        clock.advance(3599)
        assert cache.get("k") == POINTS

    def test_miss_at_expiry(self, clock):
        backend = InMemoryCacheBackend()
        cache = TimelineCache(backend, ttl_seconds=3600, clock=clock)
        cache_entry(cache, "k", "2024-08-15", "2024-08-20")
        clock.advance(3600)
        assert cache.get("k") is None
        assert len(backend) == 0

    def test_unknown_key(self, clock):
        assert TimelineCache(clock=clock).get("missing") is None


class TestInvalidation:
    """Writes drop every overlapping entry"""

    def test_overlapping_entry_removed(self, clock):
        cache = TimelineCache(clock=clock)
        cache_entry(cache, "aug", "2024-08-15", "2024-08-20")
        cache_entry(cache, "sep", "2024-09-01", "2024-09-30")

        removed = cache.invalidate_range("2024-08-18", "2024-08-18")

        assert removed == 1
        assert cache.get("aug") is None
        assert cache.get("sep") == POINTS

    def test_touching_boundaries_overlap(self, clock):
        cache = TimelineCache(clock=clock)
        cache_entry(cache, "aug", "2024-08-15", "2024-08-20")
        assert cache.invalidate_range("2024-08-20", "2024-08-25") == 1


class TestBestEffortWrites:
    """Backend failures never reach the caller"""

    def failing_backend(self):
        backend = MagicMock(spec=CacheBackend)
        backend.set.side_effect = CacheWriteFailure("disk full")
        backend.delete_overlapping.side_effect = CacheWriteFailure("disk full")
        return backend

    def test_set_failure_swallowed(self, clock, caplog):
        cache = TimelineCache(self.failing_backend(), clock=clock)
        with caplog.at_level("WARNING"):
            assert cache_entry(cache, "k", "2024-08-15", "2024-08-20") is False
        assert "Cache write failed for k" in caplog.text

    def test_invalidation_failure_swallowed(self, clock):
        cache = TimelineCache(self.failing_backend(), clock=clock)
        assert cache.invalidate_range("2024-08-15", "2024-08-20") == 0


class TestDatabaseCacheBackend:
    """Cache entries persisted in attendance_timeline_cache"""

    def test_round_trip_and_expiry(self, session_factory, clock):
        cache = TimelineCache(DatabaseCacheBackend(session_factory), ttl_seconds=60, clock=clock)
        cache_entry(cache, "k", "2024-08-15", "2024-08-20")
        assert cache.get("k") == POINTS

        clock.advance(61)
        assert cache.get("k") is None

    def test_overwrite_same_key(self, session_factory, clock):
        cache = TimelineCache(DatabaseCacheBackend(session_factory), clock=clock)
        cache_entry(cache, "k", "2024-08-15", "2024-08-20")
        cache.set("k", "all", "2024-08-15", "2024-08-20", SCHOOL_YEAR, [])
        assert cache.get("k") == []

    def test_overlap_invalidation(self, session_factory, clock):
        cache = TimelineCache(DatabaseCacheBackend(session_factory), clock=clock)
        cache_entry(cache, "aug", "2024-08-15", "2024-08-20")
        cache_entry(cache, "sep", "2024-09-01", "2024-09-30")

        assert cache.invalidate_range("2024-08-18", "2024-08-18") == 1
        assert cache.get("aug") is None
        assert cache.get("sep") == POINTS

    def test_commit_failure_is_best_effort(self, engine, clock, caplog):
        failing = sessionmaker(bind=engine, class_=FailingCommitSession, expire_on_commit=False)
        cache = TimelineCache(DatabaseCacheBackend(failing), clock=clock)

        with caplog.at_level("WARNING"):
            assert cache_entry(cache, "k", "2024-08-15", "2024-08-20") is False
        assert "Cache write failed for k" in caplog.text
        assert cache.get("k") is None
        assert cache.invalidate_range("2024-08-15", "2024-08-20") == 0


class TestConcurrentAccess:
    """The in-memory backend is shared across reader threads"""

    def test_parallel_writers_and_readers(self, clock):
        cache = TimelineCache(clock=clock)

        def worker(n):
            for i in range(50):
                key = f"k{n}-{i}"
                cache_entry(cache, key, "2024-08-15", "2024-08-20")
                assert cache.get(key) == POINTS

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache.backend) == 400
        assert cache.invalidate_range("2024-08-01", "2024-08-31") == 400
