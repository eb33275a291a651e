"""
Tests for the relational store adapter.

Run: pytest tests/test_store.py -v
"""

from datetime import date, datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from attendance_analytics.database.models import (
    AttendanceTimelineCache,
    GradeAttendanceTimelineSummary,
)
from attendance_analytics.database.store import AttendanceStore, merge_rows
from attendance_analytics.exceptions import UpstreamReadError, UpstreamWriteError

SCHOOL_YEAR = "2024-2025"
DAY = date(2024, 9, 3)


def grade_row(grade=3, day=DAY, absences=2, school_id="S1"):
    return {
        "school_id": school_id,
        "grade_level": grade,
        "summary_date": day,
        "school_year": SCHOOL_YEAR,
        "total_students": 10,
        "students_present": 10 - absences,
        "daily_absences": absences,
        "attendance_rate": (10 - absences) * 10.0,
        "absence_rate": absences * 10.0,
        "is_school_day": True,
    }


class TestMergeRows:
    def test_later_values_win(self):
        rows = [{"k": 1, "v": "a"}, {"k": 2, "v": "b"}, {"k": 1, "v": "c"}]
        assert merge_rows(rows, ["k"]) == [{"k": 1, "v": "c"}, {"k": 2, "v": "b"}]


class TestUpsert:
    """INSERT ... ON CONFLICT DO UPDATE on the natural key"""

    def test_insert_then_update(self, seeder, store_session):
        seeder.school("S1")
        session, store = store_session
        store.upsert(GradeAttendanceTimelineSummary, [grade_row(absences=2)])
        store.upsert(GradeAttendanceTimelineSummary, [grade_row(absences=4)])

        rows = store.select_grade_summaries(SCHOOL_YEAR)
        assert len(rows) == 1
        assert rows[0]["daily_absences"] == 4
        assert rows[0]["attendance_rate"] == 60.0

    def test_duplicate_keys_in_one_batch(self, seeder, store_session):
        seeder.school("S1")
        session, store = store_session
        written = store.upsert(
            GradeAttendanceTimelineSummary, [grade_row(absences=1), grade_row(absences=3)]
        )
        assert written == 1
        assert store.select_grade_summaries(SCHOOL_YEAR)[0]["daily_absences"] == 3

    def test_constraint_violation_wrapped(self, seeder, store_session):
        seeder.school("S1")
        session, store = store_session
        with pytest.raises(UpstreamWriteError) as exc_info:
            with session.begin_nested():
                store.upsert(GradeAttendanceTimelineSummary, [grade_row(absences=-1)])
        assert exc_info.value.details["table"] == "grade_attendance_timeline_summary"

    def test_unsupported_dialect(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "mssql"
        with pytest.raises(UpstreamWriteError):
            AttendanceStore(session).upsert(GradeAttendanceTimelineSummary, [grade_row()])


class TestDeleteByRange:
    """Point and overlap predicates"""

    def test_delete_dates_in_range(self, seeder, store_session):
        seeder.school("S1")
        session, store = store_session
        store.upsert(GradeAttendanceTimelineSummary, [
            grade_row(day=date(2024, 9, d)) for d in (3, 4, 5)
        ])

        deleted = store.delete_by_range(
            GradeAttendanceTimelineSummary, date(2024, 9, 4), date(2024, 9, 5), school_id="S1"
        )

        assert deleted == 2
        assert [r["summary_date"] for r in store.select_grade_summaries(SCHOOL_YEAR)] == [DAY]

    def test_delete_overlapping_ranges(self, store_session):
        session, store = store_session
        base = {
            "school_filter": "all", "grade_levels": [], "school_year": SCHOOL_YEAR,
            "timeline_data": [], "metadata": {},
            "expires_at": datetime(2030, 1, 1, tzinfo=timezone.utc),
        }
        store.upsert(AttendanceTimelineCache, [
            {**base, "cache_key": "a", "range_start": date(2024, 8, 15), "range_end": date(2024, 8, 20)},
            {**base, "cache_key": "b", "range_start": date(2024, 8, 21), "range_end": date(2024, 8, 30)},
        ], conflict_keys=["cache_key"])

        deleted = store.delete_by_range(
            AttendanceTimelineCache, date(2024, 8, 18), date(2024, 8, 18),
            date_column="range_start", end_column="range_end",
        )

        assert deleted == 1
        assert store.select_cache_entry("a") is None
        assert store.select_cache_entry("b")["cache_key"] == "b"


class TestReadErrors:
    def test_sqlalchemy_error_wrapped(self):
        session = MagicMock()
        session.execute.side_effect = OperationalError("SELECT 1", {}, Exception("server closed"))

        with pytest.raises(UpstreamReadError) as exc_info:
            AttendanceStore(session).select_attendance(DAY)

        assert exc_info.value.error_code == "UPSTREAM_READ_ERROR"
        assert exc_info.value.details["operation"] == "select attendance"
