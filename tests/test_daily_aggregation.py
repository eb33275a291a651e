"""
Tests for the daily aggregation engine.

Run: pytest tests/test_daily_aggregation.py -v
"""

from datetime import date

import pytest

from attendance_analytics.calculators.daily_aggregation import DailyAggregationEngine
from attendance_analytics.calculators.results import write_batch
from attendance_analytics.calculators.tiers import classify_attendance
from attendance_analytics.database.models import GradeAttendanceTimelineSummary
from attendance_analytics.exceptions import InvalidRequestError

SCHOOL_YEAR = "2024-2025"
DAY = date(2024, 9, 3)

SUMMARY_COLUMNS = [
    "school_id", "grade_level", "summary_date", "school_year", "total_students",
    "students_present", "students_absent", "daily_absences", "excused_absences",
    "unexcused_absences", "tardy_count", "chronic_absent_count", "attendance_rate",
    "absence_rate", "is_school_day",
]


def stored_rows(store):
    rows = store.select_grade_summaries(SCHOOL_YEAR, school_days_only=False)
    return [{c: row[c] for c in SUMMARY_COLUMNS} for row in rows]


@pytest.fixture
def grade3(seeder):
    seeder.school("S1")
    students = seeder.students("S1", grade=3, count=100)
    seeder.attendance(DAY, students, absent=students[:15], tardy=students[20:23])
    return students


class TestDailyAggregation:
    """One summary row per (school, grade) for a date"""

    def test_single_group_counts(self, grade3, store_session, settings):
        """100 students, 15 full-day absent"""
        session, store = store_session
        result = DailyAggregationEngine(store, settings).aggregate(DAY, SCHOOL_YEAR)

        assert result.errors == []
        assert result.written == 1
        assert result.grades == [3]

        rows = stored_rows(store)
        assert len(rows) == 1
        row = rows[0]
        assert row["total_students"] == 100
        assert row["students_present"] == 85
        assert row["daily_absences"] == 15
        assert row["attendance_rate"] == 85.0
        assert row["absence_rate"] == 15.0
        assert row["excused_absences"] == 10
        assert row["unexcused_absences"] == 5
        assert row["tardy_count"] == 3
        assert row["is_school_day"] is True

        classification = classify_attendance(row["attendance_rate"])
        assert classification.tier == 3
        assert classification.risk_level.value == "high"

    def test_rerun_is_idempotent(self, grade3, store_session, settings):
        """Running a date twice leaves identical rows"""
        session, store = store_session
        engine = DailyAggregationEngine(store, settings)
        engine.aggregate(DAY, SCHOOL_YEAR)
        first = stored_rows(store)
        engine.aggregate(DAY, SCHOOL_YEAR)
        assert stored_rows(store) == first

    def test_rerun_keeps_cumulative_total(self, grade3, store_session, settings):
        """Upserts never reset cumulative_absences"""
        session, store = store_session
        engine = DailyAggregationEngine(store, settings)
        engine.aggregate(DAY, SCHOOL_YEAR)
        row_id = store.select_grade_summaries(SCHOOL_YEAR)[0]["id"]
        store.update_cumulative_absences(
            GradeAttendanceTimelineSummary, [{"id": row_id, "cumulative_absences": 42}]
        )
        engine.aggregate(DAY, SCHOOL_YEAR)
        assert store.select_grade_summaries(SCHOOL_YEAR)[0]["cumulative_absences"] == 42

    def test_school_filter(self, grade3, seeder, store_session, settings):
        seeder.school("S2")
        other = seeder.students("S2", grade=3, count=10)
        seeder.attendance(DAY, other)
        session, store = store_session

        result = DailyAggregationEngine(store, settings).aggregate(DAY, SCHOOL_YEAR, school_ids=["S2"])

        assert result.written == 1
        assert [r["school_id"] for r in stored_rows(store)] == ["S2"]

    def test_no_records_writes_nothing(self, grade3, store_session, settings):
        session, store = store_session
        result = DailyAggregationEngine(store, settings).aggregate(date(2024, 9, 4), SCHOOL_YEAR)
        assert result.written == 0
        assert result.errors == []

    def test_empty_school_filter_rejected(self, store_session, settings):
        session, store = store_session
        with pytest.raises(InvalidRequestError):
            DailyAggregationEngine(store, settings).aggregate(DAY, SCHOOL_YEAR, school_ids=[])

    def test_malformed_date_rejected(self, store_session, settings):
        session, store = store_session
        with pytest.raises(InvalidRequestError):
            DailyAggregationEngine(store, settings).aggregate("09/03/2024", SCHOOL_YEAR)


class TestChronicAbsentCount:
    """Students below 90% year to date are counted as chronic"""

    def test_year_to_date_rate(self, seeder, store_session, settings):
        seeder.school("S1")
        students = seeder.students("S1", grade=5, count=10)
        # Student 0 misses 2 of 3 days, student 1 misses 1 of 3; the rest attend
        seeder.attendance(date(2024, 8, 29), students, absent=students[:2])
        seeder.attendance(date(2024, 8, 30), students, absent=students[:1])
        seeder.attendance(DAY, students)
        session, store = store_session

        DailyAggregationEngine(store, settings).aggregate(DAY, SCHOOL_YEAR)

        row = store.select_grade_summaries(SCHOOL_YEAR, DAY, DAY)[0]
        assert row["chronic_absent_count"] == 2
        assert row["daily_absences"] == 0


class TestFailureHandling:
    """Fetch errors and per-group write errors"""

    def test_fetch_error_writes_nothing(self, failing_store, settings):
        result = DailyAggregationEngine(failing_store, settings).aggregate(DAY, SCHOOL_YEAR)

        assert result.fetch_failed
        assert result.written == 0
        assert len(result.errors) == 1
        assert "Failed to fetch attendance data for 2024-09-03" in result.errors[0]
        failing_store.upsert.assert_not_called()

    def test_bad_group_reported_others_written(self, seeder, store_session):
        seeder.school("S1")
        session, store = store_session
        engine = DailyAggregationEngine(store)
        good = engine.build_summaries(
            [{"student_id": "a", "school_id": "S1", "grade_level": 3, "attendance_date": DAY,
              "is_present": True, "is_full_day_absent": False, "tardy_count": 0}],
            DAY, SCHOOL_YEAR,
        )[0]
        bad = {**good, "grade_level": 4, "daily_absences": -1}

        result = write_batch(store, GradeAttendanceTimelineSummary, [good, bad], "grade summary")

        assert result.written == 1
        assert len(result.errors) == 1
        assert "grade_level=4" in result.errors[0]
        assert [r["grade_level"] for r in store.select_grade_summaries(SCHOOL_YEAR)] == [3]
