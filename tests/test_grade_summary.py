"""
Tests for grade-level summaries.

Run: pytest tests/test_grade_summary.py -v
"""

from datetime import date

import pytest

from attendance_analytics.calculators.daily_aggregation import DailyAggregationEngine
from attendance_analytics.calculators.grade_summary import (
    GradeSummaryBuilder,
    calculate_trend,
    grade_display_name,
    monthly_attendance_rates,
)

SCHOOL_YEAR = "2024-2025"


class TestGradeNames:
    @pytest.mark.parametrize("grade,name", [(-1, "Pre-K"), (0, "Kindergarten"), (1, "Grade 1"), (12, "Grade 12")])
    def test_display_name(self, grade, name):
        assert grade_display_name(grade) == name


class TestMonthlyTrend:
    """Monthly rates from daily rows and the resulting direction"""

    def test_monthly_rates(self):
        rows = [
            {"summary_date": date(2024, 9, 3), "students_present": 18, "total_students": 20},
            {"summary_date": date(2024, 9, 4), "students_present": 20, "total_students": 20},
            {"summary_date": date(2024, 10, 1), "students_present": 19, "total_students": 20},
        ]
        assert monthly_attendance_rates(rows) == [
            {"month": "2024-09", "attendance_rate": 95.0},
            {"month": "2024-10", "attendance_rate": 95.0},
        ]

    def test_no_rows(self):
        assert monthly_attendance_rates([]) == []

    @pytest.mark.parametrize("rates,trend", [
        ([90.0, 91.5], "up"),
        ([90.0, 88.5], "down"),
        ([90.0, 91.0], "stable"),
        ([90.0], "stable"),
        ([], "stable"),
    ])
    def test_trend(self, rates, trend):
        monthly = [{"month": f"2024-{9 + i:02d}", "attendance_rate": r} for i, r in enumerate(rates)]
        assert calculate_trend(monthly) == trend


class TestGradeSummaryBuilder:
    """Per-grade summaries from the store"""

    def test_grades_ordered_with_trend(self, seeder, store_session, settings):
        seeder.school("S1")
        kinder = seeder.students("S1", grade=0, count=10)
        fifth = seeder.students("S1", grade=5, count=10)
        seeder.attendance(date(2024, 9, 3), kinder + fifth, absent=fifth[:5])
        seeder.attendance(date(2024, 10, 1), kinder + fifth)
        session, store = store_session
        engine = DailyAggregationEngine(store, settings)
        engine.aggregate(date(2024, 9, 3), SCHOOL_YEAR)
        engine.aggregate(date(2024, 10, 1), SCHOOL_YEAR)

        summaries = GradeSummaryBuilder(store, settings).build("S1", SCHOOL_YEAR)

        assert [s.grade_name for s in summaries] == ["Kindergarten", "Grade 5"]
        kindergarten, grade5 = summaries
        assert kindergarten.attendance_rate == 100.0
        assert kindergarten.risk_level == "low"
        assert kindergarten.trend == "stable"
        assert grade5.attendance_rate == 75.0
        assert grade5.trend == "up"
        assert [m["month"] for m in grade5.monthly_trend] == ["2024-09", "2024-10"]
        assert grade5.tier3 == 5
        assert grade5.last_updated is not None

    def test_as_of_limits_range(self, seeder, store_session, settings):
        seeder.school("S1")
        students = seeder.students("S1", grade=2, count=4)
        seeder.attendance(date(2024, 9, 3), students)
        seeder.attendance(date(2024, 10, 1), students, absent=students)
        session, store = store_session

        summaries = GradeSummaryBuilder(store, settings).build(None, SCHOOL_YEAR, as_of=date(2024, 9, 30))

        assert summaries[0].attendance_rate == 100.0
        assert summaries[0].tier1 == 4

    def test_grade_with_no_records(self, seeder, store_session, settings):
        seeder.school("S1")
        seeder.students("S1", grade=1, count=3)
        session, store = store_session

        summary = GradeSummaryBuilder(store, settings).build("S1", SCHOOL_YEAR)[0]

        assert summary.attendance_rate == 100.0
        assert summary.tier1 == 3
        assert summary.to_dict()["grade_name"] == "Grade 1"
