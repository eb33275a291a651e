"""
Test fixtures for the attendance analytics engine.

Usage:
    pytest tests/ -v

Database tests run against an in-memory SQLite database with the ORM
schema created fresh for each test.
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import sessionmaker

from attendance_analytics.database.connection import create_database_engine, init_db, session_scope
from attendance_analytics.database.models import AttendanceRecord, School, Student
from attendance_analytics.database.store import AttendanceStore
from attendance_analytics.exceptions import UpstreamReadError
from attendance_analytics.utilities.config import TimelineSettings

SCHOOL_YEAR = "2024-2025"

# A Tuesday in the 2024-2025 school year
SCHOOL_DAY = date(2024, 9, 3)


# --- Database Fixtures ---

@pytest.fixture
def engine():
    """In-memory SQLite engine with all tables created."""
    eng = create_database_engine("sqlite://")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def settings():
    return TimelineSettings()


# --- Seeding ---

class AttendanceSeeder:
    """
    Create schools, students and attendance records.

    Usage:
        def test_something(seeder):
            seeder.school("S1")
            students = seeder.students("S1", grade=3, count=100)
            seeder.attendance(SCHOOL_DAY, students, absent=students[:15])
    """

    def __init__(self, factory):
        self.factory = factory

    def school(self, school_id, name=None):
        with session_scope(self.factory) as session:
            session.add(School(
                id=school_id,
                school_code=f"CODE-{school_id}",
                school_name=name or f"School {school_id}",
            ))
        return school_id

    def students(self, school_id, grade, count, prefix=None, is_active=True):
        prefix = prefix or f"{school_id}-G{grade}"
        ids = [f"{prefix}-{i:03d}" for i in range(count)]
        with session_scope(self.factory) as session:
            session.add_all([
                Student(id=sid, school_id=school_id, grade_level=grade, is_active=is_active)
                for sid in ids
            ])
        return ids

    def attendance(self, day, student_ids, absent=(), tardy=(), school_year=SCHOOL_YEAR):
        absent = set(absent)
        tardy = set(tardy)
        with session_scope(self.factory) as session:
            school_of = dict(
                session.query(Student.id, Student.school_id)
                .filter(Student.id.in_(list(student_ids)))
                .all()
            )
            session.add_all([
                AttendanceRecord(
                    student_id=sid,
                    school_id=school_of[sid],
                    attendance_date=day,
                    is_present=sid not in absent,
                    is_full_day_absent=sid in absent,
                    tardy_count=1 if sid in tardy else 0,
                    school_year=school_year,
                )
                for sid in student_ids
            ])


@pytest.fixture
def seeder(session_factory):
    return AttendanceSeeder(session_factory)


@pytest.fixture
def store_session(session_factory):
    """A session and AttendanceStore for direct store/engine tests."""
    session = session_factory()
    yield session, AttendanceStore(session)
    session.rollback()
    session.close()


# --- Time ---

class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2024, 9, 3, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


# --- Failing Stores ---

@pytest.fixture
def failing_store():
    """
    AttendanceStore mock whose reads all raise UpstreamReadError.

    Usage:
        def test_fetch_error(failing_store):
            engine = DailyAggregationEngine(failing_store)
            result = engine.aggregate(SCHOOL_DAY, SCHOOL_YEAR)
            assert result.fetch_failed
    """
    store = MagicMock(spec=AttendanceStore)
    error = UpstreamReadError("Failed to select: OperationalError", {"operation": "select"})
    for name in (
        "select_attendance",
        "select_student_totals",
        "select_students",
        "select_school",
        "select_grade_summaries",
        "select_district_summaries",
    ):
        getattr(store, name).side_effect = error
    return store
