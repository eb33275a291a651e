"""
Database module for the attendance analytics engine.

Provides SQLAlchemy models, connection management, and the store adapter.
"""

from .connection import (
    create_database_engine,
    get_engine,
    get_session,
    get_session_factory,
    init_db,
    session_scope,
)
from .models import (
    AttendanceRecord,
    AttendanceTimelineCache,
    Base,
    DistrictAttendanceTimelineSummary,
    GradeAttendanceTimelineSummary,
    School,
    Student,
    TimelineProcessingRun,
)
from .store import AttendanceStore, merge_rows

__all__ = [
    "create_database_engine",
    "get_engine",
    "get_session",
    "get_session_factory",
    "init_db",
    "session_scope",
    "AttendanceRecord",
    "AttendanceTimelineCache",
    "Base",
    "DistrictAttendanceTimelineSummary",
    "GradeAttendanceTimelineSummary",
    "School",
    "Student",
    "TimelineProcessingRun",
    "AttendanceStore",
    "merge_rows",
]
