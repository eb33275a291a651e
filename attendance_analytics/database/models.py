"""
SQLAlchemy ORM models for the attendance analytics engine.

Raw attendance (schools, students, attendance_records) is owned by upstream
import processes and only read here. The timeline summary tables and the
timeline cache are written by this engine.
"""

import uuid
from datetime import date, datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

# Rates are stored as NUMERIC(5,2) but handled as floats in Python
Rate = Numeric(5, 2, asdecimal=False)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class School(Base):
    """A school in the district."""
    __tablename__ = "schools"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    school_code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    school_name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    students: Mapped[List["Student"]] = relationship(back_populates="school")

    def __repr__(self) -> str:
        return f"<School {self.school_code}: {self.school_name}>"


class Student(Base):
    """
    Student enrollment record.

    grade_level uses -1 for Pre-K and 0 for Kindergarten.
    """
    __tablename__ = "students"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    school_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("schools.id"), nullable=False
    )
    grade_level: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    school: Mapped["School"] = relationship(back_populates="students")
    attendance_records: Mapped[List["AttendanceRecord"]] = relationship(
        back_populates="student"
    )

    __table_args__ = (
        CheckConstraint("grade_level BETWEEN -1 AND 12", name="chk_student_grade_level"),
        Index("idx_students_school_grade", "school_id", "grade_level"),
    )

    def __repr__(self) -> str:
        return f"<Student {self.id}: grade {self.grade_level}>"


class AttendanceRecord(Base):
    """
    One student's attendance for one calendar date.

    Immutable once ingested. is_present and is_full_day_absent are
    independent flags; a tardy student is present with tardy_count > 0.
    """
    __tablename__ = "attendance_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    student_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("students.id"), nullable=False
    )
    school_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("schools.id"), nullable=False
    )
    attendance_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_present: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_full_day_absent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tardy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    school_year: Mapped[str] = mapped_column(String(9), nullable=False)

    student: Mapped["Student"] = relationship(back_populates="attendance_records")

    __table_args__ = (
        UniqueConstraint("student_id", "attendance_date", name="uq_attendance_student_date"),
        CheckConstraint("tardy_count >= 0", name="chk_tardy_non_negative"),
        Index("idx_attendance_date", "attendance_date"),
        Index("idx_attendance_year_student", "school_year", "student_id"),
    )

    def __repr__(self) -> str:
        return f"<AttendanceRecord {self.student_id}/{self.attendance_date}>"


class _TimelineSummaryColumns:
    """Count and rate columns shared by the grade and district summaries."""

    summary_date: Mapped[date] = mapped_column(Date, nullable=False)
    grade_level: Mapped[int] = mapped_column(Integer, nullable=False)
    school_year: Mapped[str] = mapped_column(String(9), nullable=False)

    total_students: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    students_present: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    students_absent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    daily_absences: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cumulative_absences: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    excused_absences: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unexcused_absences: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tardy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    chronic_absent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attendance_rate: Mapped[float] = mapped_column(Rate, nullable=False, default=100.0)
    absence_rate: Mapped[float] = mapped_column(Rate, nullable=False, default=0.0)
    is_school_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class GradeAttendanceTimelineSummary(_TimelineSummaryColumns, Base):
    """
    Daily attendance for one grade at one school.

    Natural key: (school_id, grade_level, summary_date, school_year).
    Written by the daily aggregation engine with an idempotent upsert.
    """
    __tablename__ = "grade_attendance_timeline_summary"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    school_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("schools.id"), nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "school_id", "grade_level", "summary_date", "school_year",
            name="uq_grade_timeline_school_grade_date",
        ),
        CheckConstraint("attendance_rate BETWEEN 0 AND 100", name="chk_grade_attendance_rate"),
        CheckConstraint("absence_rate BETWEEN 0 AND 100", name="chk_grade_absence_rate"),
        CheckConstraint("daily_absences >= 0", name="chk_grade_daily_absences"),
        Index("idx_grade_timeline_school_date", "school_id", "summary_date"),
        Index("idx_grade_timeline_grade_date", "grade_level", "summary_date"),
    )

    NATURAL_KEY = ("school_id", "grade_level", "summary_date", "school_year")

    def __repr__(self) -> str:
        return (
            f"<GradeAttendanceTimelineSummary {self.school_id}/{self.grade_level}/"
            f"{self.summary_date}: {self.attendance_rate}%>"
        )


class DistrictAttendanceTimelineSummary(_TimelineSummaryColumns, Base):
    """
    Daily attendance for one grade across every school in the district.

    Natural key: (grade_level, summary_date, school_year). Always derivable
    from the grade summaries for the same date; never the source of truth.
    """
    __tablename__ = "district_attendance_timeline_summary"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    schools_included = mapped_column(JSONType, nullable=False, default=list)
    schools_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "grade_level", "summary_date", "school_year",
            name="uq_district_timeline_grade_date",
        ),
        CheckConstraint("attendance_rate BETWEEN 0 AND 100", name="chk_district_attendance_rate"),
        CheckConstraint("absence_rate BETWEEN 0 AND 100", name="chk_district_absence_rate"),
        Index("idx_district_timeline_grade_date", "grade_level", "summary_date"),
    )

    NATURAL_KEY = ("grade_level", "summary_date", "school_year")

    def __repr__(self) -> str:
        return (
            f"<DistrictAttendanceTimelineSummary {self.grade_level}/"
            f"{self.summary_date}: {self.attendance_rate}%>"
        )


class AttendanceTimelineCache(Base):
    """
    Persisted timeline responses.

    range_start/range_end are kept as columns so invalidation can delete
    every entry whose range overlaps a rewritten date range.
    """
    __tablename__ = "attendance_timeline_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cache_key: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    school_filter: Mapped[str] = mapped_column(String(50), nullable=False)
    grade_levels = mapped_column(JSONType, nullable=False, default=list)
    school_year: Mapped[str] = mapped_column(String(9), nullable=False)
    range_start: Mapped[date] = mapped_column(Date, nullable=False)
    range_end: Mapped[date] = mapped_column(Date, nullable=False)
    timeline_data = mapped_column(JSONType, nullable=False)
    metadata_ = mapped_column("metadata", JSONType, default=dict)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("idx_timeline_cache_range", "range_start", "range_end"),
        Index("idx_timeline_cache_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<AttendanceTimelineCache {self.cache_key} until {self.expires_at}>"


class TimelineProcessingRun(Base):
    """
    Tracks timeline refresh runs.

    One row per refresh_timeline call, so partial or cancelled backfills
    can be found and re-run.
    """
    __tablename__ = "timeline_processing_runs"

    run_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    school_year: Mapped[str] = mapped_column(String(9), nullable=False)
    range_start: Mapped[date] = mapped_column(Date, nullable=False)
    range_end: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    school_days_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_written: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint(
            "status IN ('running', 'completed', 'failed', 'cancelled')",
            name="chk_run_status",
        ),
    )

    def __repr__(self) -> str:
        return f"<TimelineProcessingRun {self.run_id}: {self.status}>"

    @classmethod
    def start_run(cls, session, school_year: str, range_start: date, range_end: date) -> "TimelineProcessingRun":
        """Start a new refresh run."""
        run_id = f"{utcnow():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"
        run = cls(
            run_id=run_id,
            school_year=school_year,
            range_start=range_start,
            range_end=range_end,
            status="running",
        )
        session.add(run)
        session.flush()
        return run

    def finish(
        self,
        status: str,
        school_days_processed: int,
        records_written: int,
        errors: List[str],
    ) -> None:
        """Mark run as completed, failed or cancelled."""
        self.status = status
        self.completed_at = utcnow()
        self.school_days_processed = school_days_processed
        self.records_written = records_written
        self.error_count = len(errors)
        self.error_message = "\n".join(errors[:20]) if errors else None
