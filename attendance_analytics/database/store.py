"""
Relational store adapter for the attendance timeline engine.

Every read and write the calculators make goes through AttendanceStore, so
the engine only depends on three operations: filtered selects, bulk upsert
keyed on a natural key, and delete-by-range. Rows cross this boundary as
plain dicts.
"""

import logging
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import and_, case, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import UpstreamReadError, UpstreamWriteError
from .models import (
    AttendanceRecord,
    AttendanceTimelineCache,
    DistrictAttendanceTimelineSummary,
    GradeAttendanceTimelineSummary,
    School,
    Student,
    utcnow,
)

logger = logging.getLogger(__name__)

_INSERT_CONSTRUCTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def merge_rows(rows: Iterable[Dict], keys: Sequence[str]) -> List[Dict]:
    """
    Collapse rows sharing a natural key, later values winning.

    Order of first appearance is kept so a bulk upsert never touches the
    same key twice in one statement.
    """
    merged: Dict[tuple, Dict] = {}
    for row in rows:
        key = tuple(row[k] for k in keys)
        merged[key] = {**merged[key], **row} if key in merged else dict(row)
    return list(merged.values())


class AttendanceStore:
    """
    Query/upsert interface over one SQLAlchemy session.

    The caller owns the transaction (see session_scope()); the store only
    flushes statements into it.
    """

    def __init__(self, session: Session):
        self.session = session

    @contextmanager
    def _reading(self, operation: str, **context):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Store read failed during {operation}: {e}")
            raise UpstreamReadError(
                f"Failed to {operation}: {e.__class__.__name__}",
                {"operation": operation, **context},
            ) from e

    @contextmanager
    def _writing(self, operation: str, **context):
        try:
            yield
        except SQLAlchemyError as e:
            logger.error(f"Store write failed during {operation}: {e}")
            raise UpstreamWriteError(
                f"Failed to {operation}: {e.__class__.__name__}",
                {"operation": operation, **context},
            ) from e

    def _all(self, stmt) -> List[Dict]:
        return [dict(row) for row in self.session.execute(stmt).mappings().all()]

    def rollback(self) -> None:
        """Discard a failed statement so the session can be reused for reads."""
        self.session.rollback()

    # =========================================================================
    # RAW ATTENDANCE
    # =========================================================================

    def select_attendance(
        self,
        start_date: date,
        end_date: Optional[date] = None,
        school_ids: Optional[Sequence[str]] = None,
        grades: Optional[Sequence[int]] = None,
        school_year: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        """
        Raw attendance joined to the student's school and grade.

        Args:
            start_date: First date (or the only date when end_date is None)
            end_date: Optional last date, inclusive
            school_ids: Restrict to students enrolled at these schools
            grades: Restrict to these grade levels
            school_year: Restrict to one school year
            limit: Maximum rows returned

        Returns:
            List of dicts ordered by date, school, grade, student
        """
        end_date = end_date or start_date
        stmt = (
            select(
                AttendanceRecord.student_id,
                Student.school_id,
                School.school_code,
                School.school_name,
                Student.grade_level,
                AttendanceRecord.attendance_date,
                AttendanceRecord.is_present,
                AttendanceRecord.is_full_day_absent,
                AttendanceRecord.tardy_count,
                AttendanceRecord.school_year,
            )
            .join(Student, AttendanceRecord.student_id == Student.id)
            .join(School, Student.school_id == School.id)
            .where(AttendanceRecord.attendance_date.between(start_date, end_date))
            .order_by(
                AttendanceRecord.attendance_date,
                Student.school_id,
                Student.grade_level,
                AttendanceRecord.student_id,
            )
        )
        if school_ids:
            stmt = stmt.where(Student.school_id.in_(list(school_ids)))
        if grades:
            stmt = stmt.where(Student.grade_level.in_(list(grades)))
        if school_year:
            stmt = stmt.where(AttendanceRecord.school_year == school_year)
        if limit:
            stmt = stmt.limit(limit)

        with self._reading("select attendance", start=str(start_date), end=str(end_date)):
            return self._all(stmt)

    def select_student_totals(
        self,
        school_year: str,
        start_date: date,
        end_date: date,
        school_ids: Optional[Sequence[str]] = None,
        student_ids: Optional[Sequence[str]] = None,
    ) -> List[Dict]:
        """Per-student present and recorded day counts over a date range."""
        days_present = func.sum(case((AttendanceRecord.is_present.is_(True), 1), else_=0))
        stmt = (
            select(
                AttendanceRecord.student_id,
                Student.school_id,
                Student.grade_level,
                days_present.label("days_present"),
                func.count(AttendanceRecord.id).label("days_recorded"),
            )
            .join(Student, AttendanceRecord.student_id == Student.id)
            .where(
                AttendanceRecord.school_year == school_year,
                AttendanceRecord.attendance_date.between(start_date, end_date),
            )
            .group_by(AttendanceRecord.student_id, Student.school_id, Student.grade_level)
        )
        if school_ids:
            stmt = stmt.where(Student.school_id.in_(list(school_ids)))
        if student_ids:
            stmt = stmt.where(AttendanceRecord.student_id.in_(list(student_ids)))

        with self._reading("select student totals", school_year=school_year):
            return self._all(stmt)

    def select_students(self, school_id: Optional[str] = None) -> List[Dict]:
        """Active students with their school and grade."""
        stmt = select(Student.id, Student.school_id, Student.grade_level).where(
            Student.is_active.is_(True)
        )
        if school_id:
            stmt = stmt.where(Student.school_id == school_id)

        with self._reading("select students", school_id=school_id):
            return self._all(stmt)

    def select_school(self, school_id: str) -> Optional[Dict]:
        stmt = select(School.id, School.school_code, School.school_name).where(
            School.id == school_id
        )
        with self._reading("select school", school_id=school_id):
            rows = self._all(stmt)
        return rows[0] if rows else None

    # =========================================================================
    # TIMELINE SUMMARIES
    # =========================================================================

    def select_grade_summaries(
        self,
        school_year: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        school_ids: Optional[Sequence[str]] = None,
        grades: Optional[Sequence[int]] = None,
        school_days_only: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        """Grade summary rows ordered by date, grade, school."""
        table = GradeAttendanceTimelineSummary.__table__
        stmt = (
            select(table)
            .where(table.c.school_year == school_year)
            .order_by(table.c.summary_date, table.c.grade_level, table.c.school_id)
        )
        if start_date:
            stmt = stmt.where(table.c.summary_date >= start_date)
        if end_date:
            stmt = stmt.where(table.c.summary_date <= end_date)
        if school_ids:
            stmt = stmt.where(table.c.school_id.in_(list(school_ids)))
        if grades:
            stmt = stmt.where(table.c.grade_level.in_(list(grades)))
        if school_days_only:
            stmt = stmt.where(table.c.is_school_day.is_(True))
        if limit:
            stmt = stmt.limit(limit)

        with self._reading("select grade summaries", school_year=school_year):
            return self._all(stmt)

    def select_district_summaries(
        self,
        school_year: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        grades: Optional[Sequence[int]] = None,
        school_days_only: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict]:
        """District summary rows ordered by date, grade."""
        table = DistrictAttendanceTimelineSummary.__table__
        stmt = (
            select(table)
            .where(table.c.school_year == school_year)
            .order_by(table.c.summary_date, table.c.grade_level)
        )
        if start_date:
            stmt = stmt.where(table.c.summary_date >= start_date)
        if end_date:
            stmt = stmt.where(table.c.summary_date <= end_date)
        if grades:
            stmt = stmt.where(table.c.grade_level.in_(list(grades)))
        if school_days_only:
            stmt = stmt.where(table.c.is_school_day.is_(True))
        if limit:
            stmt = stmt.limit(limit)

        with self._reading("select district summaries", school_year=school_year):
            return self._all(stmt)

    # =========================================================================
    # TIMELINE CACHE
    # =========================================================================

    def select_cache_entry(self, cache_key: str) -> Optional[Dict]:
        table = AttendanceTimelineCache.__table__
        stmt = select(table).where(table.c.cache_key == cache_key)
        with self._reading("select cache entry", cache_key=cache_key):
            rows = self._all(stmt)
        return rows[0] if rows else None

    def delete_cache_entry(self, cache_key: str) -> int:
        table = AttendanceTimelineCache.__table__
        with self._writing("delete cache entry", cache_key=cache_key):
            result = self.session.execute(delete(table).where(table.c.cache_key == cache_key))
        return result.rowcount

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert(
        self,
        model,
        rows: Sequence[Dict],
        conflict_keys: Optional[Sequence[str]] = None,
    ) -> int:
        """
        Insert rows, overwriting existing rows with the same natural key.

        Issues one INSERT ... ON CONFLICT DO UPDATE statement for the batch.

        Args:
            model: ORM model class
            rows: Column-name keyed dicts, all with the same keys
            conflict_keys: Columns of the unique constraint (defaults to model.NATURAL_KEY)

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        conflict_keys = list(conflict_keys or model.NATURAL_KEY)
        dialect = self.session.get_bind().dialect.name
        insert_construct = _INSERT_CONSTRUCTS.get(dialect)
        if insert_construct is None:
            raise UpstreamWriteError(
                f"Upsert is not supported for the {dialect} dialect",
                {"table": model.__tablename__},
            )

        table = model.__table__
        now = utcnow()
        values = []
        for row in merge_rows(rows, conflict_keys):
            row = dict(row)
            if "created_at" in table.c:
                row.setdefault("created_at", now)
            if "updated_at" in table.c:
                row["updated_at"] = now
            values.append(row)

        stmt = insert_construct(table).values(values)
        update_columns = {
            column: stmt.excluded[column]
            for column in values[0]
            if column not in conflict_keys and column != "created_at"
        }
        stmt = stmt.on_conflict_do_update(index_elements=conflict_keys, set_=update_columns)

        with self._writing("upsert", table=model.__tablename__, rows=len(values)):
            self.session.execute(stmt)
        return len(values)

    def update_cumulative_absences(self, model, updates: Sequence[Dict]) -> int:
        """
        Bulk update cumulative_absences by primary key.

        Args:
            model: GradeAttendanceTimelineSummary or DistrictAttendanceTimelineSummary
            updates: Dicts with "id" and "cumulative_absences"
        """
        if not updates:
            return 0
        payload = [
            {"id": u["id"], "cumulative_absences": u["cumulative_absences"]} for u in updates
        ]
        with self._writing("update cumulative absences", table=model.__tablename__):
            self.session.execute(update(model), payload)
        return len(payload)

    def delete_by_range(
        self,
        model,
        start_date: date,
        end_date: date,
        date_column: str = "summary_date",
        end_column: Optional[str] = None,
        **filters,
    ) -> int:
        """
        Delete rows inside (or overlapping) a date range.

        With end_column set, rows are treated as ranges
        [date_column, end_column] and deleted when they overlap
        [start_date, end_date]; otherwise date_column must fall inside it.
        Extra keyword arguments are equality filters.

        Returns:
            Number of rows deleted
        """
        table = model.__table__
        if end_column:
            predicate = and_(table.c[date_column] <= end_date, table.c[end_column] >= start_date)
        else:
            predicate = table.c[date_column].between(start_date, end_date)

        stmt = delete(table).where(predicate)
        for column, value in filters.items():
            stmt = stmt.where(table.c[column] == value)

        with self._writing("delete by range", table=model.__tablename__):
            result = self.session.execute(stmt)
        return result.rowcount
