"""
Shared attendance aggregation.

Raw attendance records and precomputed summary rows are both turned into a
"count frame" (one row per input, integer count columns) and reduced by the
single aggregate_counts() function, so the rate rule lives in one place.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

# Columns summed when rolling up
COUNT_COLUMNS = [
    "total_students",
    "students_present",
    "students_absent",
    "daily_absences",
    "excused_absences",
    "unexcused_absences",
    "tardy_count",
    "chronic_absent_count",
]

# Summed only by read-time aggregation; writers recompute it separately
CUMULATIVE_COLUMN = "cumulative_absences"

RAW_RECORD_COLUMNS = [
    "student_id",
    "school_id",
    "grade_level",
    "attendance_date",
    "is_present",
    "is_full_day_absent",
    "tardy_count",
]


def calculate_rates(students_present: int, total_students: int) -> Tuple[float, float]:
    """
    Attendance and absence rate percentages, 2 decimals.

    The absence rate is the complement of the rounded attendance rate, so
    the pair always sums to 100. A day with no students is (100, 0).

    Example:
        >>> calculate_rates(85, 100)
        (85.0, 15.0)
    """
    if total_students <= 0:
        return 100.0, 0.0
    attendance_rate = round(students_present / total_students * 100, 2)
    return attendance_rate, round(100 - attendance_rate, 2)


def split_absences(daily_absences: int, excused_percent: int = 70) -> Tuple[int, int]:
    """
    Estimated (excused, unexcused) split of full-day absences.

    Placeholder policy until excuse codes are available: excused gets
    excused_percent of the absences (rounded down), unexcused the rest.
    """
    excused = daily_absences * excused_percent // 100
    return excused, daily_absences - excused


def _native(value):
    if isinstance(value, pd.Timestamp):
        return value.date()
    if hasattr(value, "item"):
        return value.item()
    return value


def records_to_count_frame(
    records: Sequence[Dict],
    chronic_student_ids: Iterable[str] = (),
) -> pd.DataFrame:
    """
    One count row per raw attendance record.

    Args:
        records: Rows from AttendanceStore.select_attendance()
        chronic_student_ids: Students whose year-to-date rate is Tier 3

    Returns:
        DataFrame keyed by school_id, grade_level, summary_date
    """
    key_columns = ["school_id", "grade_level", "summary_date"]
    if not records:
        return pd.DataFrame(columns=key_columns + COUNT_COLUMNS)

    frame = pd.DataFrame.from_records(list(records), columns=RAW_RECORD_COLUMNS)
    chronic = set(chronic_student_ids)
    absent = frame["is_full_day_absent"].astype(bool).astype(int)

    return pd.DataFrame({
        "school_id": frame["school_id"],
        "grade_level": frame["grade_level"],
        "summary_date": frame["attendance_date"],
        "total_students": 1,
        "students_present": frame["is_present"].astype(bool).astype(int),
        "students_absent": absent,
        "daily_absences": absent,
        "tardy_count": frame["tardy_count"].fillna(0).astype(int),
        "chronic_absent_count": frame["student_id"].isin(chronic).astype(int),
    })


def summaries_to_count_frame(rows: Sequence[Dict]) -> pd.DataFrame:
    """Count frame from grade or district summary rows."""
    frame = pd.DataFrame.from_records(list(rows))
    for column in COUNT_COLUMNS:
        if column not in frame.columns:
            frame[column] = 0
    return frame


def aggregate_counts(
    frame: pd.DataFrame,
    keys: Sequence[str],
    track_schools: bool = False,
) -> List[Dict]:
    """
    Group a count frame and recompute rates from the summed counts.

    Rates are never averaged: summing the counts weights every group by
    its student count.

    Args:
        frame: Count frame from records_to_count_frame() or summaries_to_count_frame()
        keys: Grouping columns, e.g. ["school_id", "grade_level"]
        track_schools: Add schools_included (sorted ids) and schools_count

    Returns:
        One dict per group, ordered by the grouping keys
    """
    if frame.empty:
        return []

    keys = list(keys)
    summed = [c for c in COUNT_COLUMNS + [CUMULATIVE_COLUMN] if c in frame.columns]
    totals = frame.groupby(keys, sort=True)[summed].sum().reset_index()

    schools: Dict[tuple, set] = {}
    if track_schools:
        for key, school_id in zip(frame[keys].itertuples(index=False, name=None), frame["school_id"]):
            schools.setdefault(tuple(_native(k) for k in key), set()).add(school_id)

    results = []
    for record in totals.to_dict("records"):
        row = {key: _native(record[key]) for key in keys}
        for column in summed:
            row[column] = int(record[column])
        row["attendance_rate"], row["absence_rate"] = calculate_rates(
            row["students_present"], row["total_students"]
        )
        if track_schools:
            included = sorted(schools.get(tuple(row[k] for k in keys), set()))
            row["schools_included"] = included
            row["schools_count"] = len(included)
        results.append(row)

    return results


def with_running_totals(
    rows: Sequence[Dict],
    series_keys: Sequence[str],
    value_column: str = "daily_absences",
    total_column: str = CUMULATIVE_COLUMN,
    initial: Optional[Dict[tuple, int]] = None,
) -> List[Dict]:
    """
    Running sum of value_column per series, in summary_date order.

    Args:
        rows: Rows carrying summary_date, the series keys and value_column
        series_keys: Columns identifying one series, e.g. ["school_id", "grade_level"]
        initial: Optional starting totals per series key

    Returns:
        New row dicts with total_column set
    """
    running = dict(initial or {})
    results = []
    for row in sorted(rows, key=lambda r: r["summary_date"]):
        key = tuple(row[k] for k in series_keys)
        running[key] = running.get(key, 0) + int(row[value_column] or 0)
        results.append({**row, total_column: running[key]})
    return results
