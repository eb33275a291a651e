"""
Attendance timeline calculators.

Daily aggregation, district rollup, cumulative totals, the cached fallback
read path and grade-level summaries, fronted by AttendanceTimelineService.
"""

from .aggregation import aggregate_counts, calculate_rates, split_absences
from .cumulative_totals import CumulativeTotalCalculator
from .daily_aggregation import DailyAggregationEngine
from .district_rollup import DistrictRollupEngine, rollup_grade_rows
from .grade_summary import GradeLevelSummary, GradeSummaryBuilder, grade_display_name
from .results import ProcessingResult, RefreshResult
from .tiers import RiskLevel, TierClassification, classify_attendance
from .timeline_cache import (
    DatabaseCacheBackend,
    InMemoryCacheBackend,
    TimelineCache,
    build_cache_key,
)
from .timeline_queries import FallbackQueryChain, TimelineDataPoint, TimelineSource
from .timeline_service import AttendanceTimelineService, TimelineResult

__all__ = [
    "aggregate_counts",
    "calculate_rates",
    "split_absences",
    "CumulativeTotalCalculator",
    "DailyAggregationEngine",
    "DistrictRollupEngine",
    "rollup_grade_rows",
    "GradeLevelSummary",
    "GradeSummaryBuilder",
    "grade_display_name",
    "ProcessingResult",
    "RefreshResult",
    "RiskLevel",
    "TierClassification",
    "classify_attendance",
    "DatabaseCacheBackend",
    "InMemoryCacheBackend",
    "TimelineCache",
    "build_cache_key",
    "FallbackQueryChain",
    "TimelineDataPoint",
    "TimelineSource",
    "AttendanceTimelineService",
    "TimelineResult",
]
