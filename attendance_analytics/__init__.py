"""
Attendance analytics for district chronic-absence monitoring.

Rolls per-student daily attendance into grade, school and district
timeline summaries and serves them to the dashboard with caching and
graceful fallbacks.
"""

__version__ = "1.0.0"
