"""
Exception hierarchy for the attendance analytics engine.
"""

from datetime import date
from typing import Optional


class AttendanceAnalyticsError(Exception):
    """Base exception for all attendance analytics errors."""

    def __init__(self, message=None, details=None, error_code=None):
        self.message = message or "An attendance analytics error occurred"
        self.details = details or {}
        self.error_code = error_code
        super().__init__(self.message)


class ConfigurationError(AttendanceAnalyticsError):
    """Invalid or unreadable configuration."""

    def __init__(self, message=None, details=None):
        super().__init__(message or "Invalid configuration", details, "CONFIG_ERROR")


class InvalidRequestError(AttendanceAnalyticsError, ValueError):
    """Request parameters that can never succeed (bad dates, empty filters)."""

    def __init__(self, message=None, details=None):
        super().__init__(message or "Invalid request", details, "INVALID_REQUEST")


class UpstreamReadError(AttendanceAnalyticsError):
    """The relational store was unreachable or rejected a read."""

    def __init__(self, message=None, details=None):
        super().__init__(message or "Failed to read from the store", details, "UPSTREAM_READ_ERROR")


class UpstreamWriteError(AttendanceAnalyticsError):
    """The relational store rejected an upsert or delete."""

    def __init__(self, message=None, details=None):
        super().__init__(message or "Failed to write to the store", details, "UPSTREAM_WRITE_ERROR")


class PartialBatchFailure(AttendanceAnalyticsError):
    """Some groups of a batch were written and others were not."""

    def __init__(self, message=None, errors=None, succeeded: int = 0):
        self.errors = list(errors or [])
        self.succeeded = succeeded
        super().__init__(
            message or f"{len(self.errors)} group(s) failed, {succeeded} succeeded",
            {"errors": self.errors, "succeeded": succeeded},
            "PARTIAL_BATCH_FAILURE",
        )


class CacheWriteFailure(AttendanceAnalyticsError):
    """A cache backend could not store or delete an entry."""

    def __init__(self, message=None, details=None):
        super().__init__(message or "Failed to write cache entry", details, "CACHE_WRITE_FAILURE")


class TimelineUnavailableError(AttendanceAnalyticsError):
    """Every timeline source failed for the requested range."""

    def __init__(
        self,
        start_date: date,
        end_date: date,
        message: Optional[str] = None,
        details=None,
    ):
        self.start_date = start_date
        self.end_date = end_date
        super().__init__(
            message or f"Timeline data unavailable for {start_date} to {end_date}",
            details,
            "TIMELINE_UNAVAILABLE",
        )
