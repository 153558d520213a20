"""
Engine Exceptions

Quota and per-date failures are recovered locally (retry or skip);
everything else propagates to the caller.
"""

from typing import Optional


QUOTA_ERROR_MARKER = "Too many reads"


class ProfitLensError(Exception):
    """Base class for all engine errors"""


class QuotaExceededError(ProfitLensError):
    """A single store read would exceed the per-request read ceiling"""

    def __init__(
        self,
        message: str = QUOTA_ERROR_MARKER,
        dataset: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        super().__init__(message)
        self.dataset = dataset
        self.page_size = page_size


class InvalidDateRangeError(ProfitLensError, ValueError):
    """Caller supplied a missing, malformed or inverted date range"""


class LoaderFatalError(ProfitLensError):
    """Loading aborted; no metrics may be computed for the range"""

    def __init__(self, message: str, dataset: Optional[str] = None):
        super().__init__(message)
        self.dataset = dataset


class PerDateComputationError(ProfitLensError):
    """Computing metrics for one date failed during a rebuild"""

    def __init__(self, date: str, message: str):
        super().__init__(f"{date}: {message}")
        self.date = date


class MalformedCostConfigError(ProfitLensError):
    """Cost rule or variant component cannot be applied"""


def is_quota_exceeded(error: BaseException) -> bool:
    """Whether a store error signals a read-quota violation"""
    if isinstance(error, QuotaExceededError):
        return True
    return QUOTA_ERROR_MARKER in str(error)
