"""
Sync error taxonomy.

Every failure the worker sees is mapped to one of these before it is recorded
in the job ledger. `kind` is the value stored in sync_jobs.error_kind.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for classified sync failures"""

    kind = "sync_error"
    retryable = True

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        platform_code: Optional[int] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.http_status = http_status
        self.platform_code = platform_code
        if retryable is not None:
            self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "http_status": self.http_status,
            "platform_code": self.platform_code,
            "retryable": self.retryable,
        }


class InvalidRange(SyncError, ValueError):
    """Planner input error (end before start, non-positive chunk size)"""

    kind = "invalid_range"
    retryable = False


class RateLimited(SyncError):
    """Platform throttled the request (HTTP 429 or a platform rate-limit code)"""

    kind = "rate_limited"

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthExpired(SyncError):
    """Credential rejected. Never retried against the same credential."""

    kind = "auth_expired"
    retryable = False


class PartialFetchFailure(SyncError):
    """Some records of a chunk could not be normalized or stored"""

    kind = "partial_fetch_failure"


class TotalFetchFailure(SyncError):
    """Nothing could be fetched: network error, timeout, 5xx or unexpected 4xx"""

    kind = "total_fetch_failure"


class StuckJob(SyncError):
    """A running job whose lease expired (the invocation crashed or timed out)"""

    kind = "stuck_job"
