"""
Error taxonomy for sync jobs.

RateLimitedError is soft: the job is deferred, never failed outright.
ConnectionInvalidError and ChunkPlanningError are fatal and never retried.
UpstreamHardError is retried up to the attempt cap.
"""
from typing import Optional


class SyncError(Exception):
    """Base class for orchestrator errors"""
    retryable = False


class RateLimitedError(SyncError):
    """Upstream rejected the call with a rate-limit signature and no snapshot exists"""
    retryable = True

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class ConnectionInvalidError(SyncError):
    """Upstream rejected the connection's credentials; they are assumed stale"""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or "connection_invalid")


class UpstreamHardError(SyncError):
    """Any upstream failure that is not a rate limit. Message kept verbatim."""
    retryable = True


class ChunkPlanningError(SyncError, ValueError):
    """Malformed backfill range, raised synchronously at plan time"""


class UnknownJobTypeError(SyncError):
    """No sync operation is registered for the job's (platform, type)"""


class PayloadTooLargeError(SyncError):
    """Upstream refused the window as too large; caller should split it"""
