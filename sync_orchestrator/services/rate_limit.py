"""
Rate-limit & fallback controller.

Wraps every upstream call. Failures are classified as rate limits (soft)
or anything else (hard). When a snapshot of the same query exists it is
served instead of the error, so callers see a successful response with a
`source` marker rather than a failure. Payload-too-large and rejected
credentials are the exceptions; see the outcome table.

Outcomes:
    live call ok                      -> success, source=live (snapshot refreshed)
    rate limited, snapshot            -> success, source=cached_due_to_rate_limit
    rate limited, no snapshot         -> not success, rate_limited, retry_after_seconds
    other error, snapshot             -> success, source=cached_due_to_exception
    other error, no snapshot          -> not success, error (upstream text verbatim)
    payload too large                 -> PayloadTooLargeError raised, snapshot or not
    credentials rejected              -> ConnectionInvalidError raised, snapshot or not

The last two never resolve to an UpstreamResult: the caller must split the
window, or fail the job and mark the connection for reconnection.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sync_orchestrator.config import get_settings
from sync_orchestrator.models.snapshot import UpstreamSnapshot
from sync_orchestrator.services.errors import ConnectionInvalidError, PayloadTooLargeError
from sync_orchestrator.services.job_types import DateWindow
from sync_orchestrator.utils.logger import log

settings = get_settings()

SOURCE_LIVE = "live"
SOURCE_CACHED_RATE_LIMIT = "cached_due_to_rate_limit"
SOURCE_CACHED_EXCEPTION = "cached_due_to_exception"


def is_rate_limit_error(error: Exception, phrases: Optional[Iterable[str]] = None) -> bool:
    """Case-insensitive substring match of the error text against known rate-limit phrases."""
    phrases = phrases if phrases is not None else settings.rate_limit_phrases
    error_str = f"{type(error).__name__}: {error}".lower()
    return any(phrase.lower() in error_str for phrase in phrases)


def snapshot_key(platform: str, connection_id: str, entity: str, window: DateWindow) -> str:
    return f"{platform}:{connection_id}:{entity}:{window.start.isoformat()}:{window.end.isoformat()}"


@dataclass
class Snapshot:
    records: List[dict]
    row_count: int
    fetched_at: datetime


@dataclass
class UpstreamResult:
    success: bool
    source: Optional[str] = None
    data: Optional[List[dict]] = None
    rows: int = 0
    rate_limited: bool = False
    retry_after_seconds: Optional[int] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    snapshot_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        result = {"success": self.success, "source": self.source, "rows": self.rows}
        if self.rate_limited:
            result["rate_limited"] = True
        if self.retry_after_seconds is not None:
            result["retry_after_seconds"] = self.retry_after_seconds
        if self.error is not None:
            result["error"] = self.error
        if self.warning is not None:
            result["warning"] = self.warning
        if self.snapshot_at is not None:
            result["snapshot_at"] = self.snapshot_at.isoformat()
        return result


class SnapshotStore:
    """Last good upstream response per query key"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def get(self, key: str) -> Optional[Snapshot]:
        with self.session_factory() as db:
            row = db.execute(
                select(UpstreamSnapshot).where(UpstreamSnapshot.snapshot_key == key)
            ).scalars().first()
            if not row:
                return None
            return Snapshot(records=list(row.records or []), row_count=row.row_count, fetched_at=row.fetched_at)

    def save(self, key: str, records: List[dict]) -> None:
        values = dict(records=records, row_count=len(records), fetched_at=datetime.utcnow())
        for _ in range(2):
            with self.session_factory() as db:
                result = db.execute(
                    update(UpstreamSnapshot).where(UpstreamSnapshot.snapshot_key == key).values(**values)
                )
                if result.rowcount == 0:
                    db.add(UpstreamSnapshot(snapshot_key=key, **values))
                try:
                    db.commit()
                    return
                except IntegrityError:
                    db.rollback()


class RateLimitController:
    """Classifies upstream failures and falls back to stored snapshots"""

    def __init__(
        self,
        snapshots: SnapshotStore,
        retry_after_seconds: Optional[int] = None,
        phrases: Optional[Iterable[str]] = None,
    ):
        self.snapshots = snapshots
        self.retry_after_seconds = retry_after_seconds or settings.rate_limit_retry_after_seconds
        self.phrases = list(phrases) if phrases is not None else list(settings.rate_limit_phrases)

    async def call_upstream(
        self,
        fn: Callable[[], Awaitable[List[dict]]],
        key: Optional[str] = None,
    ) -> UpstreamResult:
        """
        Run `fn` and resolve every other failure into an UpstreamResult.

        PayloadTooLargeError is re-raised untouched: it asks the caller to
        split the window, a cached answer for the full window would be wrong.
        ConnectionInvalidError is re-raised as well so stale credentials
        surface instead of being masked by old data.
        """
        try:
            records = list(await fn())
        except (PayloadTooLargeError, ConnectionInvalidError):
            raise
        except Exception as e:
            return self._fallback(e, key)

        if key:
            self.snapshots.save(key, records)
        return UpstreamResult(success=True, source=SOURCE_LIVE, data=records, rows=len(records))

    def _fallback(self, error: Exception, key: Optional[str]) -> UpstreamResult:
        message = str(error) or type(error).__name__
        rate_limited = is_rate_limit_error(error, self.phrases)
        snapshot = self.snapshots.get(key) if key else None

        if snapshot is not None:
            source = SOURCE_CACHED_RATE_LIMIT if rate_limited else SOURCE_CACHED_EXCEPTION
            log.warning(f"Serving snapshot for {key} ({source}, {snapshot.row_count} rows): {message}")
            return UpstreamResult(
                success=True,
                source=source,
                data=snapshot.records,
                rows=snapshot.row_count,
                rate_limited=rate_limited,
                warning=message,
                snapshot_at=snapshot.fetched_at,
            )

        if rate_limited:
            log.warning(f"Rate limited with no snapshot for {key}; retry in {self.retry_after_seconds}s")
            return UpstreamResult(
                success=False,
                rate_limited=True,
                retry_after_seconds=self.retry_after_seconds,
                error="No data yet, upstream rate limited. Retry later.",
                warning=message,
            )

        log.error(f"Upstream call failed for {key}: {message}")
        return UpstreamResult(success=False, error=message)
