"""
Sync operations dispatched by the worker pool.

Every (platform, job type) pair maps to one operation; the table is
checked for completeness at import so a new JobType or Platform cannot
ship without an operation.

An operation fetches through the rate-limit controller, writes through
the record store and reports an OperationOutcome. A result the controller
could not resolve becomes RateLimitedError (defer) or UpstreamHardError
(retry, then fail).
"""
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from sync_orchestrator.connectors.base import UpstreamFetcher
from sync_orchestrator.services.chunker import halve
from sync_orchestrator.services.connection_registry import ConnectionInfo
from sync_orchestrator.services.errors import (
    ChunkPlanningError,
    PayloadTooLargeError,
    RateLimitedError,
    UnknownJobTypeError,
    UpstreamHardError,
)
from sync_orchestrator.services.job_types import DateWindow, Job, JobType, Platform
from sync_orchestrator.services.rate_limit import RateLimitController, snapshot_key
from sync_orchestrator.services.reconciliation import Reconciler
from sync_orchestrator.services.record_store import RecordStore
from sync_orchestrator.utils.logger import log


@dataclass
class SyncContext:
    """Collaborators shared by all operations"""
    fetchers: Dict[Platform, UpstreamFetcher]
    controller: RateLimitController
    records: RecordStore
    reconciler: Reconciler


@dataclass
class OperationOutcome:
    rows_written: int = 0
    rows_fetched: int = 0
    source: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def merge(self, other: "OperationOutcome") -> "OperationOutcome":
        self.rows_written += other.rows_written
        self.rows_fetched += other.rows_fetched
        # A cached piece marks the whole result as cached
        if other.source and (self.source is None or self.source == "live"):
            self.source = other.source
        self.warnings.extend(other.warnings)
        return self


Operation = Callable[[Job, SyncContext, ConnectionInfo], Awaitable[OperationOutcome]]


async def sync_window(
    ctx: SyncContext,
    connection: ConnectionInfo,
    platform: Platform,
    entity: str,
    window: DateWindow,
) -> OperationOutcome:
    """
    Fetch one entity over one window and store it.

    A payload-too-large answer splits the window in halves, fetched in
    order, down to a single day.
    """
    fetcher = ctx.fetchers[platform]
    key = snapshot_key(platform.value, connection.id, entity, window)

    try:
        result = await ctx.controller.call_upstream(
            lambda: fetcher.fetch_range(entity, connection.credentials, window),
            key,
        )
    except PayloadTooLargeError as e:
        try:
            first, second = halve(window)
        except ChunkPlanningError:
            raise UpstreamHardError(str(e))
        log.warning(
            f"{platform.value}/{entity} {window.start}..{window.end} too large, "
            f"splitting at {first.end}"
        )
        outcome = await sync_window(ctx, connection, platform, entity, first)
        return outcome.merge(await sync_window(ctx, connection, platform, entity, second))

    if not result.success:
        if result.rate_limited:
            raise RateLimitedError(result.warning or result.error, result.retry_after_seconds)
        raise UpstreamHardError(result.error)

    stored = ctx.records.upsert_records(connection.brand_id, platform.value, entity, result.data or [])
    return OperationOutcome(
        rows_written=stored["written"],
        rows_fetched=result.rows,
        source=result.source,
        warnings=[result.warning] if result.warning else [],
    )


async def _sync_all_entities(job: Job, ctx: SyncContext, connection: ConnectionInfo) -> OperationOutcome:
    outcome = OperationOutcome()
    for entity in ctx.fetchers[job.platform].entities:
        outcome.merge(await sync_window(ctx, connection, job.platform, entity, job.payload.window))
    return outcome


async def recent_sync(job: Job, ctx: SyncContext, connection: ConnectionInfo) -> OperationOutcome:
    """Every entity over the recent window, so the UI has data before backfill finishes"""
    return await _sync_all_entities(job, ctx, connection)


async def daily_sync(job: Job, ctx: SyncContext, connection: ConnectionInfo) -> OperationOutcome:
    return await _sync_all_entities(job, ctx, connection)


async def historical_chunk(job: Job, ctx: SyncContext, connection: ConnectionInfo) -> OperationOutcome:
    payload = job.payload
    return await sync_window(ctx, connection, job.platform, payload.entity, payload.window)


async def reconcile(job: Job, ctx: SyncContext, connection: ConnectionInfo) -> OperationOutcome:
    ctx.reconciler.reconcile(job.brand_id, job.platform)
    return OperationOutcome()


DISPATCH: Dict[Tuple[Platform, JobType], Operation] = {}
for _platform in (Platform.ADS, Platform.COMMERCE):
    DISPATCH[(_platform, JobType.RECENT_SYNC)] = recent_sync
    DISPATCH[(_platform, JobType.HISTORICAL_BACKFILL)] = historical_chunk
    DISPATCH[(_platform, JobType.DAILY_SYNC)] = daily_sync
    DISPATCH[(_platform, JobType.RECONCILE)] = reconcile

_missing = [(p.value, t.value) for p in Platform for t in JobType if (p, t) not in DISPATCH]
if _missing:
    raise RuntimeError(f"No sync operation registered for {_missing}")


def get_operation(platform: Platform, job_type: JobType) -> Operation:
    try:
        return DISPATCH[(platform, job_type)]
    except KeyError:
        raise UnknownJobTypeError(f"No sync operation for {platform}/{job_type}")
