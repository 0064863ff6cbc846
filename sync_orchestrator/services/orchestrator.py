"""
Sync orchestrator: wires the stores, queue, controller and worker pool
together and exposes the operations used by the API, scheduler and CLI.

Stores are injected so tests can run the whole flow on in-memory fakes.
"""
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from sync_orchestrator.config import get_settings
from sync_orchestrator.connectors import build_fetchers
from sync_orchestrator.connectors.base import UpstreamFetcher
from sync_orchestrator.models.base import SessionLocal
from sync_orchestrator.services import chunker
from sync_orchestrator.services.connection_registry import ConnectionInfo, ConnectionRegistry
from sync_orchestrator.services.job_queue import JobQueue
from sync_orchestrator.services.job_store import JobStore, SqlJobStore
from sync_orchestrator.services.job_types import (
    DailySyncPayload,
    DateWindow,
    EtlStatus,
    Job,
    JobStatus,
    JobType,
    LedgerKey,
    Platform,
    ReconcilePayload,
    RecentSyncPayload,
    SyncStatus,
)
from sync_orchestrator.services.ledger import LedgerStore, SqlLedgerStore
from sync_orchestrator.services.rate_limit import RateLimitController, SnapshotStore
from sync_orchestrator.services.reconciliation import Reconciler
from sync_orchestrator.services.record_store import RecordStore
from sync_orchestrator.services.sync_operations import SyncContext
from sync_orchestrator.services.worker_pool import CONNECTION_INVALID, WorkerPool
from sync_orchestrator.utils.logger import log

settings = get_settings()

SUPERSEDED = "superseded_by_new_run"


def _new_run_id() -> str:
    return uuid.uuid4().hex


class SyncOrchestrator:
    """Entry point for triggering, draining and inspecting syncs"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        job_store: Optional[JobStore] = None,
        ledger: Optional[LedgerStore] = None,
        fetchers: Optional[Dict[Platform, UpstreamFetcher]] = None,
    ):
        self.session_factory = session_factory
        self.registry = ConnectionRegistry(session_factory)
        self.queue = JobQueue(job_store or SqlJobStore(session_factory))
        self.ledger = ledger or SqlLedgerStore(session_factory)
        self.controller = RateLimitController(SnapshotStore(session_factory))
        self.records = RecordStore(session_factory)
        self.reconciler = Reconciler(session_factory)
        self.context = SyncContext(
            fetchers=fetchers or build_fetchers(),
            controller=self.controller,
            records=self.records,
            reconciler=self.reconciler,
        )
        self.workers = WorkerPool(self.queue, self.ledger, self.registry, self.context)

    def entities_for(self, platform: Platform) -> List[str]:
        return list(self.context.fetchers[platform].entities)

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def trigger_sync(self, brand_id: str, platform: Platform, force: bool = False) -> Dict[str, Any]:
        """
        Enqueue a recent sync plus a chunked historical backfill per entity.

        Skipped when any ledger row of the connection was updated within the
        fresh-sync window, unless `force` is set. Waiting jobs of an older run
        are dropped; in-flight ones finish but no longer touch the ledger.

        Raises:
            ChunkPlanningError: the backfill range cannot be planned
        """
        connection = self.registry.get_active(brand_id, platform)
        if connection is None:
            return {
                "success": False,
                "error": f"No active {platform.value} connection for brand {brand_id}",
                "jobs_enqueued": 0,
            }

        if not force and self.ledger.recently_updated(connection.id, settings.fresh_sync_window_minutes):
            log.info(f"Skipping {platform.value} sync for brand {brand_id}: synced within "
                     f"{settings.fresh_sync_window_minutes} min")
            return {
                "success": True,
                "skipped": True,
                "reason": "recently_synced",
                "connection_id": connection.id,
                "jobs_enqueued": 0,
            }

        # Plan before touching the queue so a bad range enqueues nothing
        full_range = chunker.backfill_window(settings.backfill_days, connection.account_created_at)
        plans = {
            entity: chunker.plan(entity, full_range, settings.chunk_span_days)
            for entity in self.entities_for(platform)
        }

        run_id = _new_run_id()
        superseded = self.queue.drop_for_connection(connection.id, reason=SUPERSEDED)

        recent = Job(
            platform=platform,
            type=JobType.RECENT_SYNC,
            brand_id=brand_id,
            connection_id=connection.id,
            run_id=run_id,
            payload=RecentSyncPayload(window=DateWindow.trailing(settings.recent_sync_days)),
        )
        self.ledger.begin(LedgerKey.for_job(recent), run_id)
        self.queue.enqueue(recent)

        historical = {}
        for entity, chunks in plans.items():
            self.ledger.begin(
                LedgerKey(brand_id, connection.id, entity, f"historical_{entity}"), run_id
            )
            self.queue.enqueue_backfill(platform, brand_id, connection.id, chunks, run_id=run_id)
            historical[entity] = len(chunks)

        self.registry.set_sync_status(connection.id, SyncStatus.STARTING)

        jobs_enqueued = 1 + sum(historical.values())
        log.info(
            f"Triggered {platform.value} sync for brand {brand_id} (run {run_id}): "
            f"{jobs_enqueued} jobs, backfill {full_range.start}..{full_range.end}"
        )
        return {
            "success": True,
            "skipped": False,
            "run_id": run_id,
            "connection_id": connection.id,
            "jobs_enqueued": jobs_enqueued,
            "recent_sync": 1,
            "historical_chunks": historical,
            "backfill_range": full_range.to_dict(),
            "superseded_jobs": len(superseded),
        }

    def _enqueue_single(self, connection: ConnectionInfo, job_type: JobType, payload) -> Optional[int]:
        if self.queue.pending_count(connection_id=connection.id, job_type=job_type):
            return None
        run_id = _new_run_id()
        job = Job(
            platform=connection.platform,
            type=job_type,
            brand_id=connection.brand_id,
            connection_id=connection.id,
            run_id=run_id,
            payload=payload,
        )
        self.ledger.begin(LedgerKey.for_job(job), run_id)
        return self.queue.enqueue(job)

    def enqueue_daily_syncs(self) -> int:
        """Enqueue a daily sync for every active connection without one pending"""
        count = 0
        for connection in self.registry.list_active():
            window = DateWindow.trailing(settings.daily_sync_days)
            if self._enqueue_single(connection, JobType.DAILY_SYNC, DailySyncPayload(window=window)):
                count += 1
        log.info(f"Enqueued {count} daily syncs")
        return count

    def enqueue_reconciles(self) -> int:
        """Enqueue one reconcile per brand and platform with an active connection"""
        count = 0
        seen = set()
        for connection in self.registry.list_active():
            key = (connection.brand_id, connection.platform)
            if key in seen:
                continue
            seen.add(key)
            if self._enqueue_single(connection, JobType.RECONCILE, ReconcilePayload()):
                count += 1
        log.info(f"Enqueued {count} reconcile jobs")
        return count

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def process(self, max_jobs: int, platform: Optional[Platform] = None) -> Dict[str, Any]:
        """Dequeue and process up to `max_jobs` jobs; failures are reported, not raised"""
        outcomes = await self.workers.drain(max_jobs, platform)
        counts: Dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status] = counts.get(outcome.status, 0) + 1
        return {
            "success": True,
            "processed": len(outcomes),
            "summary": counts,
            "results": [outcome.to_dict() for outcome in outcomes],
        }

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def register_connection(self, brand_id: str, platform: Platform, credentials: Dict[str, Any], **kwargs) -> ConnectionInfo:
        return self.registry.register(brand_id, platform, credentials, **kwargs)

    def revoke_connection(self, connection_id: str) -> Dict[str, Any]:
        """Revoke a connection and drop its waiting jobs without dispatching them"""
        revoked = self.registry.revoke(connection_id)
        dropped = self.queue.drop_for_connection(connection_id, reason=CONNECTION_INVALID)

        for record in self.ledger.list_for_connection(connection_id):
            if not record.is_terminal:
                self.ledger.upsert(
                    record.key,
                    {"status": EtlStatus.FAILED.value, "error_message": CONNECTION_INVALID},
                    run_id=record.run_id,
                )

        return {
            "success": revoked,
            "connection_id": connection_id,
            "dropped_jobs": dropped,
        }

    # ------------------------------------------------------------------
    # Status & reporting
    # ------------------------------------------------------------------

    def get_sync_status(self, brand_id: str, platform: Platform) -> Dict[str, Any]:
        connection = self.registry.get_active(brand_id, platform)
        if connection is None:
            return {
                "brand_id": brand_id,
                "platform": platform.value,
                "connected": False,
                "sync_status": None,
                "last_synced_at": None,
                "ledger": [],
                "queue": {"waiting": 0, "active": 0},
            }

        ledger = self.ledger.list_for_connection(connection.id)
        return {
            "brand_id": brand_id,
            "platform": platform.value,
            "connected": True,
            "connection_id": connection.id,
            "sync_status": connection.sync_status,
            "last_synced_at": connection.last_synced_at.isoformat() if connection.last_synced_at else None,
            "ledger": [record.to_dict() for record in ledger],
            "queue": {
                "waiting": self.queue.store.count((JobStatus.WAITING,), connection_id=connection.id),
                "active": self.queue.store.count((JobStatus.ACTIVE,), connection_id=connection.id),
            },
        }

    def queue_snapshot(self, platform: Platform) -> Dict[str, Any]:
        waiting = self.queue.list_waiting(platform)
        active = self.queue.list_active(platform)
        return {
            "platform": platform.value,
            "waiting_count": len(waiting),
            "active_count": len(active),
            "waiting": [job.to_dict() for job in waiting],
            "active": [job.to_dict() for job in active],
        }

    def reconcile(self, brand_id: str) -> Dict[str, Any]:
        return self.reconciler.reconcile(brand_id)

    def get_aggregates(self, brand_id: str, platform: Platform) -> Dict[str, Any]:
        return self.reconciler.get_aggregates(brand_id, platform)

    def remove_brand(self, brand_id: str) -> int:
        return self.queue.remove_for_brand(brand_id)

    def housekeeping(self) -> Dict[str, int]:
        return {
            "requeued_stalled": self.queue.requeue_stalled(),
            "purged_finished": self.queue.purge_finished(),
        }


_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide default orchestrator on the SQL stores"""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator()
    return _orchestrator
