"""
Worker pool.

One consumer loop per platform, each with its own concurrency limit, so a
backlog on one upstream cannot starve the other. Each job is processed in
isolation: whatever it raises is resolved into a JobOutcome and never
reaches its siblings in the batch.

Outcome handling:
  - connection revoked or missing  -> job failed (connection_invalid), no retry
  - credentials rejected upstream  -> job and connection failed, no retry
  - success                        -> ledger completed (or chunk counted);
                                      connection completed once no historical
                                      job of the connection is pending
  - rate limited, no snapshot      -> deferred by retry_after, attempt not consumed
  - hard error                     -> retried with backoff up to the attempt cap,
                                      then ledger and connection failed with the
                                      upstream message verbatim
"""
import asyncio
from datetime import datetime
from typing import Dict, List, Optional

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.connection_registry import ConnectionRegistry
from sync_orchestrator.services.errors import (
    ConnectionInvalidError,
    RateLimitedError,
    SyncError,
    UnknownJobTypeError,
)
from sync_orchestrator.services.job_queue import JobQueue
from sync_orchestrator.services.job_types import (
    EtlStatus,
    Job,
    JobOutcome,
    JobType,
    LedgerKey,
    Platform,
    SyncStatus,
)
from sync_orchestrator.services.ledger import LedgerStore
from sync_orchestrator.services.sync_operations import OperationOutcome, SyncContext, get_operation
from sync_orchestrator.utils.logger import log
from sync_orchestrator.utils.retry import job_retry_delay

settings = get_settings()

CONNECTION_INVALID = "connection_invalid"

# A failed connection is not flipped back by jobs of the same run
NOT_FAILED = (SyncStatus.IDLE, SyncStatus.STARTING, SyncStatus.SYNCING, SyncStatus.COMPLETED)


class WorkerPool:
    """Drains the per-platform queues and records every outcome"""

    def __init__(
        self,
        queue: JobQueue,
        ledger: LedgerStore,
        registry: ConnectionRegistry,
        context: SyncContext,
        concurrency: Optional[Dict[Platform, int]] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.queue = queue
        self.ledger = ledger
        self.registry = registry
        self.context = context
        self.concurrency = concurrency or {
            Platform.ADS: settings.ads_worker_concurrency,
            Platform.COMMERCE: settings.commerce_worker_concurrency,
        }
        self.batch_size = batch_size or settings.worker_batch_size
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self._tasks: Dict[Platform, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Standing consumers
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks.values())

    def start(self):
        """Start one consumer loop per platform. Calling it again is a no-op."""
        for platform in Platform:
            task = self._tasks.get(platform)
            if task is not None and not task.done():
                continue
            self._tasks[platform] = asyncio.create_task(
                self._consume(platform), name=f"sync-worker-{platform.value}"
            )
            log.info(f"Worker started for {platform.value} (concurrency {self.concurrency[platform]})")

    async def stop(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        log.info("Workers stopped")

    async def _consume(self, platform: Platform):
        while True:
            try:
                jobs = self.queue.dequeue_waiting(platform, self.batch_size)
                if jobs:
                    await self.process_batch(jobs, self.concurrency[platform])
                    continue
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error(f"{platform.value} worker loop error: {e}")
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    # Manual drain
    # ------------------------------------------------------------------

    async def drain(self, max_jobs: int, platform: Optional[Platform] = None) -> List[JobOutcome]:
        """
        Dequeue and process up to `max_jobs` jobs, then return.

        Platforms are drained in rounds so each gets a share of `max_jobs`.
        """
        platforms = [platform] if platform else list(Platform)
        remaining = max_jobs
        outcomes: List[JobOutcome] = []

        while remaining > 0:
            batches = []
            for p in platforms:
                take = min(self.batch_size, remaining)
                if take <= 0:
                    break
                jobs = self.queue.dequeue_waiting(p, take)
                remaining -= len(jobs)
                if jobs:
                    batches.append(self.process_batch(jobs, self.concurrency[p]))
            if not batches:
                break
            for batch in await asyncio.gather(*batches):
                outcomes.extend(batch)

        return outcomes

    # ------------------------------------------------------------------
    # Batch / job processing
    # ------------------------------------------------------------------

    async def process_batch(self, jobs: List[Job], concurrency: int) -> List[JobOutcome]:
        """Process jobs with at most `concurrency` in flight; every job gets an outcome"""
        semaphore = asyncio.Semaphore(max(concurrency, 1))

        async def _one(job: Job) -> JobOutcome:
            async with semaphore:
                return await self.process_job(job)

        results = await asyncio.gather(*[_one(job) for job in jobs], return_exceptions=True)

        outcomes = []
        for job, result in zip(jobs, results):
            if isinstance(result, BaseException):
                detail = str(result) or type(result).__name__
                log.opt(exception=result).error(f"Unhandled error in {job.describe()}: {detail}")
                self.queue.mark_failed(job.id, detail)
                result = JobOutcome(job_id=job.id, status="failed", error=detail)
            outcomes.append(result)
        return outcomes

    async def process_job(self, job: Job) -> JobOutcome:
        """Run one active job and record its outcome"""
        with log.contextualize(job=f"{job.platform.value}#{job.id}"):
            return await self._process_job(job)

    async def _process_job(self, job: Job) -> JobOutcome:
        key = LedgerKey.for_job(job)

        connection = self.registry.get(job.connection_id)
        if connection is None or not connection.is_active:
            return self._fail(job, key, CONNECTION_INVALID, touch_connection=False)

        try:
            operation = get_operation(job.platform, job.type)
        except UnknownJobTypeError as e:
            return self._fail(job, key, str(e))

        started = self.ledger.upsert(
            key,
            {"status": EtlStatus.PROCESSING.value, "started_at": datetime.utcnow()},
            run_id=job.run_id,
        )
        if started is not None and job.type != JobType.RECONCILE:
            self.registry.set_sync_status(job.connection_id, SyncStatus.SYNCING, only_from=NOT_FAILED)

        log.info(f"Processing {job.describe()} (attempt {job.attempts})")
        try:
            outcome = await operation(job, self.context, connection)
        except RateLimitedError as e:
            return self._defer(job, key, e)
        except ConnectionInvalidError as e:
            return self._fail(job, key, str(e))
        except Exception as e:
            return self._handle_error(job, key, e)

        return self._complete(job, key, outcome)

    def _complete(self, job: Job, key: LedgerKey, outcome: OperationOutcome) -> JobOutcome:
        if not self.queue.mark_completed(job.id):
            log.warning(f"{job.describe()} was no longer active when it finished (requeued as stalled?)")

        if job.type == JobType.HISTORICAL_BACKFILL:
            record = self.ledger.record_chunk(
                key, job.run_id, job.chunk_number, job.total_chunks, outcome.rows_written
            )
        else:
            record = self.ledger.upsert(
                key,
                {
                    "status": EtlStatus.COMPLETED.value,
                    "progress_pct": 100,
                    "rows_written": outcome.rows_written,
                    "total_rows": outcome.rows_fetched,
                },
                run_id=job.run_id,
            )

        if record is None:
            log.info(f"{job.describe()} finished for a superseded run; ledger untouched")
        elif job.type != JobType.RECONCILE and record.status == EtlStatus.COMPLETED.value:
            self._maybe_complete_connection(job)

        log.info(
            f"Completed {job.describe()}: {outcome.rows_written} rows written"
            f"{' (' + outcome.source + ')' if outcome.source else ''}"
        )
        return JobOutcome(
            job_id=job.id,
            status="completed",
            rows_written=outcome.rows_written,
            source=outcome.source,
            warnings=outcome.warnings,
        )

    def _maybe_complete_connection(self, job: Job):
        pending = self.queue.pending_count(
            connection_id=job.connection_id, job_type=JobType.HISTORICAL_BACKFILL
        )
        if pending:
            return
        # Only a daily sync, a run of its own, may clear an earlier failure
        only_from = None if job.type == JobType.DAILY_SYNC else NOT_FAILED
        if self.registry.set_sync_status(job.connection_id, SyncStatus.COMPLETED, only_from=only_from):
            log.info(f"Connection {job.connection_id} sync completed")

    def _defer(self, job: Job, key: LedgerKey, error: RateLimitedError) -> JobOutcome:
        detail = str(error)
        if job.deferrals >= settings.rate_limit_max_deferrals:
            return self._fail(job, key, f"Rate limited after {job.deferrals} deferrals: {detail}")
        self.queue.retry(job, detail, error.retry_after_seconds, deferral=True)
        return JobOutcome(job_id=job.id, status="deferred", error=detail)

    def _handle_error(self, job: Job, key: LedgerKey, error: Exception) -> JobOutcome:
        detail = str(error) or type(error).__name__
        retryable = error.retryable if isinstance(error, SyncError) else True

        if retryable and job.attempts < settings.job_max_attempts:
            self.queue.retry(job, detail, job_retry_delay(job.attempts))
            self.ledger.upsert(key, {"error_message": detail}, run_id=job.run_id)
            return JobOutcome(job_id=job.id, status="retrying", error=detail)

        return self._fail(job, key, detail)

    def _fail(self, job: Job, key: LedgerKey, detail: str, touch_connection: bool = True) -> JobOutcome:
        self.queue.mark_failed(job.id, detail)
        record = self.ledger.upsert(
            key,
            {"status": EtlStatus.FAILED.value, "error_message": detail},
            run_id=job.run_id,
        )
        if touch_connection and record is not None and job.type != JobType.RECONCILE:
            self.registry.set_sync_status(job.connection_id, SyncStatus.FAILED)
        return JobOutcome(job_id=job.id, status="failed", error=detail)
