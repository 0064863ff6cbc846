"""
Job queue: one logical queue per upstream platform.

Dequeue order is priority first (recent syncs and reconciles ahead of
deep backfill), then enqueue order. Within one historical sequence a
chunk never becomes visible before an earlier chunk of the same sequence
that is still waiting out a retry delay.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.chunker import Chunk
from sync_orchestrator.services.job_store import JobStore
from sync_orchestrator.services.job_types import (
    HistoricalBackfillPayload,
    JOB_TYPE_PRIORITY,
    Job,
    JobStatus,
    JobType,
    Platform,
    job_type_for,
)
from sync_orchestrator.utils.logger import log

settings = get_settings()

SequenceKey = Tuple[str, str, str, Optional[str]]


def _sequence_key(job: Job) -> SequenceKey:
    return (job.brand_id, job.connection_id, job.entity, job.run_id)


class JobQueue:
    """Typed job queue on top of a JobStore"""

    def __init__(self, store: JobStore, entity_priorities: Optional[Dict[str, int]] = None):
        self.store = store
        self.entity_priorities = entity_priorities if entity_priorities is not None else settings.historical_entity_priorities

    def priority_for(self, job: Job) -> int:
        base = JOB_TYPE_PRIORITY[job.type]
        if job.type == JobType.HISTORICAL_BACKFILL:
            base += self.entity_priorities.get(job.entity, 0)
        return base

    def enqueue(self, job: Job) -> int:
        """Add a job to its platform queue and return its id"""
        if job.type != job_type_for(job.payload):
            raise ValueError(f"Payload {type(job.payload).__name__} does not match job type {job.type.value}")
        job.priority = self.priority_for(job)
        job_id = self.store.add(job)
        job.id = job_id
        log.info(f"Enqueued {job.describe()}")
        return job_id

    def enqueue_backfill(
        self,
        platform: Platform,
        brand_id: str,
        connection_id: str,
        chunks: List[Chunk],
        run_id: Optional[str] = None,
    ) -> List[int]:
        """Enqueue one historical job per chunk, in chunk order"""
        ids = []
        for chunk in sorted(chunks, key=lambda c: c.chunk_number):
            ids.append(self.enqueue(Job(
                platform=platform,
                type=JobType.HISTORICAL_BACKFILL,
                brand_id=brand_id,
                connection_id=connection_id,
                run_id=run_id,
                payload=HistoricalBackfillPayload(
                    entity=chunk.entity,
                    window=chunk.window,
                    chunk_number=chunk.chunk_number,
                    total_chunks=chunk.total_chunks,
                ),
            )))
        return ids

    def dequeue_waiting(self, platform: Platform, limit: int, now: Optional[datetime] = None) -> List[Job]:
        """
        Claim up to `limit` eligible waiting jobs for `platform`.

        Returned jobs are already active; a job another worker claimed first
        is skipped.
        """
        if limit <= 0:
            return []
        now = now or datetime.utcnow()
        waiting = self.store.list_by_status(platform, JobStatus.WAITING)

        # Lowest chunk per sequence that is waiting but not yet due
        blocked: Dict[SequenceKey, int] = {}
        for job in waiting:
            if job.type == JobType.HISTORICAL_BACKFILL and job.available_at and job.available_at > now:
                key = _sequence_key(job)
                blocked[key] = min(blocked.get(key, job.chunk_number), job.chunk_number)

        claimed = []
        for job in waiting:
            if len(claimed) >= limit:
                break
            if job.available_at and job.available_at > now:
                continue
            if job.type == JobType.HISTORICAL_BACKFILL:
                first_blocked = blocked.get(_sequence_key(job))
                if first_blocked is not None and job.chunk_number > first_blocked:
                    continue
            active = self.store.claim(job.id, now)
            if active:
                claimed.append(active)

        if claimed:
            log.debug(f"Dequeued {len(claimed)} {platform.value} jobs: {[j.id for j in claimed]}")
        return claimed

    def mark_active(self, job_id: int) -> Optional[Job]:
        return self.store.claim(job_id, datetime.utcnow())

    def mark_completed(self, job_id: int) -> bool:
        return self.store.complete(job_id, datetime.utcnow())

    def mark_failed(self, job_id: int, detail: str) -> bool:
        failed = self.store.fail(job_id, detail, datetime.utcnow())
        if failed:
            log.warning(f"Job {job_id} failed: {detail}")
        return failed

    def retry(self, job: Job, error: Optional[str], delay_seconds: float, deferral: bool = False) -> bool:
        """Put an active job back on the queue after `delay_seconds`"""
        available_at = datetime.utcnow() + timedelta(seconds=delay_seconds)
        requeued = self.store.requeue(job.id, available_at, error, deferral)
        if requeued:
            kind = "Deferred" if deferral else "Retrying"
            log.info(f"{kind} {job.describe()} in {delay_seconds:.0f}s (attempt {job.attempts}): {error}")
        return requeued

    def list_waiting(self, platform: Platform) -> List[Job]:
        return self.store.list_by_status(platform, JobStatus.WAITING)

    def list_active(self, platform: Platform) -> List[Job]:
        return self.store.list_by_status(platform, JobStatus.ACTIVE)

    def pending_count(
        self,
        connection_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        job_type: Optional[JobType] = None,
        run_id: Optional[str] = None,
    ) -> int:
        """Waiting plus active jobs matching the filters"""
        return self.store.count(
            (JobStatus.WAITING, JobStatus.ACTIVE),
            connection_id=connection_id,
            platform=platform,
            job_type=job_type,
            run_id=run_id,
        )

    def drop_for_connection(self, connection_id: str, reason: str = "connection_invalid") -> List[int]:
        """Fail all waiting jobs of a connection without dispatching them"""
        dropped = self.store.fail_waiting(connection_id, reason, datetime.utcnow())
        if dropped:
            log.info(f"Dropped {len(dropped)} waiting jobs for connection {connection_id}: {reason}")
        return dropped

    def remove_for_brand(self, brand_id: str) -> int:
        removed = self.store.delete_waiting_for_brand(brand_id)
        log.info(f"Removed {removed} waiting jobs for brand {brand_id}")
        return removed

    def requeue_stalled(self, timeout_minutes: Optional[int] = None) -> int:
        timeout_minutes = timeout_minutes or settings.stalled_job_timeout_minutes
        count = self.store.requeue_stalled(datetime.utcnow() - timedelta(minutes=timeout_minutes))
        if count:
            log.warning(f"Requeued {count} stalled jobs (active > {timeout_minutes} min)")
        return count

    def purge_finished(self, retention_days: Optional[int] = None) -> int:
        retention_days = retention_days or settings.job_retention_days
        count = self.store.purge_finished(datetime.utcnow() - timedelta(days=retention_days))
        if count:
            log.info(f"Purged {count} finished jobs older than {retention_days} days")
        return count
