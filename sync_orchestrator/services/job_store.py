"""
Job storage backends.

Every state transition is a compare-and-set keyed by job id: the SQL
store issues `UPDATE ... WHERE id = :id AND status = :expected` and checks
the rowcount, the in-memory store does the same under a lock. Two workers
can never both claim or both complete the same job.
"""
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from sync_orchestrator.models.sync_job import SyncJob
from sync_orchestrator.services.errors import UnknownJobTypeError
from sync_orchestrator.services.job_types import (
    Job,
    JobStatus,
    JobType,
    Platform,
    parse_job_type,
    parse_payload,
    payload_to_dict,
)
from sync_orchestrator.utils.logger import log

FINISHED = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class JobStore(ABC):
    """Persistence for queued jobs"""

    @abstractmethod
    def add(self, job: Job) -> int:
        """Persist a new waiting job and return its id"""

    @abstractmethod
    def get(self, job_id: int) -> Optional[Job]:
        pass

    @abstractmethod
    def list_by_status(self, platform: Platform, status: JobStatus, limit: Optional[int] = None) -> List[Job]:
        """Jobs in `status` ordered by priority (desc) then enqueue order"""

    @abstractmethod
    def claim(self, job_id: int, now: datetime) -> Optional[Job]:
        """waiting -> active; increments attempts. None if someone else got it."""

    @abstractmethod
    def complete(self, job_id: int, now: datetime) -> bool:
        """active -> completed"""

    @abstractmethod
    def fail(self, job_id: int, error: str, now: datetime) -> bool:
        """waiting/active -> failed"""

    @abstractmethod
    def requeue(self, job_id: int, available_at: datetime, error: Optional[str], deferral: bool) -> bool:
        """active -> waiting. A deferral does not consume an attempt."""

    @abstractmethod
    def count(
        self,
        statuses: Iterable[JobStatus],
        connection_id: Optional[str] = None,
        platform: Optional[Platform] = None,
        job_type: Optional[JobType] = None,
        run_id: Optional[str] = None,
    ) -> int:
        pass

    @abstractmethod
    def fail_waiting(self, connection_id: str, error: str, now: datetime) -> List[int]:
        """Fail every waiting job of a connection, returning their ids"""

    @abstractmethod
    def delete_waiting_for_brand(self, brand_id: str) -> int:
        pass

    @abstractmethod
    def requeue_stalled(self, started_before: datetime) -> int:
        """Active jobs whose worker went away go back to waiting"""

    @abstractmethod
    def purge_finished(self, finished_before: datetime) -> int:
        pass


class SqlJobStore(JobStore):
    """JobStore on the sync_jobs table"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def add(self, job: Job) -> int:
        with self.session_factory() as db:
            row = SyncJob(
                platform=job.platform.value,
                job_type=job.type.value,
                entity=job.entity if job.type == JobType.HISTORICAL_BACKFILL else None,
                brand_id=job.brand_id,
                connection_id=job.connection_id,
                run_id=job.run_id,
                chunk_number=job.chunk_number,
                total_chunks=job.total_chunks,
                payload=payload_to_dict(job.payload),
                priority=job.priority,
                status=JobStatus.WAITING.value,
                available_at=job.available_at or datetime.utcnow(),
            )
            db.add(row)
            db.commit()
            return row.id

    def get(self, job_id: int) -> Optional[Job]:
        with self.session_factory() as db:
            row = db.get(SyncJob, job_id)
            return self._to_job(row) if row else None

    def list_by_status(self, platform: Platform, status: JobStatus, limit: Optional[int] = None) -> List[Job]:
        with self.session_factory() as db:
            query = (
                select(SyncJob)
                .where(SyncJob.platform == platform.value, SyncJob.status == status.value)
                .order_by(SyncJob.priority.desc(), SyncJob.id.asc())
            )
            if limit:
                query = query.limit(limit)
            rows = db.execute(query).scalars().all()

        jobs = []
        for row in rows:
            try:
                jobs.append(self._to_job(row))
            except UnknownJobTypeError as e:
                # Fatal for this row only
                log.error(f"Dropping job {row.id}: {e}")
                self.fail(row.id, str(e), datetime.utcnow())
        return jobs

    def claim(self, job_id: int, now: datetime) -> Optional[Job]:
        with self.session_factory() as db:
            result = db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status == JobStatus.WAITING.value)
                .values(
                    status=JobStatus.ACTIVE.value,
                    attempts=SyncJob.attempts + 1,
                    started_at=now,
                    updated_at=now,
                )
            )
            db.commit()
            if result.rowcount != 1:
                return None
            return self._to_job(db.get(SyncJob, job_id))

    def complete(self, job_id: int, now: datetime) -> bool:
        return self._transition(job_id, (JobStatus.ACTIVE.value,), dict(
            status=JobStatus.COMPLETED.value,
            error_message=None,
            finished_at=now,
            updated_at=now,
        ))

    def fail(self, job_id: int, error: str, now: datetime) -> bool:
        return self._transition(job_id, (JobStatus.WAITING.value, JobStatus.ACTIVE.value), dict(
            status=JobStatus.FAILED.value,
            error_message=error,
            finished_at=now,
            updated_at=now,
        ))

    def requeue(self, job_id: int, available_at: datetime, error: Optional[str], deferral: bool) -> bool:
        values = dict(
            status=JobStatus.WAITING.value,
            available_at=available_at,
            error_message=error,
            started_at=None,
            updated_at=datetime.utcnow(),
        )
        if deferral:
            values["deferrals"] = SyncJob.deferrals + 1
            values["attempts"] = SyncJob.attempts - 1
        return self._transition(job_id, (JobStatus.ACTIVE.value,), values)

    def count(self, statuses, connection_id=None, platform=None, job_type=None, run_id=None) -> int:
        conditions = [SyncJob.status.in_([s.value for s in statuses])]
        if connection_id is not None:
            conditions.append(SyncJob.connection_id == connection_id)
        if platform is not None:
            conditions.append(SyncJob.platform == platform.value)
        if job_type is not None:
            conditions.append(SyncJob.job_type == job_type.value)
        if run_id is not None:
            conditions.append(SyncJob.run_id == run_id)
        with self.session_factory() as db:
            return db.execute(select(func.count(SyncJob.id)).where(and_(*conditions))).scalar() or 0

    def fail_waiting(self, connection_id: str, error: str, now: datetime) -> List[int]:
        with self.session_factory() as db:
            ids = db.execute(
                select(SyncJob.id).where(
                    SyncJob.connection_id == connection_id,
                    SyncJob.status == JobStatus.WAITING.value,
                )
            ).scalars().all()
        return [job_id for job_id in ids if self.fail(job_id, error, now)]

    def delete_waiting_for_brand(self, brand_id: str) -> int:
        with self.session_factory() as db:
            result = db.execute(
                delete(SyncJob).where(
                    SyncJob.brand_id == brand_id,
                    SyncJob.status == JobStatus.WAITING.value,
                )
            )
            db.commit()
            return result.rowcount

    def requeue_stalled(self, started_before: datetime) -> int:
        with self.session_factory() as db:
            result = db.execute(
                update(SyncJob)
                .where(
                    SyncJob.status == JobStatus.ACTIVE.value,
                    SyncJob.started_at < started_before,
                )
                .values(
                    status=JobStatus.WAITING.value,
                    started_at=None,
                    available_at=datetime.utcnow(),
                    error_message="stalled: requeued after worker timeout",
                )
            )
            db.commit()
            return result.rowcount

    def purge_finished(self, finished_before: datetime) -> int:
        with self.session_factory() as db:
            result = db.execute(
                delete(SyncJob).where(
                    SyncJob.status.in_(FINISHED),
                    SyncJob.finished_at < finished_before,
                )
            )
            db.commit()
            return result.rowcount

    def _transition(self, job_id: int, expected: tuple, values: dict) -> bool:
        with self.session_factory() as db:
            result = db.execute(
                update(SyncJob)
                .where(SyncJob.id == job_id, SyncJob.status.in_(expected))
                .values(**values)
            )
            db.commit()
            return result.rowcount == 1

    @staticmethod
    def _to_job(row: SyncJob) -> Job:
        job_type = parse_job_type(row.job_type)
        return Job(
            id=row.id,
            platform=Platform(row.platform),
            type=job_type,
            brand_id=row.brand_id,
            connection_id=row.connection_id,
            run_id=row.run_id,
            payload=parse_payload(job_type, row.payload),
            priority=row.priority,
            attempts=row.attempts,
            deferrals=row.deferrals,
            status=JobStatus(row.status),
            error_message=row.error_message,
            available_at=row.available_at,
            created_at=row.created_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
        )


class InMemoryJobStore(JobStore):
    """Lock-guarded dict store for tests and single-process runs"""

    def __init__(self):
        self._jobs = {}
        self._next_id = 1
        self._lock = threading.Lock()

    def add(self, job: Job) -> int:
        with self._lock:
            job_id = self._next_id
            self._next_id += 1
            now = datetime.utcnow()
            self._jobs[job_id] = replace(
                job,
                id=job_id,
                status=JobStatus.WAITING,
                attempts=0,
                deferrals=0,
                created_at=now,
                available_at=job.available_at or now,
            )
            return job_id

    def get(self, job_id: int) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    def list_by_status(self, platform: Platform, status: JobStatus, limit: Optional[int] = None) -> List[Job]:
        with self._lock:
            jobs = [
                replace(j) for j in self._jobs.values()
                if j.platform == platform and j.status == status
            ]
        jobs.sort(key=lambda j: (-j.priority, j.id))
        return jobs[:limit] if limit else jobs

    def claim(self, job_id: int, now: datetime) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.WAITING:
                return None
            job.status = JobStatus.ACTIVE
            job.attempts += 1
            job.started_at = now
            return replace(job)

    def complete(self, job_id: int, now: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.ACTIVE:
                return False
            job.status = JobStatus.COMPLETED
            job.error_message = None
            job.finished_at = now
            return True

    def fail(self, job_id: int, error: str, now: datetime) -> bool:
        with self._lock:
            return self._fail_locked(job_id, error, now)

    def _fail_locked(self, job_id: int, error: str, now: datetime) -> bool:
        job = self._jobs.get(job_id)
        if not job or job.status not in (JobStatus.WAITING, JobStatus.ACTIVE):
            return False
        job.status = JobStatus.FAILED
        job.error_message = error
        job.finished_at = now
        return True

    def requeue(self, job_id: int, available_at: datetime, error: Optional[str], deferral: bool) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job or job.status != JobStatus.ACTIVE:
                return False
            job.status = JobStatus.WAITING
            job.available_at = available_at
            job.error_message = error
            job.started_at = None
            if deferral:
                job.deferrals += 1
                job.attempts -= 1
            return True

    def count(self, statuses, connection_id=None, platform=None, job_type=None, run_id=None) -> int:
        statuses = set(statuses)
        with self._lock:
            return sum(
                1 for j in self._jobs.values()
                if j.status in statuses
                and (connection_id is None or j.connection_id == connection_id)
                and (platform is None or j.platform == platform)
                and (job_type is None or j.type == job_type)
                and (run_id is None or j.run_id == run_id)
            )

    def fail_waiting(self, connection_id: str, error: str, now: datetime) -> List[int]:
        with self._lock:
            ids = [
                j.id for j in self._jobs.values()
                if j.connection_id == connection_id and j.status == JobStatus.WAITING
            ]
            return [job_id for job_id in ids if self._fail_locked(job_id, error, now)]

    def delete_waiting_for_brand(self, brand_id: str) -> int:
        with self._lock:
            ids = [
                j.id for j in self._jobs.values()
                if j.brand_id == brand_id and j.status == JobStatus.WAITING
            ]
            for job_id in ids:
                del self._jobs[job_id]
            return len(ids)

    def requeue_stalled(self, started_before: datetime) -> int:
        with self._lock:
            stalled = [
                j for j in self._jobs.values()
                if j.status == JobStatus.ACTIVE and j.started_at and j.started_at < started_before
            ]
            for job in stalled:
                job.status = JobStatus.WAITING
                job.started_at = None
                job.available_at = datetime.utcnow()
                job.error_message = "stalled: requeued after worker timeout"
            return len(stalled)

    def purge_finished(self, finished_before: datetime) -> int:
        with self._lock:
            ids = [
                j.id for j in self._jobs.values()
                if j.status.value in FINISHED and j.finished_at and j.finished_at < finished_before
            ]
            for job_id in ids:
                del self._jobs[job_id]
            return len(ids)
