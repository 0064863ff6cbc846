"""
Job queue tests, run against both the SQL and the in-memory store.
"""
from datetime import date, datetime, timedelta

import pytest

from sync_orchestrator.models.base import SessionLocal
from sync_orchestrator.models.sync_job import SyncJob
from sync_orchestrator.services.chunker import plan
from sync_orchestrator.services.job_queue import JobQueue
from sync_orchestrator.services.job_store import InMemoryJobStore, SqlJobStore
from sync_orchestrator.services.job_types import (
    DailySyncPayload,
    DateWindow,
    Job,
    JobStatus,
    JobType,
    Platform,
    RecentSyncPayload,
    ReconcilePayload,
)

WINDOW = DateWindow(date(2024, 1, 1), date(2024, 3, 31))


@pytest.fixture(params=["sql", "memory"])
def queue(request):
    store = SqlJobStore(SessionLocal) if request.param == "sql" else InMemoryJobStore()
    return JobQueue(store)


def _job(job_type, payload, connection_id="conn-1", run_id="run-1"):
    return Job(
        platform=Platform.ADS,
        type=job_type,
        brand_id="brand-1",
        connection_id=connection_id,
        run_id=run_id,
        payload=payload,
    )


def _backfill(queue, entity, connection_id="conn-1", run_id="run-1"):
    return queue.enqueue_backfill(
        Platform.ADS, "brand-1", connection_id, plan(entity, WINDOW, 30), run_id=run_id
    )


def test_dequeue_orders_by_priority_then_enqueue_order(queue):
    """Recent syncs drain before reconciles, daily syncs and deep backfill."""
    insights = _backfill(queue, "insights")
    campaigns = _backfill(queue, "campaigns")
    daily = queue.enqueue(_job(JobType.DAILY_SYNC, DailySyncPayload(WINDOW)))
    reconcile = queue.enqueue(_job(JobType.RECONCILE, ReconcilePayload()))
    recent = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))

    claimed = queue.dequeue_waiting(Platform.ADS, limit=20)

    assert [j.id for j in claimed] == [recent, reconcile, daily] + campaigns + insights
    assert all(j.status == JobStatus.ACTIVE for j in claimed)
    assert all(j.attempts == 1 for j in claimed)


def test_dequeue_respects_limit_and_platform(queue):
    _backfill(queue, "campaigns")

    assert queue.dequeue_waiting(Platform.COMMERCE, limit=10) == []
    assert len(queue.dequeue_waiting(Platform.ADS, limit=2)) == 2
    assert len(queue.dequeue_waiting(Platform.ADS, limit=2)) == 1
    assert queue.dequeue_waiting(Platform.ADS, limit=0) == []


def test_a_claimed_job_is_not_handed_out_twice(queue):
    job_id = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))

    assert queue.mark_active(job_id) is not None
    assert queue.mark_active(job_id) is None
    assert queue.dequeue_waiting(Platform.ADS, limit=5) == []


def test_delayed_chunk_blocks_later_chunks_of_its_sequence(queue):
    """A later chunk never overtakes an earlier chunk that is waiting out a retry."""
    _backfill(queue, "campaigns")
    other = _backfill(queue, "demographics")

    first = queue.dequeue_waiting(Platform.ADS, limit=1)[0]
    assert (first.entity, first.chunk_number) == ("campaigns", 1)
    assert queue.retry(first, "HTTP 500", delay_seconds=600)

    claimed = queue.dequeue_waiting(Platform.ADS, limit=10)

    assert [j.id for j in claimed] == other
    waiting = queue.list_waiting(Platform.ADS)
    assert sorted(j.chunk_number for j in waiting) == [1, 2, 3]


def test_due_retry_is_dequeued_again(queue):
    job_id = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    job = queue.dequeue_waiting(Platform.ADS, limit=1)[0]
    queue.retry(job, "HTTP 500", delay_seconds=0)

    again = queue.dequeue_waiting(Platform.ADS, limit=1, now=datetime.utcnow() + timedelta(seconds=1))

    assert [j.id for j in again] == [job_id]
    assert again[0].attempts == 2


def test_deferral_does_not_consume_an_attempt(queue):
    queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    job = queue.dequeue_waiting(Platform.ADS, limit=1)[0]

    assert queue.retry(job, "rate limited", delay_seconds=300, deferral=True)

    stored = queue.store.get(job.id)
    assert stored.status == JobStatus.WAITING
    assert stored.attempts == 0
    assert stored.deferrals == 1
    assert stored.available_at > datetime.utcnow() + timedelta(seconds=200)


def test_completed_job_cannot_be_failed(queue):
    queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    job = queue.dequeue_waiting(Platform.ADS, limit=1)[0]

    assert queue.mark_completed(job.id)
    assert not queue.mark_failed(job.id, "late failure")
    assert not queue.retry(job, "late retry", delay_seconds=0)
    assert queue.store.get(job.id).status == JobStatus.COMPLETED


def test_drop_for_connection_fails_only_its_waiting_jobs(queue):
    mine = _backfill(queue, "campaigns", connection_id="conn-1")
    theirs = _backfill(queue, "campaigns", connection_id="conn-2")
    active = queue.mark_active(mine[0])

    dropped = queue.drop_for_connection("conn-1")

    assert sorted(dropped) == mine[1:]
    for job_id in mine[1:]:
        job = queue.store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == "connection_invalid"
    assert queue.store.get(active.id).status == JobStatus.ACTIVE
    assert all(queue.store.get(i).status == JobStatus.WAITING for i in theirs)


def test_pending_count_filters(queue):
    _backfill(queue, "campaigns", run_id="run-1")
    queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW), run_id="run-2"))
    queue.dequeue_waiting(Platform.ADS, limit=1)

    assert queue.pending_count(connection_id="conn-1") == 4
    assert queue.pending_count(job_type=JobType.HISTORICAL_BACKFILL) == 3
    assert queue.pending_count(run_id="run-2") == 1
    assert queue.pending_count(platform=Platform.COMMERCE) == 0


def test_enqueue_rejects_mismatched_payload(queue):
    with pytest.raises(ValueError):
        queue.enqueue(_job(JobType.DAILY_SYNC, ReconcilePayload()))


def test_remove_for_brand_deletes_waiting_jobs(queue):
    ids = _backfill(queue, "campaigns")
    queue.mark_active(ids[0])

    assert queue.remove_for_brand("brand-1") == 2
    assert queue.store.get(ids[1]) is None
    assert queue.store.get(ids[0]).status == JobStatus.ACTIVE


def test_stalled_jobs_are_requeued(queue):
    job_id = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    queue.store.claim(job_id, datetime.utcnow() - timedelta(hours=2))

    assert queue.requeue_stalled(timeout_minutes=45) == 1

    job = queue.store.get(job_id)
    assert job.status == JobStatus.WAITING
    assert job.started_at is None


def test_finished_jobs_are_purged_after_retention(queue):
    old = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    recent = queue.enqueue(_job(JobType.DAILY_SYNC, DailySyncPayload(WINDOW)))
    for job_id in (old, recent):
        queue.mark_active(job_id)
    queue.store.complete(old, datetime.utcnow() - timedelta(days=30))
    queue.mark_completed(recent)

    assert queue.purge_finished(retention_days=7) == 1
    assert queue.store.get(old) is None
    assert queue.store.get(recent) is not None


def test_unknown_job_type_row_is_failed_not_dispatched():
    """A stored job with an unknown type fails on its own without blocking the queue."""
    queue = JobQueue(SqlJobStore(SessionLocal))
    good = queue.enqueue(_job(JobType.RECENT_SYNC, RecentSyncPayload(WINDOW)))
    with SessionLocal() as db:
        row = SyncJob(
            platform="ads",
            job_type="historical_pixels",
            brand_id="brand-1",
            connection_id="conn-1",
            payload={},
            priority=500,
            status="waiting",
        )
        db.add(row)
        db.commit()
        bogus = row.id

    claimed = queue.dequeue_waiting(Platform.ADS, limit=5)

    assert [j.id for j in claimed] == [good]
    with SessionLocal() as db:
        stored = db.get(SyncJob, bogus)
        assert stored.status == "failed"
        assert "historical_pixels" in stored.error_message
