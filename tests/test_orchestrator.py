"""
Orchestrator tests: triggering, superseding runs, scheduled enqueues and status.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from sync_orchestrator.config import get_settings
from sync_orchestrator.services.errors import ChunkPlanningError
from sync_orchestrator.services.job_types import JobStatus, JobType, LedgerKey, Platform
from sync_orchestrator.services.orchestrator import SUPERSEDED

settings = get_settings()


def _run(coro):
    return asyncio.run(coro)


def test_trigger_without_connection_reports_failure(orchestrator):
    result = orchestrator.trigger_sync("brand-404", Platform.ADS)

    assert result["success"] is False
    assert result["jobs_enqueued"] == 0
    assert "brand-404" in result["error"]


def test_trigger_enqueues_recent_sync_and_backfill(orchestrator, ads_connection):
    """Default settings: 365 days in 90-day chunks."""
    result = orchestrator.trigger_sync("brand-1", Platform.ADS)

    assert result["success"] and not result["skipped"]
    assert result["recent_sync"] == 1
    assert result["historical_chunks"] == {"campaigns": 5}
    assert result["jobs_enqueued"] == 6
    assert result["connection_id"] == ads_connection.id
    assert orchestrator.queue.pending_count(connection_id=ads_connection.id) == 6
    assert orchestrator.registry.get(ads_connection.id).sync_status == "starting"

    ledger = orchestrator.ledger.list_for_connection(ads_connection.id)
    assert {r.key.job_type for r in ledger} == {"recent_sync", "historical_campaigns"}
    assert all(r.status == "pending" and r.run_id == result["run_id"] for r in ledger)


def test_backfill_starts_at_account_creation(orchestrator):
    created = datetime.utcnow() - timedelta(days=20)
    orchestrator.register_connection(
        "brand-2", Platform.ADS, {"access_token": "t", "ad_account_id": "9"}, account_created_at=created
    )

    result = orchestrator.trigger_sync("brand-2", Platform.ADS)

    assert result["backfill_range"]["start"] == created.date().isoformat()
    assert result["historical_chunks"] == {"campaigns": 1}


def test_recent_trigger_is_skipped_unless_forced(orchestrator, ads_connection):
    first = orchestrator.trigger_sync("brand-1", Platform.ADS)

    again = orchestrator.trigger_sync("brand-1", Platform.ADS)
    assert again["skipped"] is True
    assert again["reason"] == "recently_synced"
    assert again["jobs_enqueued"] == 0

    forced = orchestrator.trigger_sync("brand-1", Platform.ADS, force=True)
    assert forced["skipped"] is False
    assert forced["run_id"] != first["run_id"]
    assert forced["superseded_jobs"] == first["jobs_enqueued"]

    waiting = orchestrator.queue.list_waiting(Platform.ADS)
    assert {job.run_id for job in waiting} == {forced["run_id"]}


def test_superseded_jobs_are_failed_with_reason(orchestrator, ads_connection):
    first = orchestrator.trigger_sync("brand-1", Platform.ADS)
    old_ids = [job.id for job in orchestrator.queue.list_waiting(Platform.ADS)]

    orchestrator.trigger_sync("brand-1", Platform.ADS, force=True)

    for job_id in old_ids:
        job = orchestrator.queue.store.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error_message == SUPERSEDED
        assert job.run_id == first["run_id"]


def test_in_flight_job_of_an_old_run_leaves_the_ledger_alone(orchestrator, ads_connection):
    orchestrator.trigger_sync("brand-1", Platform.ADS)
    old_recent = orchestrator.queue.dequeue_waiting(Platform.ADS, limit=1)[0]
    assert old_recent.type == JobType.RECENT_SYNC

    forced = orchestrator.trigger_sync("brand-1", Platform.ADS, force=True)
    outcome = _run(orchestrator.workers.process_job(old_recent))

    assert outcome.status == "completed"
    row = orchestrator.ledger.read(LedgerKey("brand-1", ads_connection.id, "all", "recent_sync"))
    assert row.run_id == forced["run_id"]
    assert row.status == "pending"
    assert row.rows_written == 0


def test_unplannable_backfill_enqueues_nothing(orchestrator, ads_connection, monkeypatch):
    monkeypatch.setattr(settings, "chunk_span_days", 0)

    with pytest.raises(ChunkPlanningError):
        orchestrator.trigger_sync("brand-1", Platform.ADS)

    assert orchestrator.queue.pending_count(connection_id=ads_connection.id) == 0
    assert orchestrator.ledger.list_for_connection(ads_connection.id) == []


def test_daily_syncs_are_enqueued_once_per_connection(orchestrator, ads_connection):
    orchestrator.register_connection("brand-1", Platform.COMMERCE, {"shop_domain": "s", "access_token": "t"})

    assert orchestrator.enqueue_daily_syncs() == 2
    assert orchestrator.enqueue_daily_syncs() == 0

    daily = orchestrator.queue.list_waiting(Platform.ADS)
    assert [job.type for job in daily] == [JobType.DAILY_SYNC]
    assert daily[0].payload.window.days == settings.daily_sync_days


def test_daily_sync_writes_all_entities(orchestrator, ads_connection):
    orchestrator.enqueue_daily_syncs()

    result = _run(orchestrator.process(5, Platform.ADS))

    assert result["results"] == [{"id": result["results"][0]["id"], "status": "completed", "rows_written": 2, "source": "live"}]
    row = orchestrator.ledger.read(LedgerKey("brand-1", ads_connection.id, "all", "daily_sync"))
    assert row.status == "completed"
    assert row.total_rows == 2


def test_reconciles_are_enqueued_per_brand_and_platform(orchestrator, ads_connection):
    orchestrator.register_connection("brand-1", Platform.COMMERCE, {"shop_domain": "s", "access_token": "t"})
    orchestrator.register_connection("brand-2", Platform.ADS, {"access_token": "t", "ad_account_id": "2"})

    assert orchestrator.enqueue_reconciles() == 3
    assert orchestrator.enqueue_reconciles() == 0

    result = _run(orchestrator.process(10))
    assert result["summary"] == {"completed": 3}


def test_registering_a_new_connection_revokes_the_old_one(orchestrator, ads_connection):
    newer = orchestrator.register_connection("brand-1", Platform.ADS, {"access_token": "new", "ad_account_id": "123"})

    assert orchestrator.registry.get(ads_connection.id).status == "revoked"
    assert orchestrator.registry.get_active("brand-1", Platform.ADS).id == newer.id


def test_sync_status_reports_ledger_and_queue(orchestrator, ads_connection):
    orchestrator.trigger_sync("brand-1", Platform.ADS)
    orchestrator.queue.dequeue_waiting(Platform.ADS, limit=1)

    status = orchestrator.get_sync_status("brand-1", Platform.ADS)

    assert status["connected"] is True
    assert status["sync_status"] == "starting"
    assert status["queue"] == {"waiting": 5, "active": 1}
    assert len(status["ledger"]) == 2

    missing = orchestrator.get_sync_status("brand-1", Platform.COMMERCE)
    assert missing["connected"] is False
    assert missing["ledger"] == []


def test_remove_brand_clears_waiting_jobs(orchestrator, ads_connection):
    orchestrator.trigger_sync("brand-1", Platform.ADS)

    assert orchestrator.remove_brand("brand-1") == 6
    assert orchestrator.queue_snapshot(Platform.ADS)["waiting_count"] == 0


def test_housekeeping_requeues_stalled_jobs(orchestrator, ads_connection):
    orchestrator.trigger_sync("brand-1", Platform.ADS)
    job = orchestrator.queue.list_waiting(Platform.ADS)[0]
    orchestrator.queue.store.claim(job.id, datetime.utcnow() - timedelta(hours=3))

    result = orchestrator.housekeeping()

    assert result == {"requeued_stalled": 1, "purged_finished": 0}
    assert orchestrator.queue.store.get(job.id).status == JobStatus.WAITING
