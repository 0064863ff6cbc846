"""
HTTP API tests through FastAPI's TestClient.
"""
import pytest
from fastapi.testclient import TestClient

from sync_orchestrator.api.sync import get_sync_orchestrator
from sync_orchestrator.config import get_settings
from sync_orchestrator.main import app
from sync_orchestrator.services.job_types import Platform

settings = get_settings()


@pytest.fixture
def client(orchestrator, monkeypatch):
    monkeypatch.setattr(settings, "backfill_days", 90)
    monkeypatch.setattr(settings, "chunk_span_days", 30)
    app.dependency_overrides[get_sync_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_trigger_returns_job_counts(client, ads_connection):
    response = client.post("/sync/brand-1/ads/trigger")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["jobs_enqueued"] == 4
    assert body["historical_chunks"] == {"campaigns": 3}
    assert body["run_id"]


def test_second_trigger_is_skipped_unless_forced(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")

    skipped = client.post("/sync/brand-1/ads/trigger").json()
    assert skipped["skipped"] is True
    assert skipped["jobs_enqueued"] == 0

    forced = client.post("/sync/brand-1/ads/trigger", json={"force": True}).json()
    assert forced["skipped"] is False
    assert forced["superseded_jobs"] == 4


def test_trigger_without_connection_is_200_with_error(client):
    response = client.post("/sync/brand-1/commerce/trigger")

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert response.json()["jobs_enqueued"] == 0


def test_trigger_with_unplannable_range_is_200_with_error(client, ads_connection, monkeypatch):
    monkeypatch.setattr(settings, "chunk_span_days", 0)

    response = client.post("/sync/brand-1/ads/trigger")

    assert response.status_code == 200
    assert response.json()["success"] is False
    assert "at least 1 day" in response.json()["error"]


def test_unknown_platform_is_rejected(client):
    assert client.post("/sync/brand-1/tiktok/trigger").status_code == 422


def test_process_drains_and_reports_each_job(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")

    response = client.post("/sync/process", json={"max_jobs": 10})

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 4
    assert body["summary"] == {"completed": 4}
    assert {r["status"] for r in body["results"]} == {"completed"}


def test_process_reports_failures_with_200(client, fetchers, ads_connection, monkeypatch):
    monkeypatch.setattr(settings, "job_max_attempts", 1)
    fetchers[Platform.ADS].error = RuntimeError("upstream exploded")
    client.post("/sync/brand-1/ads/trigger")

    response = client.post("/sync/process", json={"max_jobs": 2})

    assert response.status_code == 200
    results = response.json()["results"]
    assert [r["status"] for r in results] == ["failed", "failed"]
    assert results[0]["error"] == "upstream exploded"


def test_process_validates_max_jobs(client):
    assert client.post("/sync/process", json={"max_jobs": 0}).status_code == 422


def test_process_token_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "process_token", "secret")

    assert client.post("/sync/process").status_code == 401
    assert client.post("/sync/process", headers={"X-Process-Token": "secret"}).status_code == 200


def test_status_shows_ledger_progress(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")
    client.post("/sync/process", json={"max_jobs": 10})

    body = client.get("/sync/brand-1/ads/status").json()

    assert body["connected"] is True
    assert body["sync_status"] == "completed"
    assert body["queue"] == {"waiting": 0, "active": 0}
    progress = {row["job_type"]: row["progress_pct"] for row in body["ledger"]}
    assert progress == {"historical_campaigns": 100, "recent_sync": 100}


def test_revoke_drops_waiting_jobs(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")

    body = client.post(f"/sync/connections/{ads_connection.id}/revoke").json()

    assert body["success"] is True
    assert len(body["dropped_jobs"]) == 4
    assert client.get("/sync/brand-1/ads/status").json()["connected"] is False


def test_queue_lists_waiting_jobs(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")

    body = client.get("/sync/queue/ads").json()

    assert body["waiting_count"] == 4
    assert body["waiting"][0]["type"] == "recent_sync"
    assert [j["name"] for j in body["waiting"][1:]] == ["historical_campaigns"] * 3


def test_reconcile_and_aggregates(client, ads_connection):
    client.post("/sync/brand-1/ads/trigger")
    client.post("/sync/process", json={"max_jobs": 10})

    reconciled = client.post("/sync/brand-1/reconcile").json()
    assert reconciled["success"] is True
    assert reconciled["duplicates_removed"] == 0

    aggregates = client.get("/sync/brand-1/ads/aggregates").json()
    campaigns = aggregates["aggregates"][0]
    assert campaigns["entity"] == "campaigns"
    assert campaigns["record_count"] == 90
    assert campaigns["value_total"] == 900.0
