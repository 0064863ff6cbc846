"""
Rate-limit controller tests: error classification and snapshot fallback.
"""
import asyncio
from datetime import date

import pytest

from sync_orchestrator.connectors.base import UpstreamAPIError
from sync_orchestrator.models.base import SessionLocal
from sync_orchestrator.services.errors import ConnectionInvalidError, PayloadTooLargeError
from sync_orchestrator.services.job_types import DateWindow
from sync_orchestrator.services.rate_limit import (
    SOURCE_CACHED_EXCEPTION,
    SOURCE_CACHED_RATE_LIMIT,
    SOURCE_LIVE,
    RateLimitController,
    SnapshotStore,
    is_rate_limit_error,
    snapshot_key,
)

KEY = snapshot_key("ads", "conn-1", "campaigns", DateWindow(date(2024, 1, 1), date(2024, 1, 8)))


def _run(coro):
    return asyncio.run(coro)


def _rows(n):
    return [{"natural_key": f"row-{i}", "spend": 1.0} for i in range(n)]


def _returning(records):
    async def fn():
        return records
    return fn


def _raising(error):
    async def fn():
        raise error
    return fn


@pytest.fixture
def snapshots():
    return SnapshotStore(SessionLocal)


@pytest.fixture
def controller(snapshots):
    return RateLimitController(snapshots)


def test_rate_limit_phrases_match_case_insensitively():
    assert is_rate_limit_error(Exception("User request limit reached"))
    assert is_rate_limit_error(Exception("TOO MANY REQUESTS"))
    assert is_rate_limit_error(UpstreamAPIError("meta", 400, "(#17) User request limit reached (code 17, subcode 2446079)"))
    assert not is_rate_limit_error(Exception("Internal Server Error"))
    assert is_rate_limit_error(Exception("quota gone"), phrases=["QUOTA"])


def test_live_success_refreshes_snapshot(controller, snapshots):
    result = _run(controller.call_upstream(_returning(_rows(3)), key=KEY))

    assert result.success
    assert result.source == SOURCE_LIVE
    assert result.rows == 3
    assert snapshots.get(KEY).row_count == 3

    _run(controller.call_upstream(_returning(_rows(5)), key=KEY))
    assert snapshots.get(KEY).row_count == 5


def test_rate_limited_with_snapshot_serves_cached_rows(controller, snapshots):
    """A rate limit with a 500-row snapshot is a success, not an error."""
    snapshots.save(KEY, _rows(500))

    result = _run(controller.call_upstream(_raising(Exception("User request limit reached")), key=KEY))
    payload = result.to_dict()

    assert payload["success"] is True
    assert payload["source"] == SOURCE_CACHED_RATE_LIMIT
    assert payload["rows"] == 500
    assert len(result.data) == 500
    assert result.warning == "User request limit reached"
    assert result.snapshot_at is not None


def test_other_error_with_snapshot_serves_cached_rows(controller, snapshots):
    snapshots.save(KEY, _rows(2))

    result = _run(controller.call_upstream(_raising(UpstreamAPIError("meta", 500, "Internal Server Error")), key=KEY))

    assert result.success
    assert result.source == SOURCE_CACHED_EXCEPTION
    assert result.rows == 2
    assert not result.rate_limited


def test_rate_limited_without_snapshot_asks_for_retry(controller):
    result = _run(controller.call_upstream(_raising(Exception("Too many calls")), key=KEY))

    assert not result.success
    assert result.rate_limited
    assert result.retry_after_seconds == 300
    assert result.warning == "Too many calls"
    assert result.error


def test_hard_error_without_snapshot_keeps_upstream_text(controller):
    error = UpstreamAPIError("shopify", 500, "Internal Server Error")

    result = _run(controller.call_upstream(_raising(error), key=KEY))

    assert not result.success
    assert not result.rate_limited
    assert result.error == str(error)
    assert result.error == "shopify HTTP 500: Internal Server Error"


def test_payload_too_large_is_reraised(controller, snapshots):
    snapshots.save(KEY, _rows(10))

    with pytest.raises(PayloadTooLargeError):
        _run(controller.call_upstream(_raising(PayloadTooLargeError("reduce the amount of data")), key=KEY))


def test_rejected_credentials_are_not_masked_by_snapshot(controller, snapshots):
    snapshots.save(KEY, _rows(10))

    with pytest.raises(ConnectionInvalidError):
        _run(controller.call_upstream(_raising(ConnectionInvalidError("connection_invalid: token expired")), key=KEY))


def test_call_without_key_skips_snapshots(controller, snapshots):
    result = _run(controller.call_upstream(_returning(_rows(1))))
    assert result.success and result.rows == 1

    failed = _run(controller.call_upstream(_raising(Exception("boom"))))
    assert not failed.success
    assert failed.error == "boom"


def test_custom_retry_after(snapshots):
    controller = RateLimitController(snapshots, retry_after_seconds=60)

    result = _run(controller.call_upstream(_raising(Exception("rate limit")), key=KEY))

    assert result.retry_after_seconds == 60
