"""
Historical backfill chunker tests.

Chunks must tile the requested range exactly: contiguous, no overlap,
union equal to the range, ceil(days / span) of them, numbered 1..N.
"""
import math
from datetime import date, datetime, timedelta

import pytest

from sync_orchestrator.services.chunker import backfill_window, halve, plan, progress_pct
from sync_orchestrator.services.errors import ChunkPlanningError
from sync_orchestrator.services.job_types import DateWindow


def test_chunks_tile_the_range_exactly():
    """Contiguous, non-overlapping, union == range, count == ceil(days/span)."""
    start = date(2024, 1, 1)
    for days in (1, 2, 29, 30, 31, 89, 90, 91, 365, 366):
        for span in (1, 7, 30, 90, 400):
            full = DateWindow(start, start + timedelta(days=days))
            chunks = plan("campaigns", full, span)

            assert len(chunks) == math.ceil(days / span)
            assert chunks[0].window.start == full.start
            assert chunks[-1].window.end == full.end
            for prev, nxt in zip(chunks, chunks[1:]):
                assert prev.window.end == nxt.window.start
            assert all(0 < c.window.days <= span for c in chunks)
            assert sum(c.window.days for c in chunks) == days
            assert [c.chunk_number for c in chunks] == list(range(1, len(chunks) + 1))
            assert {c.total_chunks for c in chunks} == {len(chunks)}


def test_ninety_days_by_thirty_gives_three_chunks():
    full = DateWindow(date(2024, 1, 1), date(2024, 3, 31))
    chunks = plan("orders", full, 30)

    assert [c.chunk_number for c in chunks] == [1, 2, 3]
    assert chunks[0].window == DateWindow(date(2024, 1, 1), date(2024, 1, 31))
    assert chunks[2].window == DateWindow(date(2024, 3, 1), date(2024, 3, 31))
    assert all(c.entity == "orders" for c in chunks)


def test_zero_length_and_single_day_ranges_give_one_chunk():
    day = date(2024, 5, 1)
    empty = plan("campaigns", DateWindow(day, day), 30)
    single = plan("campaigns", DateWindow(day, day + timedelta(days=1)), 30)

    assert len(empty) == 1 and empty[0].window == DateWindow(day, day)
    assert len(single) == 1 and single[0].total_chunks == 1


def test_malformed_range_raises_at_plan_time():
    with pytest.raises(ChunkPlanningError):
        plan("campaigns", DateWindow(date(2024, 2, 1), date(2024, 1, 1)), 30)


def test_span_below_one_day_is_rejected():
    with pytest.raises(ChunkPlanningError):
        plan("campaigns", DateWindow(date(2024, 1, 1), date(2024, 2, 1)), 0)


def test_progress_pct_rounds():
    assert progress_pct(1, 3) == 33
    assert progress_pct(2, 3) == 67
    assert progress_pct(3, 3) == 100
    assert progress_pct(1, 1) == 100


def test_halve_splits_and_stops_at_one_day():
    first, second = halve(DateWindow(date(2024, 1, 1), date(2024, 1, 31)))
    assert first == DateWindow(date(2024, 1, 1), date(2024, 1, 16))
    assert second == DateWindow(date(2024, 1, 16), date(2024, 1, 31))

    with pytest.raises(ChunkPlanningError):
        halve(DateWindow(date(2024, 1, 1), date(2024, 1, 2)))


def test_backfill_window_is_capped_at_account_creation():
    today = date(2024, 12, 31)

    full = backfill_window(365, today=today)
    assert full.end == date(2025, 1, 1)
    assert full.days == 365

    young = backfill_window(365, account_created_at=datetime(2024, 11, 1, 9, 30), today=today)
    assert young.start == date(2024, 11, 1)
    assert young.end == date(2025, 1, 1)

    old = backfill_window(365, account_created_at=datetime(2015, 1, 1), today=today)
    assert old == full
