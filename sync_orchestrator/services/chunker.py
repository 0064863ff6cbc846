"""
Historical backfill chunker.

Splits a backfill range into fixed-span [start, end) windows, one job per
window. The span is a static setting so progress (chunk_number /
total_chunks) is predictable for the UI.
"""
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from sync_orchestrator.services.errors import ChunkPlanningError
from sync_orchestrator.services.job_types import DateWindow


@dataclass(frozen=True)
class Chunk:
    entity: str
    window: DateWindow
    chunk_number: int
    total_chunks: int


def plan(entity: str, full_range: DateWindow, max_chunk_span_days: int) -> List[Chunk]:
    """
    Plan contiguous, non-overlapping chunks whose union is `full_range`.

    Args:
        entity: Entity the chunks belong to (e.g. 'campaigns')
        full_range: Half-open range to cover
        max_chunk_span_days: Maximum days per chunk

    Returns:
        Chunks numbered 1..N where N = ceil(days / span). A zero-length
        or single-day range yields exactly one chunk.

    Raises:
        ChunkPlanningError: range ends before it starts, or span < 1
    """
    if max_chunk_span_days is None or max_chunk_span_days < 1:
        raise ChunkPlanningError(f"Chunk span must be at least 1 day, got {max_chunk_span_days}")
    if full_range.end < full_range.start:
        raise ChunkPlanningError(
            f"Backfill range for {entity} ends before it starts: "
            f"{full_range.start.isoformat()} > {full_range.end.isoformat()}"
        )

    total_days = full_range.days
    if total_days == 0:
        return [Chunk(entity=entity, window=full_range, chunk_number=1, total_chunks=1)]

    total_chunks = math.ceil(total_days / max_chunk_span_days)
    span = timedelta(days=max_chunk_span_days)

    chunks = []
    cursor = full_range.start
    for number in range(1, total_chunks + 1):
        chunk_end = min(cursor + span, full_range.end)
        chunks.append(Chunk(
            entity=entity,
            window=DateWindow(start=cursor, end=chunk_end),
            chunk_number=number,
            total_chunks=total_chunks,
        ))
        cursor = chunk_end

    return chunks


def progress_pct(chunk_number: int, total_chunks: int) -> int:
    """Progress reported when a chunk completes."""
    if total_chunks <= 0:
        return 100
    return int(round(chunk_number / total_chunks * 100))


def halve(window: DateWindow) -> Tuple[DateWindow, DateWindow]:
    """Split a window in two for a retry after a payload-too-large response."""
    if window.days < 2:
        raise ChunkPlanningError(
            f"Cannot split window {window.start.isoformat()}..{window.end.isoformat()} any further"
        )
    middle = window.start + timedelta(days=window.days // 2)
    return DateWindow(window.start, middle), DateWindow(middle, window.end)


def backfill_window(
    lookback_days: int,
    account_created_at: Optional[datetime] = None,
    today: Optional[date] = None,
) -> DateWindow:
    """
    Full backfill range ending today (inclusive).

    Starts `lookback_days` back, or at the account creation date when the
    account is younger than that.
    """
    today = today or datetime.utcnow().date()
    end = today + timedelta(days=1)
    start = end - timedelta(days=lookback_days)
    if account_created_at is not None:
        created = account_created_at.date() if isinstance(account_created_at, datetime) else account_created_at
        if created > start:
            start = min(created, end)
    return DateWindow(start=start, end=end)
