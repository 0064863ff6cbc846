"""
Backoff helpers for re-enqueued jobs.

Hard upstream errors back off exponentially; rate-limit deferrals use the
fixed window the upstream imposes and do not go through here.
"""
import random
from typing import Optional

from sync_orchestrator.config import get_settings

settings = get_settings()


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (max(attempt, 1) - 1))
    delay = min(delay, max_delay)

    # Jitter (0-25% of delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def job_retry_delay(attempt: int, jitter: Optional[bool] = None) -> float:
    """Delay before a job that hit a hard error runs again"""
    return calculate_backoff(
        attempt,
        base_delay=settings.retry_base_delay_seconds,
        max_delay=settings.retry_max_delay_seconds,
        jitter=True if jitter is None else jitter,
    )
