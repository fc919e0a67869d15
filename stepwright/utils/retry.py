from __future__ import annotations

import asyncio

from ..flows.models import RetrySpec


def compute_backoff(retry: RetrySpec) -> float:
    """Delay in seconds between consecutive attempts (fixed, not scaled)."""
    return retry.backoff_ms / 1000


async def schedule_retry(retry: RetrySpec) -> None:
    """Sleep for the backoff delay before retrying."""
    delay = compute_backoff(retry)
    if delay > 0:
        await asyncio.sleep(delay)
