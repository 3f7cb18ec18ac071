"""HTTP helpers with bounded retry/backoff for the gateway and CRM clients."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt + 1`: 0.5s, 1s, 2s, ... capped at max_delay."""
    return min(max_delay, base_delay * (2 ** attempt))


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 2.0,
    retry_statuses: Optional[Set[int]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    operation: str = "request",
) -> httpx.Response:
    """
    Execute an HTTP request, retrying transport errors and retryable statuses.

    The last transport error is re-raised once attempts are exhausted; a
    retryable status on the final attempt is returned to the caller as-is.
    """
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{operation} failed ({exc.__class__.__name__}), "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{max_attempts})"
            )
            await sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{operation} returned {response.status_code}, "
                f"retrying in {delay:.1f}s (attempt {attempt + 1}/{max_attempts})"
            )
            await sleep(delay)
            continue

        return response

    return response
