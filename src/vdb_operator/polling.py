"""Bounded waiting for externally assigned values."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 0.1


async def wait_for_value(
    check: Callable[[], Awaitable[T | None]],
    timeout_seconds: float,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    description: str = "value",
) -> T | None:
    """Poll ``check`` until it returns a non-empty value or the timeout elapses.

    Cancellation of the calling task propagates immediately. Exceptions raised
    by ``check`` propagate as well; only empty results are retried.

    Args:
        check: Coroutine factory returning the value or None/empty.
        timeout_seconds: Overall deadline.
        interval_seconds: Delay between checks.
        description: Human-readable name for logging.

    Returns:
        The first non-empty value, or None on timeout.
    """
    deadline = time.monotonic() + timeout_seconds
    while True:
        value = await check()
        if value:
            return value
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning(
                f"Timed out waiting for {description}",
                extra={"timeout_seconds": timeout_seconds},
            )
            return None
        await asyncio.sleep(min(interval_seconds, remaining))
