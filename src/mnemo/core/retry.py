"""Bounded exponential retry for external calls, with a per-attempt deadline."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from mnemo.core.errors import is_transient
from mnemo.core.logging import get_logger

logger = get_logger("core.retry")

T = TypeVar("T")


def transient_retrying(
    attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
) -> AsyncRetrying:
    """Retry policy: only transient errors, exponential backoff, original error re-raised."""
    return AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=base_delay, max=max_delay),
        retry=retry_if_exception(is_transient),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    timeout: float | None = None,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    label: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)`` with retries on transient failure.

    Each attempt runs under ``asyncio.timeout(timeout)``; a timeout counts as
    transient. Cancellation of the caller is never retried.
    """
    async for attempt in transient_retrying(attempts, base_delay, max_delay):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.debug(f"Retrying {label or fn.__name__} (attempt {attempt.retry_state.attempt_number})")
            async with asyncio.timeout(timeout):
                return await fn(*args, **kwargs)
    raise AssertionError("unreachable")  # pragma: no cover
