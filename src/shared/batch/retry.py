"""Async retry helper for network operations with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

NETWORK_ERRORS: Tuple[Type[BaseException], ...] = (
    httpx.ConnectError,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
    httpx.LocalProtocolError,
    ConnectionError,
    TimeoutError,
)


async def retry_on_network_error(
    func: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    *,
    retry_on: Tuple[Type[BaseException], ...] = NETWORK_ERRORS,
    label: str = "request",
) -> T:
    """Await ``func()`` and retry on network errors with exponential backoff.

    Errors carrying ``retryable = False`` are raised immediately even when
    their type is listed in ``retry_on``.

    Args:
        func: Zero-argument coroutine factory
        max_retries: Maximum number of attempts
        initial_delay: Initial delay in seconds (doubles each retry)
        retry_on: Exception types considered transient
        label: Description used in log lines

    Returns:
        Result of the first successful attempt

    Raises:
        Exception: Last exception if all retries fail

    Example:
        page = await retry_on_network_error(
            lambda: client.catalog_page(3, 50),
            max_retries=2,
            retry_on=(TransportError,),
        )
    """
    delay = initial_delay
    attempts = max(1, max_retries)

    for attempt in range(attempts):
        try:
            return await func()
        except retry_on as e:
            if getattr(e, "retryable", True) is False or attempt == attempts - 1:
                logger.error("%s failed after %d attempt(s): %s", label, attempt + 1, e)
                raise
            logger.warning(
                "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                label,
                attempt + 1,
                attempts,
                e,
                delay,
            )
            await asyncio.sleep(delay)
            delay *= 2

    raise RuntimeError("Retry loop completed without result or exception")
