from __future__ import annotations

import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


def compute_backoff_seconds(
    *,
    attempt: int,
    base_seconds: float,
    max_seconds: float = 30.0,
    jitter_ratio: float = 0.25,
) -> float:
    if attempt <= 0 or base_seconds <= 0:
        return 0.0
    exponential = min(max_seconds, base_seconds * float(2 ** (attempt - 1)))
    jitter = random.uniform(0.0, exponential * max(0.0, jitter_ratio))
    return min(max_seconds, exponential + jitter)


async def wait_with_stop(stop_event: asyncio.Event | None, timeout_seconds: float) -> bool:
    """Sleep up to ``timeout_seconds``; return True if ``stop_event`` fired first."""
    if timeout_seconds <= 0:
        return bool(stop_event and stop_event.is_set())
    if stop_event is None:
        await asyncio.sleep(timeout_seconds)
        return False

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
        return True
    except asyncio.TimeoutError:
        return False
