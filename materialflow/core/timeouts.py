"""Timer race for external calls.

``race_with_timeout`` waits for an awaitable for at most ``timeout_seconds``.
When the timer wins, the call keeps running in the background and its
eventual result is discarded ("abandon, don't kill"). Abandoned tasks are
held here until they finish so they are not garbage-collected mid-flight
and their exceptions never surface as "never retrieved" warnings.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

import structlog

from materialflow.core.exceptions import CallTimeoutError

logger = structlog.get_logger()

T = TypeVar("T")

_abandoned: set[asyncio.Future] = set()


def _discard_abandoned(task: asyncio.Future) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned call finished with error", error=str(exc))
    else:
        logger.debug("Abandoned call finished, result discarded")


def _abandon(task: asyncio.Future) -> None:
    if task.done():
        return
    _abandoned.add(task)
    task.add_done_callback(_discard_abandoned)


def abandoned_call_count() -> int:
    """Number of timed-out calls that are still running."""
    return len(_abandoned)


async def race_with_timeout(
    awaitable: Awaitable[T],
    timeout_seconds: float,
    message: str = "Model call timeout",
) -> T:
    """Await ``awaitable`` unless ``timeout_seconds`` elapse first.

    Raises:
        CallTimeoutError: the timer fired. The underlying call is left
            running; it is never cancelled.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        _abandon(task)
        raise CallTimeoutError(f"{message} after {timeout_seconds:g}s") from None
    except asyncio.CancelledError:
        _abandon(task)
        raise
