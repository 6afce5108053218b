"""
Cooperative concurrency helpers shared by all actors.

Every actor loop is a multi-way wait over its I/O source, its timers, and
the shared shutdown event. race() is that wait: whichever finishes first
wins and the loser is cancelled, so no actor ever blocks past a shutdown
request and nothing busy-polls.
"""

import asyncio
from typing import Awaitable, Iterable, Optional, TypeVar

from ironheart.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Default bound when joining actor tasks on shutdown
JOIN_TIMEOUT_S = 5.0


class ShutdownRequested(Exception):
    """The shutdown event fired before the awaited operation finished."""


async def race(awaitable: Awaitable[T], shutdown: asyncio.Event,
               timeout: Optional[float] = None) -> T:
    """Wait for an operation, the shutdown event, or a timeout.

    Args:
        awaitable: The I/O operation to wait on
        shutdown: Shared shutdown event
        timeout: Seconds before giving up (None waits forever)

    Returns:
        The operation's result if it finished first

    Raises:
        ShutdownRequested: If shutdown was set first (operation cancelled)
        asyncio.TimeoutError: If the timeout elapsed first (operation cancelled)
        Exception: Whatever the operation itself raised
    """
    if shutdown.is_set():
        _discard(awaitable)
        raise ShutdownRequested()

    task = asyncio.ensure_future(awaitable)
    stop = asyncio.ensure_future(shutdown.wait())
    try:
        done, _ = await asyncio.wait(
            {task, stop}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        task.cancel()
        raise
    finally:
        stop.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        # Operation failed while being abandoned; nothing to report to
        logger.debug(f"Abandoned operation raised {e!r}")

    if stop in done:
        raise ShutdownRequested()
    raise asyncio.TimeoutError()


def _discard(awaitable: Awaitable) -> None:
    # Close never-started coroutines so they don't warn about not being awaited
    close = getattr(awaitable, "close", None)
    if asyncio.iscoroutine(awaitable) and close is not None:
        close()
    elif isinstance(awaitable, asyncio.Future):
        awaitable.cancel()


async def sleep_or_shutdown(delay: float, shutdown: asyncio.Event) -> bool:
    """Sleep for `delay` seconds unless shutdown fires first.

    Returns:
        True if shutdown was requested during the sleep
    """
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


async def join(tasks: Iterable[asyncio.Task], timeout: float = JOIN_TIMEOUT_S) -> None:
    """Wait for actor tasks to finish, cancelling any that are stuck.

    Stuck tasks and task failures are logged, never raised.
    """
    tasks = [task for task in tasks if task is not None]
    if not tasks:
        return

    done, pending = await asyncio.wait(tasks, timeout=timeout)

    for task in pending:
        logger.error(f"Actor {task.get_name()} didn't stop within {timeout:.1f}s, cancelling")
        task.cancel()
    if pending:
        await asyncio.wait(pending, timeout=1.0)

    for task in done:
        if task.cancelled():
            continue
        error = task.exception()
        if error is not None:
            logger.error(f"Actor {task.get_name()} crashed: {error!r}", exc_info=error)
