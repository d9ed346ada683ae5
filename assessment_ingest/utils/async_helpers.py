# assessment_ingest/utils/async_helpers.py
"""
Async utilities for safe task management.
"""

import asyncio
import logging
from typing import Any, Coroutine, Optional

logger = logging.getLogger(__name__)


def create_safe_task(
    coro: Coroutine[Any, Any, Any],
    name: Optional[str] = None,
    log_errors: bool = True
) -> asyncio.Task:
    """
    Create an asyncio task whose unhandled exception is logged instead of lost.

    Args:
        coro: The coroutine to run as a task
        name: Optional name for the task (for logging)
        log_errors: Whether to log errors (default True)

    Returns:
        The created asyncio.Task
    """
    task = asyncio.create_task(coro, name=name)

    def _handle_exception(t: asyncio.Task):
        if t.cancelled():
            return
        exc = t.exception()
        if exc and log_errors:
            task_name = name or t.get_name()
            logger.error(f"[AsyncTask:{task_name}] Unhandled exception: {exc}", exc_info=exc)

    task.add_done_callback(_handle_exception)
    return task


async def wait_first(awaitable: "asyncio.Future[Any]", stop: asyncio.Event) -> bool:
    """
    Wait until either ``awaitable`` completes or ``stop`` is set.

    Returns True when the awaitable finished first. When the stop signal wins,
    the awaitable is cancelled and False is returned.
    """
    stop_waiter = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait(
            {awaitable, stop_waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        awaitable.cancel()
        raise
    finally:
        stop_waiter.cancel()

    if awaitable in done:
        return True

    awaitable.cancel()
    try:
        await awaitable
    except asyncio.CancelledError:
        pass
    return False
