"""Async utilities for bridging blocking store adapters into the engine."""

import asyncio
import logging
from typing import Any, Callable, Coroutine, Sequence, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Module-level semaphore bounding concurrent remote calls
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 3) -> None:
    """Initialize the remote-request semaphore.  Call once per session."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info(
        "Remote request semaphore initialized: max_parallel=%d",
        max_parallel,
    )


def reset_semaphore() -> None:
    """Drop the semaphore so calls run unbounded again."""
    global _semaphore
    _semaphore = None


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking function in a thread pool without blocking the event loop.

    Used for local store I/O.  Does NOT acquire the semaphore.

    Args:
        func: Synchronous function to call
        *args: Positional arguments for func
        **kwargs: Keyword arguments for func

    Returns:
        Result of func(*args, **kwargs)

    Example:
        docs = await run_sync(local_store.load_collection, "expenses")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a blocking function in a thread pool, bounded by the semaphore.

    Falls back to unbounded if the semaphore is not initialized.
    """
    if _semaphore is None:
        return await asyncio.to_thread(func, *args, **kwargs)
    async with _semaphore:
        return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_timeout(
    timeout: float | None,
    func: Callable[..., T],
    *args: Any,
    **kwargs: Any,
) -> T:
    """Like ``run_sync_limited`` but give up after *timeout* seconds.

    The timeout starts once a semaphore slot is held, so time spent
    queueing behind other calls does not count.  The worker thread cannot
    be interrupted: on timeout it is left to finish in the background,
    keeps its slot until it does, and its result is discarded.

    Raises:
        asyncio.TimeoutError: If the call does not finish in time.
    """
    semaphore = _semaphore
    if semaphore is not None:
        await semaphore.acquire()
    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))

    def _finished(fut: asyncio.Future) -> None:
        if semaphore is not None:
            semaphore.release()
        # Retrieve a late failure so it is not reported as unhandled.
        if not fut.cancelled():
            fut.exception()

    future.add_done_callback(_finished)
    return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)


async def gather_limited(
    coros: Sequence[Coroutine[Any, Any, T]],
) -> list[T]:
    """Run coroutines concurrently and return results in order.

    Each coroutine should use run_sync_limited internally.  The first
    exception cancels the remaining coroutines; they are awaited before it
    propagates, so none of them is left running past this call.  A worker
    thread already inside a blocking call still finishes that call, but
    its coroutine does not continue.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
