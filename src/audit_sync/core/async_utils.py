"""Run blocking sqlite and HTTP calls off the event loop.

Two entry points:

- ``run_sync``: unbounded; used by the local store, whose calls are short
  and serialized by the store's own lock.
- ``run_sync_limited``: bounded by a process-wide semaphore sized from
  ``client.max_parallel_requests``; used by the HTTP transport so a burst
  of cycles cannot open more connections than configured.
"""

import asyncio
import logging
from typing import Any, Callable, TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)

# Set by init_semaphore(); None means unbounded
_semaphore: asyncio.Semaphore | None = None


def init_semaphore(max_parallel: int = 2) -> None:
    """Bound concurrent ``run_sync_limited`` calls to *max_parallel*."""
    global _semaphore
    _semaphore = asyncio.Semaphore(max_parallel)
    logger.info("HTTP concurrency limit set to %d", max_parallel)


async def run_sync(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call *func* on a worker thread and await its result.

    Example:
        store = LocalStore(":memory:")
        record = await run_sync(store._get, RecordKind.AUDIT, "a1")
    """
    return await asyncio.to_thread(func, *args, **kwargs)


async def run_sync_limited(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Like ``run_sync`` but waits for a semaphore slot first.

    Unbounded until ``init_semaphore()`` has been called.
    """
    semaphore = _semaphore
    if semaphore is None:
        return await run_sync(func, *args, **kwargs)
    if semaphore.locked():
        logger.debug("Waiting for a free HTTP slot for %s", func.__name__)
    async with semaphore:
        return await run_sync(func, *args, **kwargs)
