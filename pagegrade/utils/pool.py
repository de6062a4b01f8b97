"""
pagegrade/utils/pool.py
Fixed-size async worker pool draining a shared queue.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from .cancellation import CancellationToken

T = TypeVar("T")
R = TypeVar("R")


async def bounded_map(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    concurrency: int,
    token: Optional[CancellationToken] = None,
) -> List[R]:
    """
    Apply fn to every item with at most `concurrency` calls in flight.
    Workers check the token before every pull, so queued items are skipped
    (not started) once it fires. Results keep input order; skipped items are omitted.
    """
    if not items:
        return []

    queue: asyncio.Queue = asyncio.Queue()
    for index, item in enumerate(items):
        queue.put_nowait((index, item))

    results: List[Optional[R]] = [None] * len(items)
    started = [False] * len(items)

    async def worker() -> None:
        while True:
            if token is not None and token.cancelled:
                return
            try:
                index, item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            started[index] = True
            results[index] = await fn(item)

    workers = [asyncio.ensure_future(worker()) for _ in range(min(concurrency, len(items)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for w in workers:
            w.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    return [r for r, was_started in zip(results, started) if was_started]
