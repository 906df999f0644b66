"""Bounded concurrent execution of per-item coroutines.

Results are collected in completion order, not submission order; callers
must not assume ``results[i]`` belongs to ``items[i]``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

T = TypeVar("T")
U = TypeVar("U")

logger = logging.getLogger(__name__)


async def run_queue(
    items: Sequence[U],
    producer: Callable[[U], Awaitable[T]],
    concurrency: int,
) -> list[T]:
    """Run ``producer`` over ``items`` with at most ``concurrency`` in flight.

    Args:
        items: Work items, taken in order.
        producer: Coroutine function producing one result per item.
        concurrency: Upper bound on concurrently awaited producers; clamped
            to the number of items.

    Returns:
        One result per item, in completion order.

    Raises:
        Exception: The first exception raised by a producer. Remaining
            workers are cancelled before it propagates.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    pending = list(items)
    total = len(pending)
    if not total:
        return []

    workers_count = min(concurrency, total)
    results: list[T] = []

    async def worker() -> None:
        while pending:
            item = pending.pop(0)
            results.append(await producer(item))

    logger.debug("Running %d item(s) with %d worker(s)", total, workers_count)
    workers = [asyncio.ensure_future(worker()) for _ in range(workers_count)]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise
    return results
