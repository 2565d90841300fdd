"""Bounded fan-out helpers for batches of independent store calls."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Iterable, List, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    fn: Callable[[T], Awaitable[R]],
    limit: int = 50,
) -> List[R]:
    """Run fn over items with at most `limit` calls in flight.

    Results come back in input order once every call has resolved, so the
    caller merges them synchronously afterwards. Exceptions propagate; wrap
    fn if per-item failures should be tolerated.
    """
    semaphore = asyncio.Semaphore(max(1, limit))

    async def _run(item: T) -> R:
        async with semaphore:
            return await fn(item)

    return list(await asyncio.gather(*(_run(item) for item in items)))

