from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable


async def run_indexed_tasks(
    tasks: list[tuple[int, Callable[[], Awaitable[Any]]]],
    *,
    max_workers: int,
) -> list[tuple[int, Any]]:
    """Run independent coroutine factories with at most ``max_workers`` in flight.

    Results come back ordered by index. Tasks are expected to capture their own
    failures; an exception escaping a task cancels the rest and propagates.
    """
    if not tasks:
        return []
    if max_workers <= 1 or len(tasks) == 1:
        return [(index, await task()) for index, task in tasks]

    semaphore = asyncio.Semaphore(max_workers)

    async def _bounded(task: Callable[[], Awaitable[Any]]) -> Any:
        async with semaphore:
            return await task()

    futures = {
        index: asyncio.ensure_future(_bounded(task)) for index, task in tasks
    }
    try:
        await asyncio.gather(*futures.values())
    except Exception:
        for future in futures.values():
            future.cancel()
        raise

    return [(index, futures[index].result()) for index in sorted(futures)]
