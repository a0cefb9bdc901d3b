import asyncio
from typing import Awaitable, Iterable, List, TypeVar

T = TypeVar("T")

async def fan_out(coros: Iterable[Awaitable[T]]) -> List[T]:
    """Run per-artifact coroutines concurrently, results in input order.

    If one raises (or the caller is cancelled) the siblings are cancelled and
    awaited before the exception propagates, so nothing keeps running behind
    an aborted run.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    if not tasks:
        return []
    try:
        return list(await asyncio.gather(*tasks))
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
