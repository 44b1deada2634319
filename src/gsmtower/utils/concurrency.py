import asyncio
from typing import Any, Awaitable, Callable, Sequence, TypeVar

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size <= 0:
        raise ValueError("size must be positive")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


async def run_in_thread(func: Callable[..., T], *args: Any, on_abort: Callable[[], None]) -> T:
    """Run ``func(*args)`` in a worker thread.

    A cancelled task cannot stop its thread, so when the call fails or the
    awaiting task is cancelled, ``on_abort`` is invoked first and the thread
    is then waited for before the error propagates.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(future)
    except BaseException:
        on_abort()
        await asyncio.wait([future])
        if not future.cancelled():
            future.exception()
        raise


class ConcurrencyLimiter:
    """Runs coroutine factories with at most ``limit`` of them in flight."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit

    async def run(self, tasks: Sequence[Callable[[], Awaitable[Any]]]) -> list[Any]:
        if not tasks:
            return []
        semaphore = asyncio.Semaphore(self.limit)

        async def guarded(factory: Callable[[], Awaitable[Any]]) -> Any:
            async with semaphore:
                return await factory()

        pending = [asyncio.ensure_future(guarded(factory)) for factory in tasks]
        try:
            return list(await asyncio.gather(*pending))
        except BaseException:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
