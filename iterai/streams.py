"""Stream operators: concurrent fan-in with task ids, and an adaptive throttle."""

import asyncio
from datetime import datetime, timedelta, timezone
from itertools import batched
from typing import AsyncIterable, AsyncIterator, Callable, Iterable

from iterai.cancellation import CancellationToken
from iterai.errors import IterAIConfigurationError, MergeWorkerError


class _Closed:
    __slots__ = ("errors",)

    def __init__(self, errors: list[BaseException]) -> None:
        self.errors = errors


async def _cancel_on(token: CancellationToken, workers: list[asyncio.Task[None]]) -> None:
    await token.wait()
    for worker in workers:
        worker.cancel()


async def merge_with_task_id[T](
    tasks: Iterable[tuple[int, AsyncIterable[T]]],
    chunk_size: int = 3,
    *,
    token: CancellationToken | None = None,
) -> AsyncIterator[tuple[int, T]]:
    """Interleave several streams, tagging every item with its task id.

    Tasks are consumed in chunks of at most `chunk_size`; the streams of one
    chunk run concurrently and the next chunk starts only after every stream
    of the current one has ended. Item order is preserved per stream only.

    A failing stream does not stop its siblings. Once the whole chunk has
    finished, all failures are raised together as `MergeWorkerError`.
    """
    if chunk_size < 1:
        raise IterAIConfigurationError(f"chunk_size must be >= 1, got {chunk_size}")

    for chunk in batched(tasks, chunk_size):
        if token is not None and token.cancelled:
            return

        queue: asyncio.Queue[tuple[int, T] | _Closed] = asyncio.Queue()

        async def pump(task_id: int, stream: AsyncIterable[T]) -> None:
            async for item in stream:
                if token is not None and token.cancelled:
                    break
                await queue.put((task_id, item))

        workers = [asyncio.create_task(pump(task_id, stream)) for task_id, stream in chunk]

        async def close() -> None:
            results = await asyncio.gather(*workers, return_exceptions=True)
            errors = [
                r
                for r in results
                if isinstance(r, BaseException)
                and not isinstance(r, asyncio.CancelledError)
            ]
            await queue.put(_Closed(errors))

        closer = asyncio.create_task(close())
        watcher = (
            asyncio.create_task(_cancel_on(token, workers)) if token is not None else None
        )
        try:
            while True:
                entry = await queue.get()
                if isinstance(entry, _Closed):
                    if token is not None and token.cancelled:
                        return
                    if entry.errors:
                        raise MergeWorkerError(entry.errors)
                    break
                if token is not None and token.cancelled:
                    continue
                yield entry
        finally:
            pending = [t for t in (*workers, closer, watcher) if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def throttle[T](
    source: AsyncIterable[T],
    durations: Iterable[timedelta],
    should_throttle: Callable[[T], bool] | None = None,
    *,
    now: Callable[[], datetime] | None = None,
) -> AsyncIterator[T]:
    """Drop throttled items that arrive before their cool-down has elapsed.

    Every throttled item first moves the cursor to the next duration (the last
    one holds once the schedule is exhausted), then passes only if at least
    that long has gone by since the previous emitted throttled item. The first
    throttled item always passes. Items for which `should_throttle` is false
    pass untouched and do not affect the schedule. With no durations every
    item passes.
    """
    schedule = iter(durations)
    current = next(schedule, timedelta(0))

    clock = now or _utcnow
    last_emission: datetime | None = None

    async for item in source:
        if should_throttle is not None and not should_throttle(item):
            yield item
            continue

        current = next(schedule, current)
        stamp = clock()
        if last_emission is None or stamp - last_emission >= current:
            last_emission = stamp
            yield item
