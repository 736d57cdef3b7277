"""
Bounded-concurrency batch execution.
"""
import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Iterable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CONCURRENCY = 3


class AdmissionGate:
    """
    Counting admission gate with FIFO waiters.

    At most ``limit`` holders are admitted at once. A released slot goes
    straight to the oldest waiter. All state changes happen synchronously on
    the event loop thread, with no await between reading and writing the
    counter or the waiter queue.

    Args:
        limit (int): Maximum simultaneous holders, at least 1.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("AdmissionGate limit must be at least 1")
        self.limit = limit
        self._available = limit
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def in_flight(self) -> int:
        return self.limit - self._available

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self) -> None:
        if self._available > 0 and not self._waiters:
            self._available -= 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was handed over before the cancellation landed
                self.release()
            else:
                self._discard(waiter)
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        if self._available >= self.limit:
            raise RuntimeError("AdmissionGate released more times than acquired")
        self._available += 1

    def _discard(self, waiter: asyncio.Future) -> None:
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    async def __aenter__(self) -> "AdmissionGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


async def run_batch(
    items: Iterable[T],
    op: Callable[[T], Awaitable[R]],
    concurrency: int = DEFAULT_CONCURRENCY,
    *,
    gate: Optional[AdmissionGate] = None,
) -> List[R]:
    """
    Run ``op`` over every item with at most ``concurrency`` calls in flight.

    Results come back in input order regardless of completion order. The first
    failure cancels the remaining operations and is raised; wrap ``op`` to
    capture errors as values instead.

    Args:
        items (Iterable[T]): Inputs, one operation each.
        op (Callable): Async function applied to each item.
        concurrency (int): Maximum operations in flight. Values below 1 are
            treated as 1.
        gate (AdmissionGate, optional): Shared gate, overriding ``concurrency``.

    Returns:
        List[R]: One result per item, in input order.
    """
    items = list(items)
    if not items:
        return []

    if gate is None:
        gate = AdmissionGate(max(1, concurrency))

    async def run_one(index: int, item: T) -> Tuple[int, R]:
        async with gate:
            return index, await op(item)

    logger.debug("Running batch of %d items with concurrency %d", len(items), gate.limit)
    tasks = [asyncio.ensure_future(run_one(index, item)) for index, item in enumerate(items)]
    results: List[Any] = [None] * len(items)
    try:
        for next_done in asyncio.as_completed(tasks):
            index, value = await next_done
            results[index] = value
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    return results
