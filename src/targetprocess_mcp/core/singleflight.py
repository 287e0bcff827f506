from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    Share one in-flight operation between concurrent callers.

    While a task is running, start()/run() hand out that same task instead
    of creating a new one. The task is shielded, so a caller that gets
    cancelled doesn't cancel the work other callers are waiting on.

    Each flight is tagged with the owner's generation. A caller asking for
    a newer generation than the running flight waits for it to settle and
    then starts (or joins) a fresh one.
    """

    def __init__(self) -> None:
        self._task: Optional[asyncio.Task[T]] = None
        self._generation = 0

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def generation(self) -> int:
        """Generation of the current (or most recent) flight."""
        return self._generation

    def start(
        self, factory: Callable[[], Awaitable[T]], *, generation: int = 0
    ) -> asyncio.Task[T]:
        """Return the running task, creating it from `factory` if none is running."""
        task = self._task
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._task = task
            self._generation = generation
            task.add_done_callback(self._on_done)
        return task

    async def run(self, factory: Callable[[], Awaitable[T]], *, generation: int = 0) -> T:
        while self.in_flight and self._generation < generation:
            # started before an invalidation; its result is already stale
            await asyncio.wait([self._task])
        return await asyncio.shield(self.start(factory, generation=generation))

    def _on_done(self, task: asyncio.Task[T]) -> None:
        if self._task is task:
            self._task = None
        # mark the exception retrieved; awaiting callers still receive it
        if not task.cancelled():
            task.exception()


__all__ = ["SingleFlight"]
