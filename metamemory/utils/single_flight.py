"""Single-flight execution of an async operation with trigger coalescing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _mark_retrieved(future: asyncio.Future) -> None:
    # Fire-and-forget triggers never await their future.
    if not future.cancelled():
        future.exception()


class SingleFlight(Generic[T]):
    """Run at most one instance of an async operation at a time.

    A trigger that arrives while a run is in flight does not start a second
    run. All such triggers share one follow-up run that starts as soon as the
    current one finishes, so the operation always sees the latest state without
    ever running concurrently with itself.

    Example:
        flight = SingleFlight(run_tagging_pass, name="tagging")
        flight.trigger()            # background, returns a future
        stats = await flight.run()  # waits for a run that started after this call
    """

    def __init__(self, func: Callable[[], Awaitable[T]], name: str = "operation"):
        self._func = func
        self.name = name
        self._task: asyncio.Task | None = None
        self._current: asyncio.Future | None = None
        self._pending: asyncio.Future | None = None

    @property
    def in_flight(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def trigger(self) -> asyncio.Future:
        """Start a run, or coalesce into the follow-up run if one is in flight.

        Returns:
            Future resolving to the result of the run that serves this trigger
        """
        loop = asyncio.get_running_loop()

        if self.in_flight:
            if self._pending is None:
                self._pending = loop.create_future()
                self._pending.add_done_callback(_mark_retrieved)
            logger.debug("%s in flight, coalescing trigger", self.name)
            return self._pending

        self._current = loop.create_future()
        self._current.add_done_callback(_mark_retrieved)
        self._task = loop.create_task(self._drive(), name=f"single-flight:{self.name}")
        return self._current

    async def run(self) -> T:
        """Trigger and wait for the serving run's result."""
        return await asyncio.shield(self.trigger())

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no run is in flight or pending.

        Returns:
            True if idle, False if the timeout elapsed first
        """
        task = self._task
        if task is None or task.done():
            return True
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _drive(self) -> None:
        future = self._current
        while True:
            try:
                result = await self._func()
            except Exception as e:
                logger.exception("%s run failed", self.name)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

            if self._pending is None:
                break
            future = self._current = self._pending
            self._pending = None
