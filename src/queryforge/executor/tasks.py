"""Cancellable delayed tasks.

ScheduledTask wraps "run this coroutine after N seconds" so that replacing a
pending run is an explicit cancel() you can check, instead of whichever
timer callback happens to fire last.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class ScheduledTask:
    """A coroutine function scheduled to run once after a delay.

    needs a running event loop. started flips to True once the delay is over
    and the function is actually running - Debouncer only cancels tasks that
    haven't got that far.
    """

    def __init__(
        self, delay: float, fn: Callable[[], Awaitable[Any]], name: str | None = None
    ) -> None:
        self.delay = delay
        self.started = False
        self._fn = fn
        self._task = asyncio.get_running_loop().create_task(self._run(), name=name)

    async def _run(self) -> Any:
        await asyncio.sleep(self.delay)
        self.started = True
        return await self._fn()

    def cancel(self) -> bool:
        """Cancel the task. Returns False if it had already finished."""
        return self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def pending(self) -> bool:
        """Still waiting out the delay."""
        return not self.started and not self._task.done()

    async def wait(self) -> Any:
        """Wait for the task and return its result (raises if it was cancelled)."""
        return await self._task

    def __await__(self):
        return self._task.__await__()


class Debouncer:
    """Run only the last of a burst of calls, after a quiet period."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self._current: ScheduledTask | None = None

    def schedule(self, fn: Callable[[], Awaitable[Any]]) -> ScheduledTask:
        """Schedule fn, superseding any run still waiting out its delay.

        a run that already started is left alone, stale responses from it are
        the caller's problem (see the request token in ExecutionCoordinator).
        """
        if self._current is not None and self._current.pending:
            self._current.cancel()
            logger.debug("Superseded pending debounced run")
        self._current = ScheduledTask(self.delay, fn, name="debounced-run")
        return self._current

    def cancel(self) -> None:
        if self._current is not None:
            self._current.cancel()
            self._current = None

    @property
    def current(self) -> ScheduledTask | None:
        return self._current

    @property
    def pending(self) -> bool:
        return self._current is not None and self._current.pending
