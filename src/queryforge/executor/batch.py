"""Request coalescing for the batch endpoint.

every register() inside one window ends up in a single executor call. each
caller still gets its own future - a failed position only fails that future,
a failed call fails them all.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from queryforge.errors import BatchQueryError, BatchResultMissingError
from queryforge.executor.tasks import ScheduledTask
from queryforge.models.query import CompiledQuery, ResultSet

logger = logging.getLogger(__name__)

BatchExecutor = Callable[[list[CompiledQuery]], Awaitable[list[ResultSet]]]

DEFAULT_BATCH_DELAY = 0.1


@dataclass
class QueuedQuery:
    query: CompiledQuery
    future: asyncio.Future


class BatchCoordinator:
    """Groups queries registered close together into one batch call.

    the first register() after an idle period starts a timer (delay seconds,
    0 still groups everything registered in the same tick). registrations
    before it fires join the batch. results come back positionally - the
    server keeps request order, we never match on content.

    Example:
        batcher = BatchCoordinator(client.batch_load, delay=0.05)
        a, b = await asyncio.gather(batcher.register(q1), batcher.register(q2))
    """

    def __init__(self, executor: BatchExecutor, delay: float = DEFAULT_BATCH_DELAY) -> None:
        self._executor = executor
        self.delay = delay
        self._queue: list[QueuedQuery] = []
        self._timer: ScheduledTask | None = None

    def register(self, query: CompiledQuery) -> asyncio.Future:
        """Queue a query for the next batch and return a future for its ResultSet."""
        future = asyncio.get_running_loop().create_future()
        self._queue.append(QueuedQuery(query=query, future=future))
        if self._timer is None:
            self._timer = ScheduledTask(self.delay, self.flush, name="batch-flush")
        return future

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def clear(self) -> None:
        """Drop everything pending and cancel the timer.

        futures still waiting are cancelled rather than left hanging forever.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for item in self._queue:
            item.future.cancel()
        self._queue = []

    async def flush(self) -> None:
        """Send whatever is queued right now as one batch."""
        # snapshot before the await - anything registered during the request
        # starts a fresh batch instead of joining this one
        batch, self._queue = self._queue, []
        self._timer = None
        if not batch:
            return

        logger.debug("Flushing batch of %d queries", len(batch))
        try:
            results = await self._executor([item.query for item in batch])
        except asyncio.CancelledError:
            for item in batch:
                item.future.cancel()
            raise
        except Exception as e:
            logger.debug("Batch of %d failed: %s", len(batch), e)
            for item in batch:
                if not item.future.done():
                    item.future.set_exception(e)
            return

        if len(results) < len(batch):
            logger.warning("Batch returned %d results for %d queries", len(results), len(batch))

        for index, item in enumerate(batch):
            if item.future.done():
                continue  # caller cancelled
            if index >= len(results):
                item.future.set_exception(
                    BatchResultMissingError(f"No result returned for batch position {index}", index)
                )
            elif results[index].error:
                item.future.set_exception(BatchQueryError(results[index].error, index))
            else:
                item.future.set_result(results[index])
