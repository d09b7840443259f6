"""Metadata cache.

an explicit object you pass around, not a module global - tests make a fresh
one (with a fake clock) and never leak state into each other.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from queryforge.models.meta import CubeMeta

logger = logging.getLogger(__name__)

MetaLoader = Callable[[], Awaitable[CubeMeta]]


class MetadataCache:
    """Caches meta() for ttl_seconds.

    concurrent get() calls while a fetch is in flight share that fetch. a
    failed fetch isn't cached, the next get() tries again.
    """

    def __init__(
        self,
        loader: MetaLoader,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._value: CubeMeta | None = None
        self._fetched_at: float | None = None
        self._inflight: asyncio.Task | None = None

    @property
    def is_fresh(self) -> bool:
        if self._value is None or self._fetched_at is None:
            return False
        return self._clock() - self._fetched_at < self.ttl_seconds

    @property
    def cached(self) -> CubeMeta | None:
        """Whatever is cached right now, fresh or not, without fetching."""
        return self._value

    async def get(self, force: bool = False) -> CubeMeta:
        if self.is_fresh and not force:
            return self._value

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch())
        try:
            return await asyncio.shield(self._inflight)
        finally:
            if self._inflight is not None and self._inflight.done():
                self._inflight = None

    async def _fetch(self) -> CubeMeta:
        logger.debug("Fetching metadata")
        value = await self._loader()
        self._value = value
        self._fetched_at = self._clock()
        return value

    def invalidate(self) -> None:
        self._value = None
        self._fetched_at = None
