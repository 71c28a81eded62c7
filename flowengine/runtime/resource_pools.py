"""Per-run concurrency pools.

Every dispatched node takes one slot of the run-wide parallelism bound and
one slot of its resource-class pool (``llm``, ``http``, ``image``, ``cpu``),
so a graph with many provider calls cannot saturate a provider.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from flowengine.config import settings


class ResourcePools:
    def __init__(
        self,
        max_parallelism: int | None = None,
        limits: dict[str, int] | None = None,
    ) -> None:
        self.max_parallelism = max(1, max_parallelism or settings.MAX_PARALLELISM)
        defaults = {
            "llm": settings.POOL_LIMIT_LLM,
            "http": settings.POOL_LIMIT_HTTP,
            "image": settings.POOL_LIMIT_IMAGE,
            "cpu": settings.POOL_LIMIT_CPU,
        }
        defaults.update(limits or {})
        self.limits = {k: max(1, v) for k, v in defaults.items()}
        self._global = asyncio.Semaphore(self.max_parallelism)
        self._pools = {k: asyncio.Semaphore(v) for k, v in self.limits.items()}
        self.active: dict[str, int] = {k: 0 for k in self.limits}
        self.peak_active = 0
        self._running = 0

    @asynccontextmanager
    async def slot(self, resource_class: str | None) -> AsyncIterator[None]:
        """Hold a global slot plus a pool slot; no-op for ``None``."""
        if resource_class is None:
            yield
            return
        pool = self._pools.get(resource_class, self._pools["cpu"])
        async with self._global:
            async with pool:
                self._running += 1
                self.active[resource_class] = self.active.get(resource_class, 0) + 1
                self.peak_active = max(self.peak_active, self._running)
                try:
                    yield
                finally:
                    self._running -= 1
                    self.active[resource_class] -= 1
