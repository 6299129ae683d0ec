"""Process-wide cache for the discovery result.

:class:`DiscoveryCache` holds at most one
:class:`~oca_auth.models.DiscoveryResult` and guarantees that at most one
discovery computation is in flight: concurrent callers of
:meth:`DiscoveryCache.get_or_compute` all await the same task. Only
successful results are stored; a run that finds nothing leaves the cache
empty so the next caller probes again.

A default instance is shared by every loader in the process. It is
exposed through :func:`get_discovery_cache` and can be swapped or reset
for test isolation with :func:`set_discovery_cache` and
:func:`reset_discovery_cache`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from oca_auth.models import DiscoveryResult

logger = logging.getLogger(__name__)

DiscoveryFactory = Callable[[], Awaitable[Optional[DiscoveryResult]]]


class DiscoveryCache:
    """Single-slot, single-flight cache for the discovered base URL and models.

    Example::

        cache = DiscoveryCache()
        result = await cache.get_or_compute(lambda: engine.probe(token))
        cache.reset()  # next get_or_compute probes again
    """

    def __init__(self) -> None:
        self._result: Optional[DiscoveryResult] = None
        self._inflight: Optional[asyncio.Task[Optional[DiscoveryResult]]] = None

    def get(self) -> Optional[DiscoveryResult]:
        """Return the cached result, or ``None`` if nothing has been discovered."""
        return self._result

    def set(self, result: DiscoveryResult) -> None:
        """Store *result*, replacing any previous one."""
        self._result = result

    def reset(self) -> None:
        """Drop the cached result and forget any in-flight computation.

        Callers already awaiting the old computation still receive its
        result, but it is no longer written to this cache.
        """
        self._result = None
        self._inflight = None

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def get_or_compute(self, factory: DiscoveryFactory) -> Optional[DiscoveryResult]:
        """Return the cached result or run *factory* once to produce it.

        While a computation is running, further callers attach to it instead
        of starting another one.
        """
        if self._result is not None:
            return self._result

        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._compute(factory))
            self._inflight = task
        return await asyncio.shield(task)

    async def _compute(self, factory: DiscoveryFactory) -> Optional[DiscoveryResult]:
        task = asyncio.current_task()
        owned = False
        try:
            result = await factory()
        finally:
            # A reset() while running detaches this task from the cache.
            owned = self._inflight is task
            if owned:
                self._inflight = None
        if owned and result is not None:
            self._result = result
            logger.debug(
                "Cached discovery result: %s (%d models)", result.base_url, len(result.models)
            )
        return result


# ------------------------------------------------------------------ #
# Process-wide instance
# ------------------------------------------------------------------ #

_cache: Optional[DiscoveryCache] = None


def get_discovery_cache() -> DiscoveryCache:
    """Return the process-wide :class:`DiscoveryCache`, creating it lazily."""
    global _cache
    if _cache is None:
        _cache = DiscoveryCache()
    return _cache


def set_discovery_cache(cache: DiscoveryCache) -> None:
    """Install *cache* as the process-wide instance."""
    global _cache
    _cache = cache


def reset_discovery_cache() -> None:
    """Clear the process-wide cache's base URL and models together."""
    get_discovery_cache().reset()
