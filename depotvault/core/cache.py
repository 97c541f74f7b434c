"""Time-boxed, single-flight cache for catalog lookups.

The cache holds one value (the branch -> build ID map) with a fetch
timestamp. A lookup inside the TTL returns the cached value; once
``refresh_threshold * ttl`` has elapsed a background refresh is started
while the cached value is still served. Concurrent callers that need a
fresh value all await the same in-flight fetch.

The cache is constructed without a reference to the catalog client. The
uncached fetch primitive is injected afterwards with :meth:`bind`.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import Any, Generic, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class CacheSnapshot(Generic[T]):
    """A cached value.

    Attributes:
        value: The cached value
        fetched_at: Clock reading when the value was fetched
        stale: True when a refresh failed and this is the last good value
    """

    value: T
    fetched_at: float
    stale: bool = False


class CatalogCache(Generic[T]):
    """Single-value cache with TTL, background refresh and single-flight.

    Args:
        ttl: Time to live in seconds
        refresh_threshold: Fraction of the TTL after which a background
            refresh starts
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        ttl: float = 300.0,
        refresh_threshold: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.refresh_threshold = refresh_threshold
        self._clock = clock
        self._fetcher: Callable[[], Awaitable[T]] | None = None
        self._entry: CacheSnapshot[T] | None = None
        self._last_good: CacheSnapshot[T] | None = None
        self._inflight: asyncio.Task[CacheSnapshot[T]] | None = None
        self._generation = 0
        self.fetch_count = 0

    def bind(self, fetcher: Callable[[], Awaitable[T]]) -> None:
        """Inject the uncached fetch primitive.

        Args:
            fetcher: Coroutine function returning a fresh value
        """
        self._fetcher = fetcher

    @property
    def is_updating(self) -> bool:
        """Whether a refresh is in flight."""
        return self._inflight is not None and not self._inflight.done()

    def age(self) -> float | None:
        """Seconds since the cached value was fetched, or None if empty."""
        if self._entry is None:
            return None
        return self._clock() - self._entry.fetched_at

    def invalidate(self) -> None:
        """Drop the cached value immediately, regardless of TTL.

        A fetch already in flight still completes for the callers awaiting it
        but does not repopulate the cache. Later callers start a new fetch.
        """
        self._entry = None
        self._generation += 1
        self._inflight = None
        logger.debug("catalog_cache_invalidated")

    async def get(self, force_refresh: bool = False) -> CacheSnapshot[T]:
        """Get the cached value, fetching when missing or expired.

        Args:
            force_refresh: Ignore the cached value

        Returns:
            Cache snapshot; ``stale`` is set when the refresh failed and the
            last good value was returned instead

        Raises:
            Exception: Whatever the fetcher raised, when no previous value exists
        """
        entry = self._entry
        if entry is not None and not force_refresh:
            age = self._clock() - entry.fetched_at
            if age < self.ttl:
                if age >= self.ttl * self.refresh_threshold:
                    self._start_background_refresh()
                logger.debug("catalog_cache_hit", age=round(age, 3))
                return entry

        try:
            return await self._refresh()
        except Exception as e:
            if self._last_good is None:
                raise
            logger.warning(
                "catalog_cache_refresh_failed",
                error=str(e),
                fallback_age=round(self._clock() - self._last_good.fetched_at, 3),
            )
            return replace(self._last_good, stale=True)

    async def _refresh(self) -> CacheSnapshot[T]:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.get_running_loop().create_task(self._fetch())
        else:
            logger.debug("catalog_cache_awaiting_inflight")
        # Shield so one cancelled caller does not cancel the shared fetch
        return await asyncio.shield(self._inflight)

    def _start_background_refresh(self) -> None:
        if self.is_updating:
            return
        logger.debug("catalog_cache_background_refresh")
        task = asyncio.get_running_loop().create_task(self._fetch())
        task.add_done_callback(_log_background_failure)
        self._inflight = task

    async def _fetch(self) -> CacheSnapshot[T]:
        if self._fetcher is None:
            raise RuntimeError("CatalogCache used before a fetcher was bound")

        generation = self._generation
        self.fetch_count += 1
        value = await self._fetcher()
        snapshot = CacheSnapshot(value=value, fetched_at=self._clock())
        if generation == self._generation:
            self._entry = snapshot
        self._last_good = snapshot
        logger.debug("catalog_cache_updated", fetch_count=self.fetch_count)
        return snapshot

    def stats(self) -> dict[str, Any]:
        """Cache statistics for display."""
        age = self.age()
        return {
            "has_data": self._entry is not None,
            "age": age,
            "ttl": self.ttl,
            "expires_in": None if age is None else max(0.0, self.ttl - age),
            "is_updating": self.is_updating,
            "fetch_count": self.fetch_count,
        }


def _log_background_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("catalog_cache_background_refresh_failed", error=str(error))
