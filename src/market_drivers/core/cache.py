"""
Single-flight TTL cache for aggregated views.

One entry per key. At most one recomputation per key is in flight at any time;
callers arriving during a refresh await the same task and receive the same payload.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    payload: T
    computed_at: datetime
    ttl: float
    stored_at: float  # monotonic seconds

    def is_fresh(self, now: float) -> bool:
        return (now - self.stored_at) < self.ttl


@dataclass(frozen=True)
class CachedValue(Generic[T]):
    """Unwrapped payload handed back to callers."""
    payload: T
    computed_at: datetime
    stale: bool = False


class SingleFlightCache:
    """Keyed TTL memoization with single-flight refresh.

    `clock` returns monotonic seconds and is injectable for tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry[Any]] = {}
        self._inflight: Dict[str, "asyncio.Task[CacheEntry[Any]]"] = {}
        self.computations = 0

    async def get(
        self,
        key: str,
        compute: Callable[[], Awaitable[T]],
        ttl: float,
        force_refresh: bool = False,
        serve_stale_on: Tuple[Type[BaseException], ...] = (),
    ) -> CachedValue[T]:
        """Return a fresh cached payload or recompute it once for all concurrent callers.

        If the recomputation raises one of `serve_stale_on` and an expired entry
        exists, that entry is returned with `stale=True` instead of the error.
        """
        entry = self._entries.get(key)
        if entry is not None and not force_refresh and entry.is_fresh(self._clock()):
            logger.debug(f"cache hit: {key}")
            return CachedValue(entry.payload, entry.computed_at)

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key, compute, ttl))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._clear_inflight(k, t))
        else:
            logger.debug(f"joining in-flight refresh: {key}")

        try:
            fresh = await asyncio.shield(task)
        except serve_stale_on as e:
            stale = self._entries.get(key)
            if stale is None:
                raise
            logger.warning(f"serving stale {key} computed at {stale.computed_at.isoformat()}: {e}")
            return CachedValue(stale.payload, stale.computed_at, stale=True)
        return CachedValue(fresh.payload, fresh.computed_at)

    async def _refresh(self, key: str, compute: Callable[[], Awaitable[T]], ttl: float) -> CacheEntry[T]:
        self.computations += 1
        started = self._clock()
        payload = await compute()
        entry = CacheEntry(
            payload=payload,
            computed_at=datetime.now(timezone.utc),
            ttl=float(ttl),
            stored_at=self._clock(),
        )
        self._entries[key] = entry
        logger.info(f"recomputed {key} in {(entry.stored_at - started) * 1000:.0f}ms")
        return entry

    def _clear_inflight(self, key: str, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Retrieve the exception so an errored refresh nobody awaited is not reported as lost.
        if not task.cancelled():
            task.exception()

    def invalidate(self, key: str) -> None:
        """Expire the entry so the next get recomputes.

        The expired payload is kept as the stale fallback. An in-flight refresh is left to finish.
        """
        entry = self._entries.get(key)
        if entry is not None:
            self._entries[key] = replace(entry, ttl=0.0)

    def peek(self, key: str) -> Optional[CacheEntry[Any]]:
        return self._entries.get(key)

    def is_inflight(self, key: str) -> bool:
        return key in self._inflight
