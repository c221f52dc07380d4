from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Hashable
from dataclasses import dataclass
from typing import Any, Literal

from assignment_review.services.errors import StaleRequestError

ViewKind = Literal["pending", "verified"]
CacheKey = tuple[ViewKind, Hashable]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float


@dataclass(slots=True)
class _Flight:
    generation: int
    task: asyncio.Future[Any]
    waiters: int = 0


@dataclass(slots=True)
class CacheStats:
    hits: int = 0
    loads: int = 0
    stale: int = 0


class ViewCache:
    """Short-lived cache of the two review views.

    Entries are keyed ``(view_kind, key)``. Concurrent requests for the same key
    share one in-flight load, which records the view kind's generation when it
    starts. ``invalidate`` bumps the generation, so a load that finishes under an
    older generation is discarded and never cached; its waiters load again.

    Expired entries are swept whenever a load completes, and each view kind
    holds at most ``max_entries`` entries, dropping the oldest first.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        max_entries: int = 256,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.max_entries = max(max_entries, 1)
        self.stats = CacheStats()
        self._entries: dict[CacheKey, _Entry] = {}
        self._flights: dict[CacheKey, _Flight] = {}
        self._generations: dict[ViewKind, int] = {"pending": 0, "verified": 0}

    def get(self, view_kind: ViewKind, key: Hashable) -> Any | None:
        entry = self._entries.get((view_kind, key))
        if entry is None:
            return None
        if entry.expires_at <= self.clock():
            del self._entries[(view_kind, key)]
            return None
        return entry.value

    async def get_or_load(self, view_kind: ViewKind, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        cache_key: CacheKey = (view_kind, key)
        while True:
            cached = self.get(view_kind, key)
            if cached is not None:
                self.stats.hits += 1
                return cached

            flight = self._flights.get(cache_key)
            if flight is None or flight.generation != self._generations[view_kind]:
                flight = self._start(cache_key, loader)
            try:
                value = await self._wait(cache_key, flight)
                return self._complete(cache_key, flight, value)
            except StaleRequestError:
                self.stats.stale += 1
                logger.debug("discarded stale view load view=%s generation=%s", view_kind, flight.generation)

    def invalidate(self, view_kind: ViewKind) -> None:
        self._generations[view_kind] += 1
        for cache_key in [cache_key for cache_key in self._entries if cache_key[0] == view_kind]:
            del self._entries[cache_key]

    def clear(self) -> None:
        for view_kind in self._generations:
            self.invalidate(view_kind)

    def entry_count(self, view_kind: ViewKind | None = None) -> int:
        return sum(1 for cache_key in self._entries if view_kind is None or cache_key[0] == view_kind)

    def _start(self, cache_key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> _Flight:
        self.stats.loads += 1
        flight = _Flight(
            generation=self._generations[cache_key[0]],
            task=asyncio.ensure_future(loader()),
        )
        self._flights[cache_key] = flight
        return flight

    async def _wait(self, cache_key: CacheKey, flight: _Flight) -> Any:
        flight.waiters += 1
        try:
            return await asyncio.shield(flight.task)
        except asyncio.CancelledError:
            if flight.waiters == 1 and not flight.task.done():
                # Last interested caller went away.
                flight.task.cancel()
                self._drop(cache_key, flight)
            raise
        except Exception:
            self._drop(cache_key, flight)
            raise
        finally:
            flight.waiters -= 1

    def _complete(self, cache_key: CacheKey, flight: _Flight, value: Any) -> Any:
        self._drop(cache_key, flight)
        if flight.generation != self._generations[cache_key[0]]:
            raise StaleRequestError("view load superseded", operation=f"load_{cache_key[0]}")
        self._store(cache_key, value)
        return value

    def _store(self, cache_key: CacheKey, value: Any) -> None:
        now = self.clock()
        self._entries.pop(cache_key, None)
        for expired in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            del self._entries[expired]
        # Dicts keep insertion order, so the first keys are the oldest.
        same_kind = [key for key in self._entries if key[0] == cache_key[0]]
        for oldest in same_kind[: max(len(same_kind) - self.max_entries + 1, 0)]:
            del self._entries[oldest]
        self._entries[cache_key] = _Entry(value=value, expires_at=now + self.ttl_seconds)

    def _drop(self, cache_key: CacheKey, flight: _Flight) -> None:
        if self._flights.get(cache_key) is flight:
            del self._flights[cache_key]
