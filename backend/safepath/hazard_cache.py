from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock

from .errors import HazardSourceError
from .geo import haversine_m
from .logging_utils import log_event
from .models import Hazard
from .settings import settings


@dataclass
class _HazardCacheEntry:
    inserted_at: float
    payload: list[Hazard]


@dataclass(frozen=True)
class CacheLookup:
    hazards: list[Hazard]
    age_s: float
    stale: bool
    expired: bool


# Half the diagonal of a 0.01 degree cell at the equator, rounded up.
CELL_HALF_DIAGONAL_M = 800.0


def hazard_cache_key(lat: float, lon: float, radius_m: float) -> str:
    # ~1 km cells so nearby queries share an entry.
    return f"{round(float(lat), 2):.2f},{round(float(lon), 2):.2f},{int(radius_m)}"


def cell_query(lat: float, lon: float, radius_m: float) -> tuple[float, float, float]:
    """Centre and radius of a fetch that covers ``radius_m`` around any point in the cell."""
    return round(float(lat), 2), round(float(lon), 2), float(radius_m) + CELL_HALF_DIAGONAL_M


class HazardCacheStore:
    """LRU cache with a freshness window and a hard expiry.

    Entries younger than ``stale_s`` are fresh. Between ``stale_s`` and
    ``ttl_s`` they are served but flagged stale so the caller can refresh in
    the background. Expired entries are kept (until evicted) and only
    returned with ``allow_expired=True`` as a last-resort fallback.
    """

    def __init__(
        self,
        *,
        ttl_s: int,
        stale_s: int,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._stale_s = min(max(0, int(stale_s)), self._ttl_s)
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: OrderedDict[str, _HazardCacheEntry] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def lookup(self, key: str, *, allow_expired: bool = False) -> CacheLookup | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None

            age_s = max(0.0, self._clock() - entry.inserted_at)
            expired = age_s > self._ttl_s
            if expired and not allow_expired:
                self._misses += 1
                return None

            self._items.move_to_end(key)
            self._hits += 1
            return CacheLookup(
                hazards=copy.deepcopy(entry.payload),
                age_s=age_s,
                stale=age_s > self._stale_s,
                expired=expired,
            )

    def get(self, key: str) -> list[Hazard] | None:
        hit = self.lookup(key)
        return None if hit is None else hit.hazards

    def set(self, key: str, hazards: list[Hazard]) -> None:
        payload = copy.deepcopy(hazards)
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = _HazardCacheEntry(inserted_at=self._clock(), payload=payload)

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "ttl_s": self._ttl_s,
                "stale_s": self._stale_s,
                "max_entries": self._max_entries,
            }


def new_hazard_cache() -> HazardCacheStore:
    return HazardCacheStore(
        ttl_s=settings.hazard_cache_ttl_s,
        stale_s=settings.hazard_cache_stale_s,
        max_entries=settings.hazard_cache_max_entries,
    )


def with_distances(hazards: list[Hazard], lat: float, lon: float, radius_m: float) -> list[Hazard]:
    """Re-anchor ``distance`` (metres) to the query point and drop hazards beyond ``radius_m``."""
    out: list[Hazard] = []
    for h in hazards:
        d = haversine_m(lat, lon, h.latitude, h.longitude)
        if d <= radius_m:
            out.append(h.model_copy(update={"distance": float(round(d))}))
    return out


class CachedHazardSource:
    """Serve hazards from cache, refresh stale entries, fall back on failure.

    Subclasses implement ``_fetch``; it must raise ``HazardSourceError`` when
    the upstream provider cannot answer.
    """

    source_name: str = "unknown"

    def __init__(
        self,
        *,
        cache: HazardCacheStore | None = None,
        semaphore: asyncio.Semaphore | None = None,
    ) -> None:
        self._cache = cache if cache is not None else new_hazard_cache()
        self._semaphore = semaphore if semaphore is not None else asyncio.Semaphore(settings.upstream_concurrency)
        self._refreshing: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def cache(self) -> HazardCacheStore:
        return self._cache

    async def _fetch(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        raise NotImplementedError

    async def _fetch_limited(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        async with self._semaphore:
            return await self._fetch(lat, lon, radius_m)

    async def _cached_fetch(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        key = hazard_cache_key(lat, lon, radius_m)
        hit = self._cache.lookup(key)
        if hit is not None:
            if hit.stale:
                log_event("hazard_cache_stale", source=self.source_name, key=key, age_s=round(hit.age_s, 1))
                self._schedule_refresh(key, lat, lon, radius_m)
            return with_distances(hit.hazards, lat, lon, radius_m)

        try:
            hazards = await self._fetch_limited(*cell_query(lat, lon, radius_m))
        except HazardSourceError as e:
            fallback = self._cache.lookup(key, allow_expired=True)
            if fallback is not None:
                log_event(
                    "hazard_source_fallback",
                    level=logging.WARNING,
                    source=self.source_name,
                    key=key,
                    age_s=round(fallback.age_s, 1),
                    error=str(e),
                )
                return with_distances(fallback.hazards, lat, lon, radius_m)
            log_event(
                "hazard_source_failed",
                level=logging.WARNING,
                source=self.source_name,
                key=key,
                reason_code=e.reason_code,
                error=str(e),
            )
            raise

        self._cache.set(key, hazards)
        return with_distances(hazards, lat, lon, radius_m)

    def _schedule_refresh(self, key: str, lat: float, lon: float, radius_m: float) -> None:
        if key in self._refreshing:
            return
        self._refreshing.add(key)
        task = asyncio.get_running_loop().create_task(self._refresh(key, lat, lon, radius_m))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh(self, key: str, lat: float, lon: float, radius_m: float) -> None:
        # Nobody awaits this task, so failures end here.
        try:
            hazards = await self._fetch_limited(*cell_query(lat, lon, radius_m))
        except HazardSourceError as e:
            log_event(
                "hazard_cache_refresh_failed",
                level=logging.WARNING,
                source=self.source_name,
                key=key,
                reason_code=e.reason_code,
                error=str(e),
            )
        except Exception as e:
            log_event(
                "hazard_cache_refresh_failed",
                level=logging.ERROR,
                source=self.source_name,
                key=key,
                error=f"{type(e).__name__}: {e}",
            )
        else:
            self._cache.set(key, hazards)
        finally:
            self._refreshing.discard(key)

    async def wait_for_refreshes(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_refreshes(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.wait_for_refreshes()
