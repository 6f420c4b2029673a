from __future__ import annotations

import asyncio

import pytest

from safepath.geo import haversine_m
from safepath.hazard_cache import (
    CELL_HALF_DIAGONAL_M,
    CachedHazardSource,
    HazardCacheStore,
    hazard_cache_key,
    with_distances,
)
from safepath.models import Hazard


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


def _hazards(n: int = 1) -> list[Hazard]:
    return [
        Hazard(id=f"osm-way-{i}", source="osm", latitude=51.5, longitude=-0.1, type="construction")
        for i in range(n)
    ]


def test_cache_key_rounds_location():
    assert hazard_cache_key(51.50721, -0.12758, 5000) == "51.51,-0.13,5000"
    assert hazard_cache_key(51.5012, -0.1212, 5000) == hazard_cache_key(51.5038, -0.1238, 5000)
    assert hazard_cache_key(51.5, -0.1, 1000) != hazard_cache_key(51.5, -0.1, 5000)


def test_fresh_then_stale_then_expired():
    clock = _Clock()
    cache = HazardCacheStore(ttl_s=900, stale_s=600, max_entries=10, clock=clock)
    cache.set("k", _hazards(2))

    hit = cache.lookup("k")
    assert hit is not None and not hit.stale and len(hit.hazards) == 2

    clock.now += 700
    hit = cache.lookup("k")
    assert hit is not None and hit.stale and not hit.expired

    clock.now += 300
    assert cache.lookup("k") is None
    fallback = cache.lookup("k", allow_expired=True)
    assert fallback is not None and fallback.expired


def test_lru_eviction_and_stats():
    cache = HazardCacheStore(ttl_s=900, stale_s=600, max_entries=2)
    cache.set("a", _hazards())
    cache.set("b", _hazards())
    assert cache.get("a") is not None
    cache.set("c", _hazards())

    assert cache.get("b") is None
    assert cache.get("a") is not None
    stats = cache.snapshot()
    assert stats["size"] == 2
    assert stats["evictions"] == 1
    assert stats["max_entries"] == 2
    assert cache.clear() == 2


def test_cached_payload_is_copied():
    cache = HazardCacheStore(ttl_s=900, stale_s=600, max_entries=2)
    hazards = _hazards()
    cache.set("k", hazards)
    hazards[0].description = "mutated"
    assert cache.get("k")[0].description == ""


NORTH = Hazard(id="osm-node-1", source="osm", latitude=51.5080, longitude=-0.1246, type="barrier")
SOUTH = Hazard(id="osm-node-2", source="osm", latitude=51.4920, longitude=-0.1246, type="barrier")


class _AreaSource(CachedHazardSource):
    """Answers like a real provider: everything within the requested circle."""

    source_name = "test"

    def __init__(self, hazards: list[Hazard], **kw) -> None:
        super().__init__(**kw)
        self.hazards = hazards
        self.calls: list[tuple[float, float, float]] = []
        self.fail_with: Exception | None = None

    async def _fetch(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        self.calls.append((lat, lon, radius_m))
        if self.fail_with is not None:
            raise self.fail_with
        return [h for h in self.hazards if haversine_m(lat, lon, h.latitude, h.longitude) <= radius_m]


def test_points_sharing_a_cell_each_get_their_own_radius():
    async def _run() -> tuple[list[Hazard], list[Hazard]]:
        source = _AreaSource([NORTH, SOUTH])
        first = await source._cached_fetch(51.5040, -0.1246, 500)
        second = await source._cached_fetch(51.4960, -0.1246, 500)
        assert source.calls == [(51.5, -0.12, 500 + CELL_HALF_DIAGONAL_M)]
        return first, second

    first, second = asyncio.run(_run())
    assert [h.id for h in first] == ["osm-node-1"]
    assert [h.id for h in second] == ["osm-node-2"]
    assert all(h.distance is not None and h.distance <= 500 for h in first + second)


def test_with_distances_drops_hazards_outside_radius():
    kept = with_distances([NORTH, SOUTH], 51.5040, -0.1246, 500)
    assert [h.id for h in kept] == ["osm-node-1"]
    assert kept[0].distance == pytest.approx(445, abs=2)


def test_background_refresh_swallows_unexpected_errors():
    clock = _Clock()
    cache = HazardCacheStore(ttl_s=900, stale_s=600, max_entries=10, clock=clock)

    async def _run() -> tuple[_AreaSource, list[Hazard]]:
        source = _AreaSource([NORTH], cache=cache)
        await source._cached_fetch(51.5040, -0.1246, 500)
        clock.now += 700
        source.fail_with = ValueError("bad element coordinates")
        stale = await source._cached_fetch(51.5040, -0.1246, 500)
        tasks = list(source._tasks)
        await source.wait_for_refreshes()
        assert all(t.done() and t.exception() is None for t in tasks)
        return source, stale

    source, stale = asyncio.run(_run())
    assert [h.id for h in stale] == ["osm-node-1"]
    assert len(source.calls) == 2
    assert source._refreshing == set()
    hit = cache.lookup(hazard_cache_key(51.5040, -0.1246, 500))
    assert hit is not None and hit.stale
