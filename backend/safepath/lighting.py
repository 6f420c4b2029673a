from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Final, Iterable

import httpx

from .errors import SafePathError
from .geo import haversine_m
from .logging_utils import log_event
from .settings import settings

DAYLIGHT_INDEX: Final[float] = 0.1
NO_LIGHTS_INDEX: Final[float] = 0.7
FALLBACK_INDEX: Final[float] = 0.3
SEARCH_RADIUS_M: Final[float] = 100.0

_LIT_SCORES: Final[dict[str, float]] = {
    "yes": 0.1,
    "automatic": 0.15,
    "interval": 0.15,
    "sunset-sunrise": 0.15,
    "limited": 0.5,
    "no": 0.8,
}
_SOURCE_FACTORS: Final[dict[str, float]] = {
    "LED": 0.9,
    "metal_halide": 0.95,
    "gas_lantern": 1.2,
}


@dataclass(frozen=True)
class StreetLamp:
    lat: float
    lon: float
    lighting_score: float
    coverage_radius_m: float


def lighting_score(tags: dict[str, Any]) -> float:
    """Darkness contribution of one lit element (lower is better lit)."""
    lit = tags.get("lit")
    if lit is None and tags.get("highway") in {"street_lamp", "lamp_post"}:
        lit = "yes"
    score = _LIT_SCORES.get(str(lit), 0.3)
    source = tags.get("light_source") or tags.get("light:source")
    score *= _SOURCE_FACTORS.get(str(source), 1.0)
    return min(1.0, max(0.0, score))


def coverage_radius_m(tags: dict[str, Any]) -> float:
    lamp_type = tags.get("lamp_type") or tags.get("lamp:type")
    source = tags.get("light_source") or tags.get("light:source")
    highway = tags.get("highway")
    if source == "LED" and lamp_type == "electric":
        return 40.0
    if highway == "street_lamp":
        return 30.0
    if highway == "lamp_post":
        return 25.0
    if source == "gas_lantern":
        return 15.0
    return 30.0


def parse_lamps(elements: Iterable[Any]) -> list[StreetLamp]:
    out: list[StreetLamp] = []
    for element in elements:
        if not isinstance(element, dict):
            continue
        center = element.get("center") if isinstance(element.get("center"), dict) else element
        if "lat" not in center or "lon" not in center:
            continue
        tags = element.get("tags") or {}
        if not isinstance(tags, dict):
            continue
        out.append(
            StreetLamp(
                lat=float(center["lat"]),
                lon=float(center["lon"]),
                lighting_score=lighting_score(tags),
                coverage_radius_m=coverage_radius_m(tags),
            )
        )
    return out


def darkness_index(
    lamps: Iterable[StreetLamp],
    lat: float,
    lon: float,
    *,
    daylight: bool = False,
    search_radius_m: float = SEARCH_RADIUS_M,
) -> float:
    """0.0 = well lit, 1.0 = dark."""
    if daylight:
        return DAYLIGHT_INDEX
    total_weight = 0.0
    weighted = 0.0
    # Cheap degree box before the haversine.
    lat_slack = search_radius_m / 111_000.0
    lon_slack = lat_slack / max(0.01, math.cos(math.radians(lat)))
    for lamp in lamps:
        if abs(lamp.lat - lat) > lat_slack or abs(lamp.lon - lon) > lon_slack:
            continue
        d = haversine_m(lat, lon, lamp.lat, lamp.lon)
        if d > search_radius_m:
            continue
        if d <= lamp.coverage_radius_m:
            influence = 1.0
        else:
            influence = max(0.0, 1.0 - ((d - lamp.coverage_radius_m) / search_radius_m))
        total_weight += influence
        weighted += lamp.lighting_score * influence
    if total_weight == 0:
        return NO_LIGHTS_INDEX
    return min(1.0, max(0.0, weighted / total_weight))


def build_lamp_query(min_lat: float, min_lon: float, max_lat: float, max_lon: float) -> str:
    box = f"({min_lat:.5f},{min_lon:.5f},{max_lat:.5f},{max_lon:.5f})"
    return (
        "[out:json][timeout:25];\n"
        "(\n"
        f'  node["highway"="street_lamp"]{box};\n'
        f'  node["highway"="lamp_post"]{box};\n'
        f'  way["highway"]["lit"]{box};\n'
        ");\n"
        "out center;"
    )


class LightingService:
    """Street lamps from Overpass, cached per bounding box."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        semaphore: asyncio.Semaphore | None = None,
        endpoints: list[str] | None = None,
        ttl_s: float = 86_400.0,
        max_entries: int = 64,
    ) -> None:
        self.endpoints = endpoints or [settings.overpass_url, *settings.overpass_alternatives]
        self._semaphore = semaphore if semaphore is not None else asyncio.Semaphore(settings.upstream_concurrency)
        self._ttl_s = ttl_s
        self._max_entries = max(1, max_entries)
        self._cache: OrderedDict[str, tuple[float, list[StreetLamp]]] = OrderedDict()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.overpass_timeout_s, connect=5.0),
            headers={"accept": "application/json", "user-agent": "safepath-backend/0.1"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def get_lamps(self, min_lat: float, min_lon: float, max_lat: float, max_lon: float) -> list[StreetLamp]:
        key = f"{min_lat:.3f},{min_lon:.3f},{max_lat:.3f},{max_lon:.3f}"
        cached = self._cache.get(key)
        if cached is not None and (time.time() - cached[0]) <= self._ttl_s:
            self._cache.move_to_end(key)
            return cached[1]

        query = build_lamp_query(min_lat, min_lon, max_lat, max_lon)
        errors: list[str] = []
        async with self._semaphore:
            for url in self.endpoints:
                try:
                    resp = await self._client.post(url, data={"data": query})
                except httpx.HTTPError as e:
                    errors.append(f"{url}: {type(e).__name__}")
                    continue
                if resp.status_code != 200:
                    errors.append(f"{url}: HTTP {resp.status_code}")
                    continue
                try:
                    elements = resp.json().get("elements", [])
                except (ValueError, AttributeError):
                    errors.append(f"{url}: invalid JSON")
                    continue
                lamps = parse_lamps(elements)
                self._cache[key] = (time.time(), lamps)
                while len(self._cache) > self._max_entries:
                    self._cache.popitem(last=False)
                log_event("lighting_fetched", key=key, lamp_count=len(lamps))
                return lamps

        log_event("lighting_source_failed", level=logging.WARNING, key=key, errors=errors)
        raise SafePathError(
            reason_code="lighting_source_unavailable",
            message="Street lighting data unavailable",
            details={"errors": errors},
        )
