from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any, Final

import httpx

from .errors import HazardSourceError
from .geo import haversine_m
from .hazard_cache import CachedHazardSource, HazardCacheStore
from .hazard_merge import merge_hazards
from .logging_utils import log_event
from .models import Hazard, Severity
from .settings import settings

_RETRYABLE_STATUS: Final[set[int]] = {408, 425, 429, 500, 502, 503, 504}
_END_DATE_TAGS: Final[tuple[str, ...]] = (
    "end_date",
    "construction:end_date",
    "temporary:end_date",
    "expected_end_date",
    "opening_date",
)
# Construction that started this long ago without an end date is treated as stale data.
_STALE_START_AGE: Final[timedelta] = timedelta(days=730)

_DESCRIPTIONS: Final[dict[str, str]] = {
    "construction": "Road construction",
    "road_closure": "Road closed",
    "road_work": "Road works",
    "barrier": "Barrier",
}


def build_overpass_query(lat: float, lon: float, radius_m: float) -> str:
    r = int(round(radius_m))
    around = f"(around:{r},{lat:.6f},{lon:.6f})"
    return (
        "[out:json][timeout:30];\n"
        "(\n"
        f'  way["highway"="construction"]{around};\n'
        f'  way["highway"]["access"="no"]{around};\n'
        f'  way["highway"]["temporary:access"="no"]{around};\n'
        f'  node["barrier"]["access"="no"]{around};\n'
        ");\n"
        "out center meta;"
    )


def parse_osm_date(value: Any) -> datetime | None:
    """Parse OSM date tags: YYYY, YYYY-MM, YYYY-MM-DD or full ISO timestamps."""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    for fmt in ("%Y-%m-%d", "%Y-%m", "%Y"):
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=UTC)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _end_date(tags: dict[str, Any]) -> tuple[str | None, datetime | None]:
    for tag in _END_DATE_TAGS:
        parsed = parse_osm_date(tags.get(tag))
        if parsed is not None:
            return str(tags[tag]), parsed
    return None, None


def classify_way(tags: dict[str, Any]) -> tuple[str, Severity]:
    if tags.get("construction"):
        return "construction", "high"
    if tags.get("highway") == "construction":
        return "construction", "high"
    if tags.get("access") == "no":
        return "road_closure", "critical"
    if tags.get("temporary:access") == "no":
        return "road_closure", "high"
    if tags.get("roadworks") == "yes":
        return "road_work", "medium"
    return "construction", "medium"


def classify_node(tags: dict[str, Any]) -> tuple[str, Severity]:
    barrier = tags.get("barrier")
    closed = tags.get("access") == "no"
    if barrier == "gate" and closed:
        return "barrier", "high"
    if barrier == "bollard" and closed:
        return "barrier", "medium"
    if tags.get("highway") == "construction":
        return "construction", "medium"
    return "barrier", "medium"


def _describe(hazard_type: str, tags: dict[str, Any], end_raw: str | None) -> str:
    text = _DESCRIPTIONS.get(hazard_type, hazard_type.replace("_", " ").capitalize())
    name = tags.get("name") or tags.get("ref")
    if name:
        text = f"{text} on {name}"
    parts = [text]
    if tags.get("note"):
        parts.append(str(tags["note"]))
    if tags.get("start_date"):
        parts.append(f"Started {tags['start_date']}")
    if end_raw:
        parts.append(f"Until {end_raw}")
    return ". ".join(parts)


def _element_position(element: dict[str, Any]) -> tuple[float, float] | None:
    center = element.get("center")
    if isinstance(center, dict) and "lat" in center and "lon" in center:
        return float(center["lat"]), float(center["lon"])
    if "lat" in element and "lon" in element:
        return float(element["lat"]), float(element["lon"])
    return None


def parse_overpass_elements(
    elements: Iterable[dict[str, Any]],
    *,
    lat: float,
    lon: float,
    radius_m: float,
    now: datetime | None = None,
) -> list[Hazard]:
    current = now or datetime.now(UTC)
    out: list[Hazard] = []
    seen: set[str] = set()
    for element in elements:
        if not isinstance(element, dict):
            continue
        kind = element.get("type")
        if kind not in {"way", "node"}:
            continue
        hazard_id = f"osm-{kind}-{element.get('id')}"
        if hazard_id in seen:
            continue
        position = _element_position(element)
        if position is None:
            continue
        tags = element.get("tags") or {}
        if not isinstance(tags, dict):
            tags = {}

        end_raw, end = _end_date(tags)
        if end is not None and end < current:
            continue
        start = parse_osm_date(tags.get("start_date"))
        if start is not None and end is None and start < current - _STALE_START_AGE:
            continue

        h_lat, h_lon = position
        distance = haversine_m(lat, lon, h_lat, h_lon)
        if distance > radius_m:
            continue

        hazard_type, severity = classify_way(tags) if kind == "way" else classify_node(tags)
        seen.add(hazard_id)
        out.append(
            Hazard(
                id=hazard_id,
                source="osm",
                latitude=h_lat,
                longitude=h_lon,
                type=hazard_type,
                severity=severity,
                description=_describe(hazard_type, tags, end_raw),
                distance=float(round(distance)),
                verified=True,
                affects_traffic=hazard_type == "road_closure",
                reported_at=element.get("timestamp"),
                end_date=end_raw,
                metadata={
                    "osm_type": kind,
                    "osm_id": element.get("id"),
                    "highway": tags.get("highway"),
                    "access": tags.get("access"),
                    "construction": tags.get("construction"),
                    "name": tags.get("name"),
                    "start_date": tags.get("start_date"),
                    "version": element.get("version"),
                    "user": element.get("user"),
                },
            )
        )
    return out


class OSMHazardsService(CachedHazardSource):
    """Road construction, closures and barriers from the Overpass API."""

    source_name = "osm"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        cache: HazardCacheStore | None = None,
        semaphore: asyncio.Semaphore | None = None,
        primary_url: str | None = None,
        alternative_urls: list[str] | None = None,
        timeout_s: float | None = None,
        primary_attempts: int | None = None,
        rate_limit_wait_s: float | None = None,
        dedup_threshold_m: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        super().__init__(cache=cache, semaphore=semaphore)
        self.primary_url = primary_url or settings.overpass_url
        self.alternative_urls = (
            list(alternative_urls) if alternative_urls is not None else settings.overpass_alternatives
        )
        self.primary_attempts = max(1, primary_attempts or settings.overpass_primary_attempts)
        self.rate_limit_wait_s = (
            settings.overpass_rate_limit_wait_s if rate_limit_wait_s is None else rate_limit_wait_s
        )
        self.dedup_threshold_m = (
            settings.hazard_dedup_threshold_m if dedup_threshold_m is None else dedup_threshold_m
        )
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(UTC))
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.overpass_timeout_s, connect=5.0),
            headers={"accept": "application/json", "user-agent": "safepath-backend/0.1"},
        )

    async def aclose(self) -> None:
        await self.cancel_refreshes()
        if self._owns_client:
            await self._client.aclose()

    async def get_osm_hazards(self, lat: float, lon: float, radius_m: float = 5000) -> list[Hazard]:
        return await self._cached_fetch(lat, lon, radius_m)

    get_hazards = get_osm_hazards

    def merge_hazards(self, community: list[Hazard], osm: list[Hazard]) -> list[Hazard]:
        return merge_hazards(community, osm, threshold_m=self.dedup_threshold_m, match_type=False)

    async def _fetch(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        query = build_overpass_query(lat, lon, radius_m)
        payload = await self._query_overpass(query)
        elements = payload.get("elements")
        if not isinstance(elements, list):
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message="Overpass response missing elements",
            )
        hazards = parse_overpass_elements(
            elements, lat=lat, lon=lon, radius_m=radius_m, now=self._clock()
        )
        log_event(
            "osm_hazards_fetched",
            lat=round(lat, 5),
            lon=round(lon, 5),
            radius_m=int(radius_m),
            element_count=len(elements),
            hazard_count=len(hazards),
        )
        return hazards

    async def _post(self, url: str, query: str) -> httpx.Response:
        return await self._client.post(url, data={"data": query})

    async def _query_overpass(self, query: str) -> dict[str, Any]:
        errors: list[str] = []

        for attempt in range(self.primary_attempts):
            try:
                resp = await self._post(self.primary_url, query)
            except httpx.HTTPError as e:
                errors.append(f"{self.primary_url}: {type(e).__name__}: {e}")
                continue
            if resp.status_code == 200:
                try:
                    return self._decode(resp, self.primary_url, errors)
                except HazardSourceError:
                    break
            errors.append(f"{self.primary_url}: HTTP {resp.status_code}")
            if resp.status_code not in _RETRYABLE_STATUS:
                break
            if resp.status_code == 429 and attempt < self.primary_attempts - 1:
                await self._sleep(self.rate_limit_wait_s)

        for url in self.alternative_urls:
            try:
                resp = await self._post(url, query)
            except httpx.HTTPError as e:
                errors.append(f"{url}: {type(e).__name__}: {e}")
                continue
            if resp.status_code == 200:
                try:
                    return self._decode(resp, url, errors)
                except HazardSourceError:
                    continue
            errors.append(f"{url}: HTTP {resp.status_code}")

        log_event("overpass_unavailable", level=logging.WARNING, errors=errors)
        raise HazardSourceError(
            reason_code="hazard_source_unavailable",
            message="All Overpass endpoints failed",
            details={"errors": errors},
        )

    @staticmethod
    def _decode(resp: httpx.Response, url: str, errors: list[str]) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            errors.append(f"{url}: invalid JSON")
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message="Overpass returned invalid JSON",
            ) from e
        if not isinstance(data, dict):
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message="Overpass returned an unexpected payload",
            )
        return data
