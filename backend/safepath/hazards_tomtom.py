from __future__ import annotations

import asyncio
from collections.abc import Iterable
from typing import Any, Final

import httpx

from .errors import HazardSourceError
from .geo import bbox_around, haversine_km, haversine_m
from .hazard_cache import CachedHazardSource, HazardCacheStore
from .hazard_merge import merge_hazards
from .logging_utils import log_event
from .models import Hazard, Severity
from .settings import settings

PLACEHOLDER_API_KEY: Final[str] = "your-tomtom-api-key-here"

INCIDENT_FIELDS: Final[str] = (
    "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,magnitudeOfDelay,"
    "events{description,code,iconCategory},startTime,endTime,from,to,length,delay,roadNumbers,"
    "timeValidity}}}"
)
CATEGORY_FILTER: Final[str] = "0,1,2,3,4,5,6,7,8,9,10,11,14"

ICON_CATEGORY_TYPES: Final[dict[int, str]] = {
    0: "accident",
    1: "accident",
    2: "poor_lighting",
    3: "road_damage",
    4: "flooding",
    5: "road_damage",
    6: "accident",
    7: "road_closure",
    8: "road_closure",
    9: "construction",
    10: "road_damage",
    11: "flooding",
    14: "accident",
}
MAGNITUDE_SEVERITY: Final[dict[int, Severity]] = {
    0: "medium",
    1: "low",
    2: "medium",
    3: "high",
    4: "critical",
}

# Accident, jam and broken-down vehicle categories feed the collision factor.
COLLISION_CATEGORIES: Final[frozenset[int]] = frozenset({1, 6, 14})
COLLISION_SEVERITY_WEIGHTS: Final[dict[str, float]] = {
    "critical": 3.0,
    "high": 2.0,
    "medium": 1.0,
    "low": 0.5,
}
COLLISION_BASELINE: Final[float] = 0.1
COLLISION_NORMALISER: Final[float] = 2.0
ACCIDENT_URGENCY: Final[float] = 1.5


def is_configured_key(api_key: str | None) -> bool:
    key = (api_key or "").strip()
    return bool(key) and key != PLACEHOLDER_API_KEY


def _incident_position(geometry: Any) -> tuple[float, float] | None:
    """Return (lat, lon) for Point or the middle vertex of a LineString."""
    if not isinstance(geometry, dict):
        return None
    coords = geometry.get("coordinates")
    if geometry.get("type") == "Point":
        pt = coords
    elif geometry.get("type") == "LineString" and isinstance(coords, list) and coords:
        pt = coords[len(coords) // 2]
    else:
        return None
    if not isinstance(pt, (list, tuple)) or len(pt) < 2:
        return None
    try:
        return float(pt[1]), float(pt[0])
    except (TypeError, ValueError):
        return None


def _describe(props: dict[str, Any]) -> str:
    events = props.get("events") or []
    texts = [str(e.get("description")) for e in events if isinstance(e, dict) and e.get("description")]
    parts = [", ".join(texts) if texts else "Traffic incident"]
    if props.get("from"):
        parts.append(f"From: {props['from']}")
    if props.get("to"):
        parts.append(f"To: {props['to']}")
    roads = props.get("roadNumbers") or []
    if roads:
        parts.append(f"Road: {', '.join(str(r) for r in roads)}")
    if props.get("length"):
        parts.append(f"Length: {round(float(props['length']))}m")
    if props.get("delay"):
        parts.append(f"Delay: {round(float(props['delay']) / 60)} min")
    return " | ".join(parts)


def parse_incidents(
    incidents: Iterable[Any],
    *,
    lat: float,
    lon: float,
    radius_m: float | None = None,
) -> list[Hazard]:
    """Normalise TomTom incidents, keeping those within ``radius_m`` when given.

    The API is queried by bounding box, so corner incidents lie outside the circle.
    """
    out: list[Hazard] = []
    for incident in incidents:
        if not isinstance(incident, dict):
            continue
        props = incident.get("properties") or {}
        if not isinstance(props, dict) or props.get("id") is None:
            continue
        position = _incident_position(incident.get("geometry"))
        if position is None:
            continue
        h_lat, h_lon = position
        distance = haversine_m(lat, lon, h_lat, h_lon)
        if radius_m is not None and distance > radius_m:
            continue
        try:
            icon = int(props.get("iconCategory", 0))
        except (TypeError, ValueError):
            icon = 0
        try:
            magnitude = int(props.get("magnitudeOfDelay", 0))
        except (TypeError, ValueError):
            magnitude = 0
        hazard_type = ICON_CATEGORY_TYPES.get(icon, "accident")
        out.append(
            Hazard(
                id=f"tomtom-{props['id']}",
                source="tomtom",
                latitude=h_lat,
                longitude=h_lon,
                type=hazard_type,
                severity=MAGNITUDE_SEVERITY.get(magnitude, "medium"),
                description=_describe(props),
                distance=float(round(distance)),
                verified=True,
                affects_traffic=True,
                reported_at=props.get("startTime"),
                end_date=props.get("endTime"),
                icon_category=icon,
                magnitude_of_delay=magnitude,
                delay_s=float(props["delay"]) if props.get("delay") is not None else None,
                length_m=float(props["length"]) if props.get("length") is not None else None,
                metadata={
                    "from": props.get("from"),
                    "to": props.get("to"),
                    "road_numbers": props.get("roadNumbers") or [],
                    "time_validity": props.get("timeValidity"),
                },
            )
        )
    return out


def collision_density(
    incidents: Iterable[Hazard],
    lat: float,
    lon: float,
    *,
    radius_km: float = 0.5,
) -> float:
    """Collision risk near a point from live incidents, in [0, 1]."""
    risk = 0.0
    counted = 0
    for h in incidents:
        if h.source != "tomtom" or h.icon_category not in COLLISION_CATEGORIES:
            continue
        d = haversine_km(lat, lon, h.latitude, h.longitude)
        if d > radius_km:
            continue
        counted += 1
        weight = COLLISION_SEVERITY_WEIGHTS.get(h.severity, 1.0)
        decay = 1.0 - (d / radius_km) if radius_km > 0 else 1.0
        urgency = ACCIDENT_URGENCY if h.type == "accident" else 1.0
        risk += weight * decay * urgency
    if counted == 0:
        return COLLISION_BASELINE
    return min(1.0, max(COLLISION_BASELINE, risk / COLLISION_NORMALISER))


class TomTomHazardsService(CachedHazardSource):
    """Live traffic incidents from the TomTom Traffic API."""

    source_name = "tomtom"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        cache: HazardCacheStore | None = None,
        semaphore: asyncio.Semaphore | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
        dedup_threshold_m: float | None = None,
    ) -> None:
        super().__init__(cache=cache, semaphore=semaphore)
        self.api_key = (settings.tomtom_api_key if api_key is None else api_key).strip()
        self.base_url = base_url or settings.tomtom_base_url
        self.dedup_threshold_m = (
            settings.hazard_dedup_threshold_m if dedup_threshold_m is None else dedup_threshold_m
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s or settings.tomtom_timeout_s, connect=5.0),
            headers={"accept": "application/json"},
        )

    @property
    def configured(self) -> bool:
        return is_configured_key(self.api_key)

    async def aclose(self) -> None:
        await self.cancel_refreshes()
        if self._owns_client:
            await self._client.aclose()

    async def get_tomtom_hazards(self, lat: float, lon: float, radius_m: float = 5000) -> list[Hazard]:
        if not self.configured:
            raise HazardSourceError(
                reason_code="hazard_source_unconfigured",
                message="TomTom API key is not configured",
            )
        return await self._cached_fetch(lat, lon, radius_m)

    get_hazards = get_tomtom_hazards

    async def get_collision_density(self, lat: float, lon: float, radius_km: float = 0.5) -> float:
        incidents = await self.get_tomtom_hazards(lat, lon, radius_km * 1000.0)
        return collision_density(incidents, lat, lon, radius_km=radius_km)

    def merge_hazards(self, existing: list[Hazard], tomtom: list[Hazard]) -> list[Hazard]:
        return merge_hazards(existing, tomtom, threshold_m=self.dedup_threshold_m, match_type=True)

    async def _fetch(self, lat: float, lon: float, radius_m: float) -> list[Hazard]:
        min_lon, min_lat, max_lon, max_lat = bbox_around(lat, lon, radius_m)
        params = {
            "key": self.api_key,
            "bbox": f"{min_lon:.6f},{min_lat:.6f},{max_lon:.6f},{max_lat:.6f}",
            "fields": INCIDENT_FIELDS,
            "language": "en-GB",
            "categoryFilter": CATEGORY_FILTER,
            "timeValidityFilter": "present",
        }
        try:
            resp = await self._client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message=f"TomTom request failed: {type(e).__name__}",
            ) from e

        if resp.status_code in (401, 403):
            raise HazardSourceError(
                reason_code="hazard_source_unconfigured",
                message=f"TomTom rejected the API key (HTTP {resp.status_code})",
            )
        if resp.status_code != 200:
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message=f"TomTom HTTP {resp.status_code}",
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise HazardSourceError(
                reason_code="hazard_source_unavailable",
                message="TomTom returned invalid JSON",
            ) from e

        incidents = data.get("incidents") if isinstance(data, dict) else None
        if not isinstance(incidents, list):
            incidents = []
        hazards = parse_incidents(incidents, lat=lat, lon=lon, radius_m=radius_m)
        log_event(
            "tomtom_hazards_fetched",
            lat=round(lat, 5),
            lon=round(lon, 5),
            radius_m=int(radius_m),
            incident_count=len(incidents),
            hazard_count=len(hazards),
        )
        return hazards
