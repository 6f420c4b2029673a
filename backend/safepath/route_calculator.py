from __future__ import annotations

import asyncio
import math
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Final, Protocol

from .crime_data import CrimeDataService
from .errors import SafePathError
from .geo import haversine_m, is_valid_lat_lon, offset_point
from .hazard_merge import merge_hazards
from .hazard_store import hazards_near
from .hazards_osm import OSMHazardsService
from .hazards_tomtom import TomTomHazardsService
from .lighting import LightingService, StreetLamp
from .logging_utils import log_event
from .models import (
    CalculateRoutesResult,
    FactorWeights,
    Hazard,
    RouteEvaluation,
    RouteResult,
    RouteType,
    SafetyPreferences,
    TimeOfDay,
)
from .risk_model import safety_rating
from .routing_osrm import OSRMClient, OSRMError, OSRMNoRouteError, route_coordinates, route_signature
from .safety_scoring import (
    RouteSafety,
    ScoringContext,
    get_crime_severity_weights,
    get_factor_weights,
    score_route_safety,
)
from .settings import settings
from .time_of_day import is_daylight, parse_time_of_day

MODE_SPEEDS_KMH: Final[dict[str, float]] = {
    "walking": 5.0,
    "cycling": 15.0,
    "driving": 30.0,
}

MAX_DETOUR: Final[float] = 0.50
QUICK_WIN_IMPROVEMENT: Final[float] = 0.15
QUICK_WIN_DETOUR: Final[float] = 0.25
BIG_WIN_IMPROVEMENT: Final[float] = 0.25
BIG_WIN_DETOUR: Final[float] = 0.40

# Hazards within this distance of a sampled point count towards a route.
_ROUTE_HAZARD_BUFFER_M: Final[float] = 100.0
_MIN_HAZARD_RADIUS_M: Final[float] = 1000.0
_MAX_HAZARD_RADIUS_M: Final[float] = 25_000.0


class _Comparable(Protocol):
    safety_score: float
    distance: float


def evaluate_alternative(candidate: _Comparable, fastest: _Comparable) -> RouteEvaluation:
    """Decide whether a candidate is worth its detour over the fastest route.

    improvement = relative safety-score reduction, detour = relative extra
    distance. Rules are checked in order:

    - detour over 50% is rejected (RULE_6)
    - no safety gain is rejected (RULE_7)
    - >15% safer with <25% detour is accepted (RULE_4)
    - >25% safer with <40% detour is accepted (RULE_5)
    - anything else is rejected (RULE_7)
    """
    fast_score = float(fastest.safety_score)
    cand_score = float(candidate.safety_score)
    improvement = (fast_score - cand_score) / fast_score if fast_score > 0 else 0.0
    fast_dist = float(fastest.distance)
    detour = (float(candidate.distance) - fast_dist) / fast_dist if fast_dist > 0 else 0.0

    improvement_pct = round(improvement * 100.0, 1)
    detour_pct = round(detour * 100.0, 1)

    def _result(accepted: bool, rule: str, reason: str) -> RouteEvaluation:
        return RouteEvaluation(
            accepted=accepted,
            rule=rule,
            reason=reason,
            improvement_percent=improvement_pct,
            detour_percent=detour_pct,
        )

    if detour > MAX_DETOUR:
        return _result(False, "RULE_6", f"Detour of {detour_pct}% exceeds the 50% limit")
    if improvement <= 0:
        return _result(False, "RULE_7", "Alternative is not safer than the fastest route")
    if improvement > QUICK_WIN_IMPROVEMENT and detour < QUICK_WIN_DETOUR:
        return _result(True, "RULE_4", f"{improvement_pct}% safer for a {detour_pct}% detour")
    if improvement > BIG_WIN_IMPROVEMENT and detour < BIG_WIN_DETOUR:
        return _result(True, "RULE_5", f"{improvement_pct}% safer justifies a {detour_pct}% detour")
    return _result(False, "RULE_7", f"{improvement_pct}% safer does not justify a {detour_pct}% detour")


def travel_time_minutes(mode: str, distance_km: float, duration_s: float) -> float:
    """Walking and cycling use a fixed speed; driving trusts the provider duration."""
    if mode == "driving" and duration_s > 0:
        return duration_s / 60.0
    speed = MODE_SPEEDS_KMH.get(mode, MODE_SPEEDS_KMH["walking"])
    return (distance_km / speed) * 60.0


def validate_trip(from_lat: Any, from_lon: Any, to_lat: Any, to_lon: Any, mode: Any) -> str:
    if not is_valid_lat_lon(from_lat, from_lon) or not is_valid_lat_lon(to_lat, to_lon):
        raise SafePathError(
            reason_code="invalid_coordinates",
            message="Coordinates must be finite, with latitude in [-90, 90] and longitude in [-180, 180]",
        )
    if haversine_m(from_lat, from_lon, to_lat, to_lon) < 1.0:
        raise SafePathError(
            reason_code="invalid_coordinates",
            message="Origin and destination must differ",
        )
    mode_s = str(mode or "").strip().lower()
    if mode_s not in MODE_SPEEDS_KMH:
        raise SafePathError(
            reason_code="invalid_mode",
            message=f"mode must be one of {', '.join(MODE_SPEEDS_KMH)}",
            details={"mode": mode},
        )
    return mode_s


@dataclass(frozen=True)
class _Candidate:
    route: dict[str, Any]
    coordinates: list[tuple[float, float]]
    distance_km: float
    duration_s: float
    route_type: RouteType


def _to_candidate(route: dict[str, Any], route_type: RouteType) -> _Candidate:
    coords = route_coordinates(route)
    return _Candidate(
        route=route,
        coordinates=coords,
        distance_km=max(0.0, float(route.get("distance", 0.0) or 0.0)) / 1000.0,
        duration_s=max(0.0, float(route.get("duration", 0.0) or 0.0)),
        route_type=route_type,
    )


def _hazards_on_route(safety: RouteSafety, hazards: list[Hazard]) -> int:
    count = 0
    for h in hazards:
        for p in safety.points:
            if haversine_m(p.lat, p.lon, h.latitude, h.longitude) <= _ROUTE_HAZARD_BUFFER_M:
                count += 1
                break
    return count


class RouteCalculator:
    """Fastest route plus a safety-vetted alternative.

    Collaborators are injected so each can be faked independently. Only the
    hazard adapters keep state (their caches); a calculation itself is
    stateless.
    """

    def __init__(
        self,
        *,
        osrm: OSRMClient,
        osm: OSMHazardsService | None = None,
        tomtom: TomTomHazardsService | None = None,
        lighting: LightingService | None = None,
        crime: CrimeDataService | None = None,
        community: Callable[[float, float, float], list[Hazard]] | None = hazards_near,
        dedup_threshold_m: float | None = None,
        danger_threshold: float | None = None,
        max_alternatives: int | None = None,
        waypoint_offsets_m: list[float] | None = None,
        max_dangerous_segments: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.osrm = osrm
        self.osm = osm
        self.tomtom = tomtom
        self.lighting = lighting
        self.crime = crime
        self.community = community
        self.dedup_threshold_m = (
            settings.hazard_dedup_threshold_m if dedup_threshold_m is None else dedup_threshold_m
        )
        self.danger_threshold = settings.danger_threshold if danger_threshold is None else danger_threshold
        self.max_alternatives = max_alternatives or settings.max_alternatives
        self.waypoint_offsets_m = waypoint_offsets_m or settings.waypoint_offsets
        self.max_dangerous_segments = (
            settings.max_dangerous_segments if max_dangerous_segments is None else max_dangerous_segments
        )
        self._clock = clock

    evaluate_alternative = staticmethod(evaluate_alternative)

    async def calculate_routes(
        self,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        mode: str = "walking",
        preferences: SafetyPreferences | None = None,
        time_of_day: str | None = None,
    ) -> CalculateRoutesResult:
        request_id = str(uuid.uuid4())
        t0 = time.perf_counter()

        try:
            mode_s = validate_trip(from_lat, from_lon, to_lat, to_lon, mode)
            bucket = parse_time_of_day(time_of_day, now=self._clock() if self._clock else None)
        except SafePathError as e:
            log_event("route_request_rejected", request_id=request_id, reason_code=e.reason_code)
            return CalculateRoutesResult(
                success=False,
                mode=str(mode),
                error="Invalid request",
                message=e.message,
                reason_code=e.reason_code,
            )

        weights = get_factor_weights(bucket, preferences)
        profile = settings.osrm_profile_for(mode_s)

        routes_res, context_res = await asyncio.gather(
            self.osrm.fetch_routes(
                origin_lat=from_lat,
                origin_lon=from_lon,
                dest_lat=to_lat,
                dest_lon=to_lon,
                profile=profile,
                alternatives=self.max_alternatives,
            ),
            self._build_context(bucket, from_lat, from_lon, to_lat, to_lon, preferences),
            return_exceptions=True,
        )
        if isinstance(context_res, BaseException):
            raise context_res
        context, warnings = context_res
        if isinstance(routes_res, OSRMError):
            return self._routing_failure(request_id, routes_res, bucket, mode_s, warnings)
        if isinstance(routes_res, BaseException):
            raise routes_res

        try:
            primary = [_to_candidate(r, "osrm_alternative") for r in routes_res]
        except OSRMError as e:
            return self._routing_failure(request_id, e, bucket, mode_s, warnings)

        fastest_c = min(primary, key=lambda c: (c.duration_s, c.distance_km))
        fastest_c = _Candidate(
            route=fastest_c.route,
            coordinates=fastest_c.coordinates,
            distance_km=fastest_c.distance_km,
            duration_s=fastest_c.duration_s,
            route_type="fastest",
        )
        fastest_safety = score_route_safety(
            fastest_c.coordinates, context, weights, danger_threshold=self.danger_threshold
        )
        fastest = self._build_result(fastest_c, fastest_safety, weights, mode_s, context)

        candidates = [c for c in primary if c.route is not fastest_c.route]
        if fastest_safety.dangerous_segments and self.max_dangerous_segments > 0:
            candidates.extend(
                await self._waypoint_candidates(
                    fastest_safety, from_lat, from_lon, to_lat, to_lon, profile, warnings
                )
            )
        candidates = self._dedupe(fastest_c, candidates)

        accepted: list[RouteResult] = []
        for cand in candidates:
            safety = score_route_safety(cand.coordinates, context, weights, danger_threshold=self.danger_threshold)
            result = self._build_result(cand, safety, weights, mode_s, context)
            evaluation = evaluate_alternative(result, fastest)
            if evaluation.accepted:
                accepted.append(result.model_copy(update={"evaluation": evaluation}))

        if accepted:
            safest = min(accepted, key=lambda r: (r.safety_score, r.distance))
        else:
            safest = fastest.model_copy(update={"same_as_fastest": True})
            log_event(
                "safest_same_as_fastest",
                request_id=request_id,
                candidate_count=len(candidates),
                fastest_score=fastest.safety_score,
            )

        log_event(
            "routes_calculated",
            request_id=request_id,
            mode=mode_s,
            time_of_day=bucket,
            candidate_count=len(candidates),
            accepted_count=len(accepted),
            fastest_score=fastest.safety_score,
            safest_score=safest.safety_score,
            safest_type=safest.route_type,
            same_as_fastest=safest.same_as_fastest,
            warnings=warnings,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
        return CalculateRoutesResult(
            success=True,
            fastest=fastest,
            safest=safest,
            time_of_day=bucket,
            mode=mode_s,
            alternatives_considered=len(candidates),
            warnings=warnings,
        )

    def _routing_failure(
        self,
        request_id: str,
        err: OSRMError,
        bucket: TimeOfDay,
        mode: str,
        warnings: list[str],
    ) -> CalculateRoutesResult:
        no_route = isinstance(err, OSRMNoRouteError)
        reason = "routing_no_route" if no_route else "routing_provider_unavailable"
        log_event("routing_failed", request_id=request_id, reason_code=reason, error=str(err))
        return CalculateRoutesResult(
            success=False,
            time_of_day=bucket,
            mode=mode,
            warnings=warnings,
            error="No route found" if no_route else "Routing provider unavailable",
            message=str(err),
            reason_code=reason,
        )

    async def _build_context(
        self,
        bucket: TimeOfDay,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        preferences: SafetyPreferences | None,
    ) -> tuple[ScoringContext, list[str]]:
        center_lat = (from_lat + to_lat) / 2.0
        center_lon = (from_lon + to_lon) / 2.0
        half_trip = haversine_m(from_lat, from_lon, to_lat, to_lon) / 2.0
        # Rounded so repeated trips in an area share hazard cache entries.
        radius = math.ceil((half_trip + 500.0) / 500.0) * 500.0
        radius = min(_MAX_HAZARD_RADIUS_M, max(_MIN_HAZARD_RADIUS_M, radius))

        names: list[str] = []
        tasks: list[Awaitable[Any]] = []
        warnings: list[str] = []

        if self.osm is not None:
            names.append("osm")
            tasks.append(self.osm.get_osm_hazards(center_lat, center_lon, radius))
        if self.tomtom is not None and self.tomtom.configured:
            names.append("tomtom")
            tasks.append(self.tomtom.get_tomtom_hazards(center_lat, center_lon, radius))
        elif self.tomtom is not None:
            warnings.append("tomtom: hazard_source_unconfigured")
        if self.community is not None:
            names.append("community")
            tasks.append(asyncio.to_thread(self.community, center_lat, center_lon, radius))
        if self.lighting is not None and not is_daylight(bucket):
            lat_pad = 300.0 / 111_000.0
            lon_pad = lat_pad / max(0.01, math.cos(math.radians(center_lat)))
            names.append("lighting")
            tasks.append(
                self.lighting.get_lamps(
                    min(from_lat, to_lat) - lat_pad,
                    min(from_lon, to_lon) - lon_pad,
                    max(from_lat, to_lat) + lat_pad,
                    max(from_lon, to_lon) + lon_pad,
                )
            )

        results = await asyncio.gather(*tasks, return_exceptions=True)
        fetched: dict[str, Any] = {}
        for name, res in zip(names, results, strict=True):
            if isinstance(res, SafePathError):
                warnings.append(f"{name}: {res.reason_code}")
                continue
            if isinstance(res, BaseException):
                raise res
            fetched[name] = res

        osm: list[Hazard] = fetched.get("osm", [])
        tomtom: list[Hazard] = fetched.get("tomtom", [])
        community: list[Hazard] = fetched.get("community", [])
        lamps: list[StreetLamp] | None = fetched.get("lighting")

        merged = merge_hazards(community, osm, threshold_m=self.dedup_threshold_m, match_type=False)
        merged = merge_hazards(merged, tomtom, threshold_m=self.dedup_threshold_m, match_type=True)

        context = ScoringContext(
            time_of_day=bucket,
            hazards=merged,
            incidents=tomtom,
            lamps=lamps,
            crime=self.crime,
            crime_severity=get_crime_severity_weights(preferences),
        )
        return context, warnings

    def _avoidance_waypoints(self, safety: RouteSafety) -> list[tuple[float, float]]:
        """Points beside each of the worst segments, perpendicular to travel."""
        vias: list[tuple[float, float]] = []
        for seg in safety.dangerous_segments[: self.max_dangerous_segments]:
            for offset in self.waypoint_offsets_m:
                for side in (90.0, -90.0):
                    vias.append(
                        offset_point(
                            seg.mid_lat,
                            seg.mid_lon,
                            bearing=(seg.heading + side) % 360.0,
                            distance_m=offset,
                        )
                    )
        return vias

    async def _waypoint_candidates(
        self,
        safety: RouteSafety,
        from_lat: float,
        from_lon: float,
        to_lat: float,
        to_lon: float,
        profile: str,
        warnings: list[str],
    ) -> list[_Candidate]:
        vias = self._avoidance_waypoints(safety)
        results = await asyncio.gather(
            *[
                self.osrm.fetch_routes(
                    origin_lat=from_lat,
                    origin_lon=from_lon,
                    dest_lat=to_lat,
                    dest_lon=to_lon,
                    profile=profile,
                    alternatives=False,
                    via=[via],
                )
                for via in vias
            ],
            return_exceptions=True,
        )
        out: list[_Candidate] = []
        failed = 0
        for res in results:
            if isinstance(res, OSRMError):
                failed += 1
                continue
            if isinstance(res, BaseException):
                raise res
            for route in res[:1]:
                try:
                    out.append(_to_candidate(route, "waypoint_detour"))
                except OSRMError:
                    failed += 1
        if failed:
            warnings.append(f"waypoint_detours_failed: {failed}/{len(vias)}")
        return out

    @staticmethod
    def _dedupe(fastest: _Candidate, candidates: list[_Candidate]) -> list[_Candidate]:
        seen = {route_signature(fastest.route)}
        unique: list[_Candidate] = []
        for cand in candidates:
            sig = route_signature(cand.route)
            if sig in seen:
                continue
            seen.add(sig)
            unique.append(cand)
        return unique

    @staticmethod
    def _build_result(
        cand: _Candidate,
        safety: RouteSafety,
        weights: FactorWeights,
        mode: str,
        context: ScoringContext,
    ) -> RouteResult:
        return RouteResult(
            distance=round(cand.distance_km, 3),
            time=round(travel_time_minutes(mode, cand.distance_km, cand.duration_s), 1),
            safety_score=round(safety.safety_score, 4),
            safety_rating=safety_rating(safety.safety_score),
            factor_weights=weights,
            same_as_fastest=False,
            route_type=cand.route_type,
            duration_s=round(cand.duration_s, 1),
            coordinates=cand.coordinates,
            classification=safety.classification,
            factor_scores=safety.factor_scores,
            dangerous_segments=len(safety.dangerous_segments),
            hazard_count=_hazards_on_route(safety, context.hazards),
        )
