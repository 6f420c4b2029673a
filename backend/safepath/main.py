from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import hazard_store, route_store
from .crime_data import CrimeDataService
from .errors import HazardSourceError, SafePathError, http_status_for_reason
from .hazard_merge import merge_hazards, sort_by_distance, source_counts
from .hazards_osm import OSMHazardsService
from .hazards_tomtom import TomTomHazardsService
from .lighting import LightingService
from .logging_utils import log_event
from .models import (
    CalculateRoutesResult,
    CombinedHazardsResponse,
    EvaluateRequest,
    Hazard,
    HazardListResponse,
    HazardReport,
    RouteEvaluation,
    RouteFindRequest,
    SavedRoute,
    SavedRouteInput,
    Severity,
    WeightsResponse,
)
from .route_calculator import RouteCalculator, evaluate_alternative
from .routing_osrm import OSRMClient
from .safety_scoring import get_factor_weights
from .settings import settings
from .time_of_day import parse_time_of_day


@asynccontextmanager
async def lifespan(app: FastAPI):
    upstream = asyncio.Semaphore(settings.upstream_concurrency)
    app.state.osrm = OSRMClient(base_url=settings.osrm_base_url, semaphore=upstream)
    app.state.osm = OSMHazardsService(semaphore=upstream)
    app.state.tomtom = TomTomHazardsService(semaphore=upstream)
    app.state.lighting = LightingService(semaphore=upstream)
    app.state.crime = CrimeDataService()
    # Parse the CSVs off the event loop before the first request needs them.
    await asyncio.to_thread(app.state.crime.load)
    app.state.calculator = RouteCalculator(
        osrm=app.state.osrm,
        osm=app.state.osm,
        tomtom=app.state.tomtom,
        lighting=app.state.lighting,
        crime=app.state.crime,
    )
    log_event("startup", tomtom_configured=app.state.tomtom.configured, osrm_base_url=settings.osrm_base_url)
    yield
    await app.state.osm.aclose()
    await app.state.tomtom.aclose()
    await app.state.lighting.aclose()
    await app.state.osrm.aclose()


app = FastAPI(title="SafePath Routing API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)  # type: ignore[attr-defined]
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} service not initialised")
    return value


def route_calculator(request: Request) -> RouteCalculator:
    return _state(request, "calculator")


def osm_service(request: Request) -> OSMHazardsService:
    return _state(request, "osm")


def tomtom_service(request: Request) -> TomTomHazardsService:
    return _state(request, "tomtom")


CalculatorDep = Annotated[RouteCalculator, Depends(route_calculator)]
OSMDep = Annotated[OSMHazardsService, Depends(osm_service)]
TomTomDep = Annotated[TomTomHazardsService, Depends(tomtom_service)]

LatPath = Annotated[float, Path(ge=-90, le=90)]
LonPath = Annotated[float, Path(ge=-180, le=180)]
RadiusQuery = Annotated[int, Query(ge=100, le=50_000)]


def _http_error(err: SafePathError) -> HTTPException:
    return HTTPException(
        status_code=http_status_for_reason(err.reason_code),
        detail={"reasonCode": err.reason_code, "message": err.message},
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "SafePath backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    out: dict[str, Any] = {"status": "ok"}
    tomtom = getattr(request.app.state, "tomtom", None)
    if tomtom is not None:
        out["tomtomConfigured"] = tomtom.configured
    osm = getattr(request.app.state, "osm", None)
    if osm is not None:
        out["osmCache"] = osm.cache.snapshot()
    return out


@app.get("/api/hazards/osm/{lat}/{lon}", response_model=HazardListResponse)
async def get_osm_hazards(
    lat: LatPath,
    lon: LonPath,
    osm: OSMDep,
    radius: RadiusQuery = settings.hazard_default_radius_m,
) -> HazardListResponse:
    try:
        hazards = await osm.get_osm_hazards(lat, lon, radius)
    except HazardSourceError as e:
        raise _http_error(e) from e
    return HazardListResponse(source="osm", count=len(hazards), hazards=hazards)


@app.get("/api/hazards/tomtom/{lat}/{lon}", response_model=HazardListResponse)
async def get_tomtom_hazards(
    lat: LatPath,
    lon: LonPath,
    tomtom: TomTomDep,
    radius: RadiusQuery = settings.hazard_default_radius_m,
) -> HazardListResponse:
    try:
        hazards = await tomtom.get_tomtom_hazards(lat, lon, radius)
    except HazardSourceError as e:
        raise _http_error(e) from e
    return HazardListResponse(source="tomtom", count=len(hazards), hazards=hazards)


@app.get("/api/hazards/combined/{lat}/{lon}", response_model=CombinedHazardsResponse)
async def get_combined_hazards(
    lat: LatPath,
    lon: LonPath,
    osm: OSMDep,
    tomtom: TomTomDep,
    radius: RadiusQuery = settings.hazard_default_radius_m,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
    include_osm: Annotated[bool, Query(alias="includeOSM")] = True,
    include_tomtom: Annotated[bool, Query(alias="includeTomTom")] = True,
) -> CombinedHazardsResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()
    warnings: list[str] = []

    async def _empty() -> list[Hazard]:
        return []

    osm_task = osm.get_osm_hazards(lat, lon, radius) if include_osm else _empty()
    if include_tomtom and not tomtom.configured:
        warnings.append("tomtom: hazard_source_unconfigured")
    tomtom_task = tomtom.get_tomtom_hazards(lat, lon, radius) if include_tomtom and tomtom.configured else _empty()

    community, osm_res, tomtom_res = await asyncio.gather(
        asyncio.to_thread(hazard_store.hazards_near, lat, lon, radius),
        osm_task,
        tomtom_task,
        return_exceptions=True,
    )
    if isinstance(community, BaseException):
        raise community

    fetched: dict[str, list[Hazard]] = {}
    for name, res in (("osm", osm_res), ("tomtom", tomtom_res)):
        if isinstance(res, HazardSourceError):
            warnings.append(f"{name}: {res.reason_code}")
            fetched[name] = []
        elif isinstance(res, BaseException):
            raise res
        else:
            fetched[name] = res

    merged = merge_hazards(community, fetched["osm"], threshold_m=osm.dedup_threshold_m, match_type=False)
    merged = merge_hazards(merged, fetched["tomtom"], threshold_m=tomtom.dedup_threshold_m, match_type=True)
    hazards = sort_by_distance(merged)[:limit]
    stats = source_counts(hazards)

    log_event(
        "combined_hazards_request",
        request_id=request_id,
        lat=round(lat, 5),
        lon=round(lon, 5),
        radius_m=radius,
        stats=stats,
        warnings=warnings,
        duration_ms=round((time.perf_counter() - t0) * 1000, 2),
    )
    return CombinedHazardsResponse(
        hazards=hazards,
        stats=stats,
        warnings=warnings,
        latitude=lat,
        longitude=lon,
        radius=radius,
    )


@app.get("/api/hazards", response_model=HazardListResponse)
async def list_community_hazards(
    hazard_type: Annotated[str | None, Query(alias="hazardType")] = None,
    severity: Severity | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> HazardListResponse:
    hazards = await asyncio.to_thread(
        hazard_store.recent_hazards,
        hazard_type=hazard_type,
        severity=severity,
        limit=limit,
        offset=offset,
    )
    return HazardListResponse(source="community", count=len(hazards), hazards=hazards)


@app.get("/api/hazards/near/{lat}/{lon}", response_model=HazardListResponse)
async def get_community_hazards_near(
    lat: LatPath,
    lon: LonPath,
    radius: RadiusQuery = 1000,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> HazardListResponse:
    hazards = await asyncio.to_thread(hazard_store.hazards_near, lat, lon, radius, limit)
    return HazardListResponse(source="community", count=len(hazards), hazards=hazards)


@app.post("/api/hazards", response_model=Hazard, status_code=201)
async def report_hazard(report: HazardReport) -> Hazard:
    hazard = await asyncio.to_thread(hazard_store.add_hazard, report)
    log_event("hazard_reported", hazard_id=hazard.id, type=hazard.type, severity=hazard.severity)
    return hazard


@app.get("/api/routes/weights", response_model=WeightsResponse)
async def get_weights(time_of_day: Annotated[str | None, Query(alias="timeOfDay")] = None) -> WeightsResponse:
    try:
        bucket = parse_time_of_day(time_of_day)
    except SafePathError as e:
        raise _http_error(e) from e
    return WeightsResponse(time_of_day=bucket, weights=get_factor_weights(bucket))


@app.post("/api/routes/find", response_model=CalculateRoutesResult)
async def find_routes(req: RouteFindRequest, calculator: CalculatorDep) -> Any:
    result = await calculator.calculate_routes(
        req.from_lat,
        req.from_lon,
        req.to_lat,
        req.to_lon,
        mode=req.mode,
        preferences=req.preferences,
        time_of_day=req.time_of_day,
    )
    if not result.success:
        return JSONResponse(
            status_code=http_status_for_reason(result.reason_code or ""),
            content=result.model_dump(mode="json", by_alias=True),
        )
    return result


@app.post("/api/routes/evaluate", response_model=RouteEvaluation)
async def evaluate_route(req: EvaluateRequest) -> RouteEvaluation:
    return evaluate_alternative(req.candidate, req.fastest)


@app.get("/api/routes", response_model=list[SavedRoute])
async def list_saved_routes() -> list[SavedRoute]:
    return await asyncio.to_thread(route_store.list_routes)


@app.post("/api/routes", response_model=SavedRoute, status_code=201)
async def save_route(payload: SavedRouteInput) -> SavedRoute:
    route = await asyncio.to_thread(route_store.save_route, payload)
    log_event("route_saved", route_id=route.id, mode=route.mode)
    return route


@app.get("/api/routes/near/{lat}/{lon}", response_model=list[SavedRoute])
async def saved_routes_near(lat: LatPath, lon: LonPath, radius: RadiusQuery = 1000) -> list[SavedRoute]:
    return await asyncio.to_thread(route_store.routes_near, lat, lon, radius)


@app.get("/api/routes/{route_id}", response_model=SavedRoute)
async def get_saved_route(route_id: str) -> SavedRoute:
    try:
        return await asyncio.to_thread(route_store.get_route, route_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail="route not found") from e


@app.delete("/api/routes/{route_id}")
async def delete_saved_route(route_id: str) -> dict[str, str]:
    try:
        deleted = await asyncio.to_thread(route_store.delete_route, route_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail="route not found") from e
    return {"deleted": deleted}
