from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from safepath.crime_data import CrimeDataService
from safepath.hazards_osm import OSMHazardsService
from safepath.hazards_tomtom import TomTomHazardsService
from safepath.lighting import LightingService
from safepath.route_calculator import RouteCalculator
from safepath.routing_osrm import OSRMClient
from safepath.settings import settings
from safepath.time_of_day import TIME_OF_DAY_VALUES


def _summary(result: Any) -> dict[str, Any]:
    if not result.success:
        return {"success": False, "reasonCode": result.reason_code, "message": result.message}
    fastest = result.fastest
    safest = result.safest
    return {
        "success": True,
        "fastest": {
            "distanceKm": fastest.distance,
            "timeMin": fastest.time,
            "safetyScore": fastest.safety_score,
            "classification": fastest.classification.classification if fastest.classification else None,
        },
        "safest": {
            "distanceKm": safest.distance,
            "timeMin": safest.time,
            "safetyScore": safest.safety_score,
            "routeType": safest.route_type,
            "sameAsFastest": safest.same_as_fastest,
            "rule": safest.evaluation.rule if safest.evaluation else None,
        },
        "weights": fastest.factor_weights.model_dump(),
        "warnings": result.warnings,
    }


async def _run(args: argparse.Namespace) -> dict[str, Any]:
    upstream = asyncio.Semaphore(settings.upstream_concurrency)
    osrm = OSRMClient(base_url=args.osrm_base_url or settings.osrm_base_url, semaphore=upstream)
    osm = OSMHazardsService(semaphore=upstream)
    tomtom = TomTomHazardsService(semaphore=upstream)
    lighting = LightingService(semaphore=upstream)
    calculator = RouteCalculator(
        osrm=osrm,
        osm=None if args.no_osm else osm,
        tomtom=tomtom,
        lighting=lighting,
        crime=CrimeDataService(),
        community=None,
    )
    times = [args.time_of_day] if args.time_of_day else list(TIME_OF_DAY_VALUES)
    out: dict[str, Any] = {}
    try:
        for bucket in times:
            result = await calculator.calculate_routes(
                args.from_lat,
                args.from_lon,
                args.to_lat,
                args.to_lon,
                mode=args.mode,
                time_of_day=bucket,
            )
            out[bucket] = _summary(result)
    finally:
        await osm.aclose()
        await tomtom.aclose()
        await lighting.aclose()
        await osrm.aclose()
    return out


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Compare fastest and safest routes across time-of-day contexts.")
    parser.add_argument("--from-lat", type=float, required=True)
    parser.add_argument("--from-lon", type=float, required=True)
    parser.add_argument("--to-lat", type=float, required=True)
    parser.add_argument("--to-lon", type=float, required=True)
    parser.add_argument("--mode", choices=["walking", "cycling", "driving"], default="walking")
    parser.add_argument("--time-of-day", choices=list(TIME_OF_DAY_VALUES), default=None)
    parser.add_argument("--osrm-base-url", default=None)
    parser.add_argument("--no-osm", action="store_true", help="Skip the Overpass hazard lookup.")
    parser.add_argument("--out-file", type=Path, default=None)
    args = parser.parse_args(argv)

    summary = asyncio.run(_run(args))
    text = json.dumps(summary, indent=2)
    if args.out_file:
        args.out_file.parent.mkdir(parents=True, exist_ok=True)
        args.out_file.write_text(text, encoding="utf-8")
    print(text)
    return 0 if all(item.get("success") for item in summary.values()) else 1


if __name__ == "__main__":
    raise SystemExit(main())
