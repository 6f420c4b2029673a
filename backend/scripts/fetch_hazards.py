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

from safepath.errors import HazardSourceError
from safepath.hazard_merge import merge_hazards, sort_by_distance, source_counts
from safepath.hazards_osm import OSMHazardsService
from safepath.hazards_tomtom import TomTomHazardsService


async def _fetch(lat: float, lon: float, radius: float, sources: list[str]) -> dict[str, Any]:
    osm = OSMHazardsService()
    tomtom = TomTomHazardsService()
    errors: dict[str, str] = {}
    found: dict[str, list[Any]] = {"osm": [], "tomtom": []}
    try:
        for name, service in (("osm", osm), ("tomtom", tomtom)):
            if name not in sources:
                continue
            try:
                found[name] = await service.get_hazards(lat, lon, radius)
            except HazardSourceError as e:
                errors[name] = f"{e.reason_code}: {e.message}"
    finally:
        await osm.aclose()
        await tomtom.aclose()

    merged = merge_hazards(found["osm"], found["tomtom"], threshold_m=tomtom.dedup_threshold_m, match_type=True)
    hazards = sort_by_distance(merged)
    return {
        "latitude": lat,
        "longitude": lon,
        "radius": radius,
        "stats": source_counts(hazards),
        "errors": errors,
        "hazards": [h.model_dump(mode="json", by_alias=True) for h in hazards],
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Fetch OSM and TomTom hazards around a point.")
    parser.add_argument("--lat", type=float, required=True)
    parser.add_argument("--lon", type=float, required=True)
    parser.add_argument("--radius", type=float, default=2000.0)
    parser.add_argument("--source", action="append", choices=["osm", "tomtom"], default=None)
    parser.add_argument("--out-file", type=Path, default=None)
    args = parser.parse_args(argv)

    payload = asyncio.run(_fetch(args.lat, args.lon, args.radius, args.source or ["osm", "tomtom"]))
    text = json.dumps(payload, indent=2)
    if args.out_file:
        args.out_file.parent.mkdir(parents=True, exist_ok=True)
        args.out_file.write_text(text, encoding="utf-8")
    else:
        print(text)
    stats = payload["stats"]
    print(f"hazards={stats['total']} osm={stats['osm']} tomtom={stats['tomtom']} errors={len(payload['errors'])}", file=sys.stderr)
    return 0 if not payload["errors"] or stats["total"] else 1


if __name__ == "__main__":
    raise SystemExit(main())
