from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError

from .geo import haversine_m
from .hazard_merge import sort_by_distance
from .models import Hazard, HazardReport
from .settings import settings


_LOCK = Lock()


def _store_path() -> Path:
    path = Path(settings.out_dir) / "community" / "hazards.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _read_store() -> list[dict[str, Any]]:
    path = _store_path()
    if not path.exists():
        return []

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []

    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict)]


def _write_store(payload: list[dict[str, Any]]) -> None:
    path = _store_path()
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp_path.replace(path)


def _load_hazards(rows: list[dict[str, Any]]) -> list[Hazard]:
    out: list[Hazard] = []
    for row in rows:
        try:
            out.append(Hazard.model_validate(row))
        except ValidationError:
            continue
    return out


def add_hazard(report: HazardReport) -> Hazard:
    hazard = Hazard(
        id=f"community-{uuid.uuid4()}",
        source="community",
        latitude=report.latitude,
        longitude=report.longitude,
        type=report.type.strip().lower().replace(" ", "_"),
        severity=report.severity,
        description=report.description.strip(),
        verified=False,
        affects_traffic=report.affects_traffic,
        reported_at=datetime.now(UTC).isoformat().replace("+00:00", "Z"),
    )
    with _LOCK:
        rows = _read_store()
        rows.append(hazard.model_dump(mode="json"))
        _write_store(rows)
    return hazard


def list_hazards() -> list[Hazard]:
    with _LOCK:
        return _load_hazards(_read_store())


def recent_hazards(
    *,
    hazard_type: str | None = None,
    severity: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Hazard]:
    """Community hazards, newest report first, optionally filtered by type and severity."""
    wanted_type = hazard_type.strip().lower().replace(" ", "_") if hazard_type else None
    out = [
        h
        for h in list_hazards()
        if (wanted_type is None or h.type == wanted_type) and (severity is None or h.severity == severity)
    ]
    out.sort(key=lambda h: h.reported_at or "", reverse=True)
    return out[offset : offset + limit]


def hazards_near(lat: float, lon: float, radius_m: float, limit: int | None = None) -> list[Hazard]:
    """Community hazards within ``radius_m``, nearest first, with ``distance`` filled in."""
    out: list[Hazard] = []
    for hazard in list_hazards():
        d = haversine_m(lat, lon, hazard.latitude, hazard.longitude)
        if d <= radius_m:
            out.append(hazard.model_copy(update={"distance": float(round(d))}))
    ordered = sort_by_distance(out)
    return ordered[:limit] if limit is not None else ordered


def clear_hazards() -> int:
    with _LOCK:
        path = _store_path()
        if not path.exists():
            return 0
        count = len(_read_store())
        _write_store([])
        return count
