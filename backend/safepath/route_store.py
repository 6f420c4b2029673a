from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock

from pydantic import ValidationError

from .geo import haversine_m
from .models import SavedRoute, SavedRouteInput
from .settings import settings

# Guards the index read-modify-write across request threads.
_INDEX_LOCK = Lock()


def _routes_dir() -> Path:
    path = Path(settings.out_dir) / "routes"
    path.mkdir(parents=True, exist_ok=True)
    return path


def _index_path() -> Path:
    return _routes_dir() / "index.json"


def _route_path(route_id: str) -> Path:
    return _routes_dir() / f"{route_id}.json"


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def _load_index_ids() -> list[str]:
    path = _index_path()
    if not path.exists():
        return []
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    if not isinstance(raw, dict):
        return []
    ids = raw.get("ids")
    if not isinstance(ids, list):
        return []
    out: list[str] = []
    for item in ids:
        if not isinstance(item, str):
            continue
        try:
            out.append(str(uuid.UUID(item)))
        except ValueError:
            continue
    return out


def _write_json(path: Path, payload: object) -> None:
    # Readers only ever see a complete file.
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    tmp_path.replace(path)


def _save_index_ids(ids: list[str]) -> Path:
    path = _index_path()
    _write_json(path, {"ids": list(dict.fromkeys(ids))})
    return path


def _load_route(route_id: str) -> SavedRoute:
    try:
        valid_id = str(uuid.UUID(route_id))
    except ValueError as e:
        raise KeyError("route not found") from e
    path = _route_path(valid_id)
    if not path.exists():
        raise KeyError("route not found")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as e:
        raise ValueError("route file is invalid JSON") from e
    return SavedRoute.model_validate(raw)


def save_route(payload: SavedRouteInput) -> SavedRoute:
    route = SavedRoute(
        id=str(uuid.uuid4()),
        created_at=_utc_now_iso(),
        **payload.model_dump(exclude={"name"}),
        name=payload.name.strip(),
    )
    _write_json(_route_path(route.id), route.model_dump(mode="json"))
    with _INDEX_LOCK:
        ids = _load_index_ids()
        ids.insert(0, route.id)
        _save_index_ids(ids)
    return route


def get_route(route_id: str) -> SavedRoute:
    return _load_route(route_id)


def list_routes() -> list[SavedRoute]:
    out: list[SavedRoute] = []
    for route_id in _load_index_ids():
        try:
            out.append(_load_route(route_id))
        except (KeyError, ValueError, ValidationError):
            continue
    out.sort(key=lambda item: item.created_at, reverse=True)
    return out


def routes_near(lat: float, lon: float, radius_m: float) -> list[SavedRoute]:
    """Saved routes whose start or end lies within ``radius_m``."""
    out: list[tuple[float, SavedRoute]] = []
    for route in list_routes():
        d = min(
            haversine_m(lat, lon, route.from_lat, route.from_lon),
            haversine_m(lat, lon, route.to_lat, route.to_lon),
        )
        if d <= radius_m:
            out.append((d, route))
    out.sort(key=lambda pair: pair[0])
    return [route for _, route in out]


def delete_route(route_id: str) -> str:
    route = _load_route(route_id)
    with _INDEX_LOCK:
        _save_index_ids([item for item in _load_index_ids() if item != route.id])
    _route_path(route.id).unlink(missing_ok=True)
    return route.id
