from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from safepath import hazard_store, route_store
from safepath.models import HazardReport, SavedRouteInput
from safepath.settings import settings

LAT, LON = 51.5072, -0.1276


@pytest.fixture(autouse=True)
def _out_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    out_dir = tmp_path / "out"
    monkeypatch.setattr(settings, "out_dir", str(out_dir))
    return out_dir


def test_community_hazards_round_trip(_out_dir: Path) -> None:
    near = hazard_store.add_hazard(HazardReport(latitude=LAT, longitude=LON, type="Flooding", severity="high"))
    far = hazard_store.add_hazard(HazardReport(latitude=LAT + 0.009, longitude=LON, type="pothole"))

    assert near.id.startswith("community-")
    assert near.type == "flooding"
    assert near.verified is False
    assert near.reported_at and near.reported_at.endswith("Z")
    assert {h.id for h in hazard_store.list_hazards()} == {near.id, far.id}

    found = hazard_store.hazards_near(LAT, LON, 2000)
    assert [h.id for h in found] == [near.id, far.id]
    assert found[0].distance == 0
    assert found[1].distance == pytest.approx(1001, abs=2)
    assert [h.id for h in hazard_store.hazards_near(LAT, LON, 2000, limit=1)] == [near.id]
    assert [h.id for h in hazard_store.hazards_near(LAT, LON, 500)] == [near.id]

    assert (_out_dir / "community" / "hazards.json").exists()
    assert hazard_store.clear_hazards() == 2
    assert hazard_store.list_hazards() == []


def test_community_store_tolerates_bad_rows(_out_dir: Path) -> None:
    path = _out_dir / "community" / "hazards.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps([{"id": "broken"}, "junk"]), encoding="utf-8")
    assert hazard_store.list_hazards() == []

    path.write_text("{not json", encoding="utf-8")
    assert hazard_store.list_hazards() == []
    assert hazard_store.clear_hazards() == 0


def test_recent_hazards_newest_first_with_filters(_out_dir: Path) -> None:
    rows = [
        {"id": "community-a", "source": "community", "latitude": LAT, "longitude": LON,
         "type": "pothole", "severity": "low", "reported_at": "2025-06-01T08:00:00Z"},
        {"id": "community-b", "source": "community", "latitude": LAT, "longitude": LON,
         "type": "flooding", "severity": "high", "reported_at": "2025-06-03T08:00:00Z"},
        {"id": "community-c", "source": "community", "latitude": LAT, "longitude": LON,
         "type": "pothole", "severity": "high", "reported_at": "2025-06-02T08:00:00Z"},
    ]
    path = _out_dir / "community" / "hazards.json"
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps(rows), encoding="utf-8")

    assert [h.id for h in hazard_store.recent_hazards()] == ["community-b", "community-c", "community-a"]
    assert [h.id for h in hazard_store.recent_hazards(hazard_type="Pothole")] == ["community-c", "community-a"]
    assert [h.id for h in hazard_store.recent_hazards(severity="high")] == ["community-b", "community-c"]
    assert [h.id for h in hazard_store.recent_hazards(limit=1, offset=1)] == ["community-c"]


def _route_input(name: str, lat: float = LAT) -> SavedRouteInput:
    return SavedRouteInput(name=name, from_lat=lat, from_lon=LON, to_lat=lat + 0.005, to_lon=LON, mode="cycling")


def test_saved_routes_round_trip(_out_dir: Path) -> None:
    first = route_store.save_route(_route_input("  Commute "))
    second = route_store.save_route(_route_input("Gym", lat=52.0))

    assert first.name == "Commute"
    assert first.mode == "cycling"
    assert route_store.get_route(first.id) == first
    assert {r.id for r in route_store.list_routes()} == {first.id, second.id}
    assert [r.id for r in route_store.routes_near(LAT + 0.005, LON, 100)] == [first.id]

    index = json.loads((_out_dir / "routes" / "index.json").read_text(encoding="utf-8"))
    assert index["ids"][0] == second.id

    assert route_store.delete_route(first.id) == first.id
    with pytest.raises(KeyError):
        route_store.get_route(first.id)
    assert [r.id for r in route_store.list_routes()] == [second.id]


def test_saved_route_ids_are_validated(_out_dir: Path) -> None:
    with pytest.raises(KeyError):
        route_store.get_route("../../etc/passwd")
    with pytest.raises(KeyError):
        route_store.delete_route("not-a-uuid")


def test_route_index_ignores_garbage(_out_dir: Path) -> None:
    kept = route_store.save_route(_route_input("Kept"))
    index_path = _out_dir / "routes" / "index.json"
    index = json.loads(index_path.read_text(encoding="utf-8"))
    index["ids"] += ["nope", 7, "6f1c2d5e-0000-4000-8000-000000000000"]
    index_path.write_text(json.dumps(index), encoding="utf-8")

    assert [r.id for r in route_store.list_routes()] == [kept.id]


def test_concurrent_saves_keep_every_route(_out_dir: Path) -> None:
    with ThreadPoolExecutor(max_workers=16) as pool:
        saved = list(pool.map(lambda i: route_store.save_route(_route_input(f"Route {i}")), range(120)))

    assert {r.id for r in route_store.list_routes()} == {r.id for r in saved}
    assert list((_out_dir / "routes").glob("*.tmp")) == []


def test_concurrent_saves_and_deletes(_out_dir: Path) -> None:
    doomed = [route_store.save_route(_route_input(f"Old {i}")) for i in range(40)]

    with ThreadPoolExecutor(max_workers=16) as pool:
        added = pool.map(lambda i: route_store.save_route(_route_input(f"New {i}")), range(40))
        removed = pool.map(lambda r: route_store.delete_route(r.id), doomed)
        added, removed = list(added), list(removed)

    assert sorted(removed) == sorted(r.id for r in doomed)
    assert {r.id for r in route_store.list_routes()} == {r.id for r in added}


def test_concurrent_hazard_reports(_out_dir: Path) -> None:
    def _report(i: int):
        return hazard_store.add_hazard(HazardReport(latitude=LAT, longitude=LON + i * 1e-5, type="pothole"))

    with ThreadPoolExecutor(max_workers=16) as pool:
        added = list(pool.map(_report, range(60)))

    assert {h.id for h in hazard_store.list_hazards()} == {h.id for h in added}
