from __future__ import annotations

import math

import pytest

from safepath.geo import (
    bbox_around,
    bearing_deg,
    haversine_km,
    haversine_m,
    is_valid_lat_lon,
    offset_point,
    polyline_length_m,
)


def test_haversine_known_distance():
    # London to Paris is roughly 344 km.
    assert haversine_km(51.5072, -0.1276, 48.8566, 2.3522) == pytest.approx(344, abs=2)
    assert haversine_m(51.5, -0.1, 51.5, -0.1) == 0.0


@pytest.mark.parametrize(
    ("lat", "lon", "ok"),
    [
        (51.5, -0.1, True),
        (90, 180, True),
        (-90.0, -180.0, True),
        (90.0001, 0.0, False),
        (0.0, 180.5, False),
        (math.nan, 0.0, False),
        (0.0, math.inf, False),
        (True, 0.0, False),
        ("51.5", "-0.1", False),
        (None, 0.0, False),
    ],
)
def test_is_valid_lat_lon(lat, lon, ok):
    assert is_valid_lat_lon(lat, lon) is ok


def test_bbox_encloses_radius():
    min_lon, min_lat, max_lon, max_lat = bbox_around(51.5, -0.1, 1000)
    assert haversine_m(51.5, -0.1, max_lat, -0.1) == pytest.approx(1000, rel=0.01)
    assert haversine_m(51.5, -0.1, 51.5, max_lon) == pytest.approx(1000, rel=0.01)
    assert min_lat < 51.5 < max_lat
    assert min_lon < -0.1 < max_lon


def test_offset_point_round_trip():
    lat, lon = offset_point(51.5, -0.1, bearing=90.0, distance_m=300.0)
    assert haversine_m(51.5, -0.1, lat, lon) == pytest.approx(300.0, abs=0.5)
    assert bearing_deg(51.5, -0.1, lat, lon) == pytest.approx(90.0, abs=0.1)
    assert lat == pytest.approx(51.5, abs=1e-4)


def test_bearing_cardinal_directions():
    assert bearing_deg(51.5, -0.1, 51.6, -0.1) == pytest.approx(0.0, abs=1e-6)
    assert bearing_deg(51.5, -0.1, 51.4, -0.1) == pytest.approx(180.0, abs=1e-6)
    assert bearing_deg(0.0, 0.0, 0.0, -1.0) == pytest.approx(270.0, abs=1e-6)


def test_polyline_length_sums_segments():
    coords = [(-0.1, 51.5), (-0.1, 51.51), (-0.1, 51.52)]
    assert polyline_length_m(coords) == pytest.approx(2 * haversine_m(51.5, -0.1, 51.51, -0.1))
    assert polyline_length_m(coords[:1]) == 0.0
