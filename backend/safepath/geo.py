from __future__ import annotations

import math

EARTH_RADIUS_M = 6_371_000.0
# Rough degrees-per-metre of latitude, good enough for query boxes.
METRES_PER_DEGREE_LAT = 111_000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = phi2 - phi1
    dlambda = math.radians(lon2 - lon1)
    a = (
        math.sin(dphi / 2.0) ** 2
        + (math.cos(phi1) * math.cos(phi2) * (math.sin(dlambda / 2.0) ** 2))
    )
    return 2.0 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(max(0.0, a))))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_m(lat1, lon1, lat2, lon2) / 1000.0


def is_valid_lat_lon(lat: object, lon: object) -> bool:
    if isinstance(lat, bool) or isinstance(lon, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lon, (int, float)):
        return False
    if not (math.isfinite(lat) and math.isfinite(lon)):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0


def bbox_around(lat: float, lon: float, radius_m: float) -> tuple[float, float, float, float]:
    """Return (min_lon, min_lat, max_lon, max_lat) enclosing a circle."""
    lat_delta = radius_m / METRES_PER_DEGREE_LAT
    cos_lat = max(0.01, math.cos(math.radians(lat)))
    lon_delta = radius_m / (METRES_PER_DEGREE_LAT * cos_lat)
    return (lon - lon_delta, lat - lat_delta, lon + lon_delta, lat + lat_delta)


def polyline_length_m(coordinates_lon_lat: list[tuple[float, float]]) -> float:
    total = 0.0
    for idx in range(1, len(coordinates_lon_lat)):
        lon1, lat1 = coordinates_lon_lat[idx - 1]
        lon2, lat2 = coordinates_lon_lat[idx]
        total += haversine_m(lat1, lon1, lat2, lon2)
    return total


def densify_polyline(
    coordinates_lon_lat: list[tuple[float, float]],
    *,
    spacing_m: float,
    max_samples: int,
) -> list[tuple[float, float]]:
    if len(coordinates_lon_lat) < 2:
        return list(coordinates_lon_lat)

    out: list[tuple[float, float]] = [coordinates_lon_lat[0]]
    for idx in range(1, len(coordinates_lon_lat)):
        lon1, lat1 = coordinates_lon_lat[idx - 1]
        lon2, lat2 = coordinates_lon_lat[idx]
        seg_m = haversine_m(lat1, lon1, lat2, lon2)
        steps = max(1, int(math.ceil(seg_m / max(5.0, spacing_m))))
        for step in range(1, steps + 1):
            t = step / steps
            out.append(
                (
                    lon1 + ((lon2 - lon1) * t),
                    lat1 + ((lat2 - lat1) * t),
                )
            )

    if len(out) <= max_samples:
        return out
    keep_every = max(1, int(math.ceil(len(out) / max_samples)))
    trimmed = out[::keep_every]
    if trimmed[-1] != out[-1]:
        if len(trimmed) >= max_samples:
            trimmed[-1] = out[-1]
        else:
            trimmed.append(out[-1])
    return trimmed


def bearing_deg(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlambda = math.radians(lon2 - lon1)
    x = math.sin(dlambda) * math.cos(phi2)
    y = (math.cos(phi1) * math.sin(phi2)) - (math.sin(phi1) * math.cos(phi2) * math.cos(dlambda))
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def offset_point(lat: float, lon: float, *, bearing: float, distance_m: float) -> tuple[float, float]:
    """Destination (lat, lon) after travelling distance_m along bearing."""
    delta = distance_m / EARTH_RADIUS_M
    theta = math.radians(bearing)
    phi1 = math.radians(lat)
    lambda1 = math.radians(lon)
    phi2 = math.asin(
        (math.sin(phi1) * math.cos(delta)) + (math.cos(phi1) * math.sin(delta) * math.cos(theta))
    )
    lambda2 = lambda1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(phi1),
        math.cos(delta) - (math.sin(phi1) * math.sin(phi2)),
    )
    out_lon = ((math.degrees(lambda2) + 540.0) % 360.0) - 180.0
    return math.degrees(phi2), out_lon
