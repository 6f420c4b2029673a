from __future__ import annotations

import asyncio

import httpx
import pytest

from safepath.errors import SafePathError
from safepath.lighting import (
    DAYLIGHT_INDEX,
    NO_LIGHTS_INDEX,
    LightingService,
    StreetLamp,
    build_lamp_query,
    coverage_radius_m,
    darkness_index,
    lighting_score,
    parse_lamps,
)

LAT, LON = 51.5072, -0.1276


@pytest.mark.parametrize(
    ("tags", "expected"),
    [
        ({"highway": "street_lamp"}, 0.1),
        ({"highway": "street_lamp", "light_source": "LED"}, 0.09),
        ({"lit": "automatic"}, 0.15),
        ({"lit": "limited"}, 0.5),
        ({"lit": "no"}, 0.8),
        ({"lit": "yes", "light:source": "gas_lantern"}, 0.12),
        ({"highway": "footway"}, 0.3),
    ],
)
def test_lighting_score(tags, expected):
    assert lighting_score(tags) == pytest.approx(expected)


@pytest.mark.parametrize(
    ("tags", "expected"),
    [
        ({"light_source": "LED", "lamp_type": "electric"}, 40.0),
        ({"highway": "street_lamp"}, 30.0),
        ({"highway": "lamp_post"}, 25.0),
        ({"light:source": "gas_lantern"}, 15.0),
        ({}, 30.0),
    ],
)
def test_coverage_radius(tags, expected):
    assert coverage_radius_m(tags) == expected


def test_parse_lamps_accepts_nodes_and_way_centres():
    lamps = parse_lamps(
        [
            {"type": "node", "lat": LAT, "lon": LON, "tags": {"highway": "street_lamp"}},
            {"type": "way", "center": {"lat": LAT + 0.001, "lon": LON}, "tags": {"highway": "residential", "lit": "no"}},
            {"type": "way", "tags": {"lit": "yes"}},
            "junk",
        ]
    )
    assert [(lamp.lat, lamp.lighting_score) for lamp in lamps] == [(LAT, 0.1), (LAT + 0.001, 0.8)]


def test_darkness_index_edges():
    lamp = StreetLamp(lat=LAT, lon=LON, lighting_score=0.1, coverage_radius_m=30.0)
    assert darkness_index([lamp], LAT, LON, daylight=True) == DAYLIGHT_INDEX
    assert darkness_index([], LAT, LON) == NO_LIGHTS_INDEX
    assert darkness_index([lamp], LAT, LON) == pytest.approx(0.1)
    # 500 m away is outside the search radius.
    assert darkness_index([lamp], LAT + 0.0045, LON) == NO_LIGHTS_INDEX


def test_darkness_index_weights_by_distance():
    bright = StreetLamp(lat=LAT, lon=LON, lighting_score=0.1, coverage_radius_m=30.0)
    # About 60 m north, so half-way influence falls off past its coverage.
    dim = StreetLamp(lat=LAT + 0.00054, lon=LON, lighting_score=0.8, coverage_radius_m=30.0)
    value = darkness_index([bright, dim], LAT, LON)
    assert value == pytest.approx((0.1 + 0.8 * 0.7) / 1.7, abs=0.01)


def test_lamp_query_uses_bbox():
    q = build_lamp_query(51.5, -0.13, 51.51, -0.12)
    assert '"highway"="street_lamp"' in q
    assert "(51.50000,-0.13000,51.51000,-0.12000)" in q
    assert q.endswith("out center;")


def _service(handler) -> LightingService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return LightingService(client=client, endpoints=["https://a.test/api", "https://b.test/api"])


def test_service_falls_through_endpoints_and_caches():
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        if request.url.host == "a.test":
            return httpx.Response(504)
        return httpx.Response(
            200, json={"elements": [{"type": "node", "lat": LAT, "lon": LON, "tags": {"highway": "street_lamp"}}]}
        )

    async def _run() -> tuple[list[StreetLamp], list[StreetLamp]]:
        service = _service(handler)
        first = await service.get_lamps(51.50, -0.13, 51.51, -0.12)
        second = await service.get_lamps(51.50, -0.13, 51.51, -0.12)
        await service.aclose()
        return first, second

    first, second = asyncio.run(_run())
    assert hosts == ["a.test", "b.test"]
    assert len(first) == 1
    assert second == first


def test_service_raises_when_every_endpoint_fails():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a.test":
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, content=b"not json")

    async def _run() -> None:
        service = _service(handler)
        try:
            await service.get_lamps(51.50, -0.13, 51.51, -0.12)
        finally:
            await service.aclose()

    with pytest.raises(SafePathError) as exc:
        asyncio.run(_run())
    assert exc.value.reason_code == "lighting_source_unavailable"
    assert exc.value.details is not None
    assert len(exc.value.details["errors"]) == 2
