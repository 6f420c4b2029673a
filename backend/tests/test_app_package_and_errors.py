from __future__ import annotations

import safepath
from safepath.errors import (
    FROZEN_REASON_CODES,
    HazardSourceError,
    SafePathError,
    http_status_for_reason,
    normalize_reason_code,
)


def test_package_imports() -> None:
    # Package marker import should be stable for tooling/tests.
    assert safepath.__name__ == "safepath"


def test_safepath_error_string_and_details() -> None:
    err = SafePathError(
        reason_code="invalid_coordinates",
        message="latitude out of range",
        details={"lat": 123.0},
    )
    assert str(err) == "latitude out of range"
    assert isinstance(err, ValueError)
    assert err.details == {"lat": 123.0}


def test_hazard_source_error_is_safepath_error() -> None:
    err = HazardSourceError(reason_code="hazard_source_unavailable", message="overpass down")
    assert isinstance(err, SafePathError)
    assert err.reason_code == "hazard_source_unavailable"
    assert err.details is None


def test_reason_code_normalization() -> None:
    assert "invalid_coordinates" in FROZEN_REASON_CODES
    assert "routing_provider_unavailable" in FROZEN_REASON_CODES
    assert normalize_reason_code("invalid_mode") == "invalid_mode"
    assert normalize_reason_code("unknown_reason") == "internal_error"
    assert normalize_reason_code("", default="routing_no_route") == "routing_no_route"


def test_http_status_mapping() -> None:
    assert http_status_for_reason("invalid_coordinates") == 400
    assert http_status_for_reason("invalid_time_of_day") == 400
    assert http_status_for_reason("routing_provider_unavailable") == 502
    assert http_status_for_reason("routing_no_route") == 502
    assert http_status_for_reason("hazard_source_unconfigured") == 503
    assert http_status_for_reason("route_not_found") == 404
    assert http_status_for_reason("something_else") == 500
