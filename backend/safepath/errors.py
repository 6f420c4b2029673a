from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_coordinates",
        "invalid_mode",
        "invalid_time_of_day",
        "invalid_preferences",
        "routing_provider_unavailable",
        "routing_no_route",
        "hazard_source_unavailable",
        "hazard_source_unconfigured",
        "crime_data_unavailable",
        "lighting_source_unavailable",
        "route_not_found",
        "internal_error",
    }
)

# Reason codes that describe bad caller input rather than upstream failure.
INPUT_REASON_CODES: frozenset[str] = frozenset(
    {
        "invalid_coordinates",
        "invalid_mode",
        "invalid_time_of_day",
        "invalid_preferences",
    }
)


@dataclass
class SafePathError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


class HazardSourceError(SafePathError):
    """A hazard provider could not produce data and had nothing cached."""


def normalize_reason_code(reason_code: str, *, default: str = "internal_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def http_status_for_reason(reason_code: str) -> int:
    code = normalize_reason_code(reason_code)
    if code in INPUT_REASON_CODES:
        return 400
    if code == "route_not_found":
        return 404
    if code == "hazard_source_unconfigured":
        return 503
    if code in {"routing_provider_unavailable", "routing_no_route", "hazard_source_unavailable"}:
        return 502
    return 500
