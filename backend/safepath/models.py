from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

TimeOfDay = Literal["day", "night", "morning-rush", "evening-rush"]
TravelMode = Literal["walking", "cycling", "driving"]
HazardSource = Literal["community", "osm", "tomtom"]
Severity = Literal["low", "medium", "high", "critical"]
RouteType = Literal["fastest", "osrm_alternative", "waypoint_detour"]
SafetyBand = Literal["SAFE", "MODERATE", "HIGH_RISK"]


class CamelModel(BaseModel):
    """Python attributes stay snake_case; the JSON wire format is camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Hazard(CamelModel):
    id: str
    source: HazardSource
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    type: str
    severity: Severity = "medium"
    description: str = ""
    # Metres from the query point, when known.
    distance: float | None = Field(default=None, ge=0)
    verified: bool = False
    affects_traffic: bool = False
    reported_at: str | None = None
    end_date: str | None = None
    icon_category: int | None = None
    magnitude_of_delay: int | None = None
    delay_s: float | None = None
    length_m: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def identity(self) -> tuple[str, str]:
        return (self.source, self.id)


class FactorWeights(CamelModel):
    crime: float = Field(..., ge=0)
    collision: float = Field(..., ge=0)
    lighting: float = Field(..., ge=0)
    hazard: float = Field(..., ge=0)

    def as_dict(self) -> dict[str, float]:
        return {
            "crime": self.crime,
            "collision": self.collision,
            "lighting": self.lighting,
            "hazard": self.hazard,
        }


class SafetyPreferences(CamelModel):
    """User tuning. Weights may be partial and need not sum to 1."""

    factor_weights: dict[str, float] | None = None
    crime_severity: dict[str, float] | None = None

    @field_validator("factor_weights", "crime_severity")
    @classmethod
    def finite_non_negative(cls, v: dict[str, float] | None) -> dict[str, float] | None:
        if v is None:
            return v
        for key, value in v.items():
            if not math.isfinite(value) or value < 0:
                raise ValueError(f"weight for {key!r} must be finite and non-negative")
        return v


class RouteClassification(CamelModel):
    classification: SafetyBand
    rule_triggered: str
    action: str
    needs_alternatives: bool
    safety_score: float


class RouteEvaluation(CamelModel):
    accepted: bool
    rule: str
    reason: str
    improvement_percent: float
    detour_percent: float


class RouteComparable(CamelModel):
    """Minimal shape accepted by the alternative evaluator."""

    safety_score: float = Field(..., ge=0, le=1)
    distance: float = Field(..., ge=0)


class RouteResult(CamelModel):
    distance: float
    time: float
    safety_score: float = Field(..., ge=0, le=1)
    safety_rating: float
    factor_weights: FactorWeights
    same_as_fastest: bool = False
    route_type: RouteType = "fastest"
    duration_s: float = 0.0
    coordinates: list[tuple[float, float]] = Field(default_factory=list)
    classification: RouteClassification | None = None
    factor_scores: dict[str, float] = Field(default_factory=dict)
    dangerous_segments: int = 0
    hazard_count: int = 0
    evaluation: RouteEvaluation | None = None


class CalculateRoutesResult(CamelModel):
    success: bool
    fastest: RouteResult | None = None
    safest: RouteResult | None = None
    time_of_day: TimeOfDay | None = None
    mode: str | None = None
    provider: str = "osrm"
    alternatives_considered: int = 0
    warnings: list[str] = Field(default_factory=list)
    error: str | None = None
    message: str | None = None
    reason_code: str | None = None


class RouteFindRequest(CamelModel):
    # Ranges are checked by the calculator so callers get a reason code back.
    from_lat: float
    from_lon: float
    to_lat: float
    to_lon: float
    mode: str = "walking"
    time_of_day: str | None = None
    preferences: SafetyPreferences | None = None


class EvaluateRequest(CamelModel):
    candidate: RouteComparable
    fastest: RouteComparable


class HazardReport(CamelModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    type: str = Field(..., min_length=1, max_length=64)
    severity: Severity = "medium"
    description: str = Field(default="", max_length=2000)
    affects_traffic: bool = False


class CombinedHazardsResponse(CamelModel):
    success: bool = True
    hazards: list[Hazard]
    stats: dict[str, int]
    warnings: list[str] = Field(default_factory=list)
    latitude: float
    longitude: float
    radius: int


class HazardListResponse(CamelModel):
    success: bool = True
    source: str
    count: int
    hazards: list[Hazard]


class WeightsResponse(CamelModel):
    time_of_day: TimeOfDay
    weights: FactorWeights


class SavedRouteInput(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    from_lat: float = Field(..., ge=-90, le=90)
    from_lon: float = Field(..., ge=-180, le=180)
    to_lat: float = Field(..., ge=-90, le=90)
    to_lon: float = Field(..., ge=-180, le=180)
    mode: TravelMode = "walking"
    safety_score: float | None = Field(default=None, ge=0, le=1)
    distance: float | None = Field(default=None, ge=0)
    time: float | None = Field(default=None, ge=0)
    coordinates: list[tuple[float, float]] = Field(default_factory=list)


class SavedRoute(SavedRouteInput):
    id: str
    created_at: str
