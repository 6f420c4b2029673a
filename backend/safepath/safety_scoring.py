from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Final

from .crime_data import DEFAULT_CRIME_SCORE, DEFAULT_CRIME_SEVERITY, CrimeDataService
from .geo import bearing_deg, densify_polyline, haversine_km
from .hazards_tomtom import collision_density
from .lighting import FALLBACK_INDEX, StreetLamp, darkness_index
from .models import FactorWeights, Hazard, RouteClassification, SafetyPreferences, TimeOfDay
from .risk_model import aggregate_route_score, clamp01
from .settings import settings
from .time_of_day import is_daylight, parse_time_of_day

FACTORS: Final[tuple[str, ...]] = ("crime", "collision", "lighting", "hazard")

DEFAULT_FACTOR_WEIGHTS: Final[dict[str, float]] = {
    "crime": 0.40,
    "collision": 0.25,
    "lighting": 0.20,
    "hazard": 0.15,
}

# Applied to the base weights, then renormalised.
TIME_OF_DAY_MULTIPLIERS: Final[dict[str, dict[str, float]]] = {
    "day": {"crime": 1.0, "collision": 1.0, "lighting": 0.25, "hazard": 1.0},
    "night": {"crime": 1.3, "collision": 0.8, "lighting": 2.0, "hazard": 0.9},
    "morning-rush": {"crime": 0.8, "collision": 1.6, "lighting": 0.5, "hazard": 1.5},
    "evening-rush": {"crime": 1.0, "collision": 1.6, "lighting": 0.8, "hazard": 1.5},
}

HAZARD_RADIUS_KM: Final[float] = 0.5
HAZARD_SEVERITY_WEIGHTS: Final[dict[str, float]] = {
    "critical": 3.0,
    "high": 2.5,
    "medium": 1.2,
    "low": 0.5,
}
HAZARD_BASELINE: Final[float] = 0.1
HAZARD_NORMALISER: Final[float] = 3.0

SAFE_BELOW: Final[float] = 0.30
HIGH_RISK_FROM: Final[float] = 0.60


def normalise_weights(raw: Mapping[str, float] | None) -> dict[str, float]:
    """Scale non-negative factor weights to sum to 1; unusable input gives the defaults."""
    if not raw:
        return dict(DEFAULT_FACTOR_WEIGHTS)
    picked = {f: max(0.0, float(raw.get(f, 0.0) or 0.0)) for f in FACTORS}
    s = sum(picked.values())
    if s <= 0:
        return dict(DEFAULT_FACTOR_WEIGHTS)
    return {f: v / s for f, v in picked.items()}


def get_factor_weights(
    time_of_day: str | None = None,
    preferences: SafetyPreferences | None = None,
) -> FactorWeights:
    """Factor weights for a time of day, optionally biased by user preferences.

    An omitted time of day is detected from the local clock. The result always
    sums to 1.0.
    """
    bucket = parse_time_of_day(time_of_day)
    base = normalise_weights(preferences.factor_weights if preferences else None)
    multipliers = TIME_OF_DAY_MULTIPLIERS[bucket]
    scaled = {f: base[f] * multipliers[f] for f in FACTORS}
    total = sum(scaled.values())
    weights = {f: v / total for f, v in scaled.items()}
    # Fold rounding drift into the largest factor so the sum is exactly 1.0.
    drift = 1.0 - sum(weights.values())
    top = max(weights, key=lambda f: weights[f])
    weights[top] += drift
    return FactorWeights(**weights)


def get_crime_severity_weights(preferences: SafetyPreferences | None = None) -> dict[str, float]:
    weights = dict(DEFAULT_CRIME_SEVERITY)
    if preferences and preferences.crime_severity:
        for crime_type, value in preferences.crime_severity.items():
            weights[crime_type] = min(1.0, max(0.0, float(value)))
    return weights


def hazard_density(
    hazards: Sequence[Hazard],
    lat: float,
    lon: float,
    *,
    radius_km: float = HAZARD_RADIUS_KM,
) -> float:
    """Hazard pressure around a point in [0, 1], with a small non-zero baseline."""
    score = 0.0
    found = False
    for h in hazards:
        d = haversine_km(lat, lon, h.latitude, h.longitude)
        if d > radius_km:
            continue
        found = True
        weight = HAZARD_SEVERITY_WEIGHTS.get(h.severity, HAZARD_SEVERITY_WEIGHTS["high"])
        if h.source == "tomtom":
            if h.type == "accident":
                weight = (weight * 2.5) + 1.0
            else:
                weight = (weight * 1.3) + 0.5
        elif h.affects_traffic:
            weight += 0.3
        score += weight
    if not found:
        return HAZARD_BASELINE
    return min(1.0, max(HAZARD_BASELINE, score / HAZARD_NORMALISER))


@dataclass
class ScoringContext:
    """Everything the per-point factors read; fetched once per trip."""

    time_of_day: TimeOfDay
    hazards: list[Hazard] = field(default_factory=list)
    incidents: list[Hazard] = field(default_factory=list)
    # None means lighting data could not be fetched.
    lamps: list[StreetLamp] | None = None
    crime: CrimeDataService | None = None
    crime_severity: Mapping[str, float] = field(default_factory=lambda: dict(DEFAULT_CRIME_SEVERITY))

    @property
    def daylight(self) -> bool:
        return is_daylight(self.time_of_day)


@dataclass(frozen=True)
class PointScore:
    lon: float
    lat: float
    crime: float
    collision: float
    lighting: float
    hazard: float
    score: float


@dataclass(frozen=True)
class DangerousSegment:
    start_index: int
    end_index: int
    peak_score: float
    mid_lon: float
    mid_lat: float
    # Direction of travel through the segment, degrees from north.
    heading: float


@dataclass
class RouteSafety:
    safety_score: float
    points: list[PointScore]
    factor_scores: dict[str, float]
    dangerous_segments: list[DangerousSegment]
    classification: RouteClassification


def score_point(lat: float, lon: float, context: ScoringContext, weights: FactorWeights) -> PointScore:
    crime = (
        context.crime.crime_score(lat, lon, context.crime_severity)
        if context.crime is not None
        else DEFAULT_CRIME_SCORE
    )
    collision = collision_density(context.incidents, lat, lon)
    if context.daylight:
        lighting = darkness_index((), lat, lon, daylight=True)
    elif context.lamps is None:
        lighting = FALLBACK_INDEX
    else:
        lighting = darkness_index(context.lamps, lat, lon)
    hazard = hazard_density(context.hazards, lat, lon)
    score = (
        (weights.crime * crime)
        + (weights.collision * collision)
        + (weights.lighting * lighting)
        + (weights.hazard * hazard)
    )
    return PointScore(
        lon=lon,
        lat=lat,
        crime=crime,
        collision=collision,
        lighting=lighting,
        hazard=hazard,
        score=clamp01(score),
    )


def find_dangerous_segments(points: Sequence[PointScore], threshold: float) -> list[DangerousSegment]:
    """Group consecutive points scoring above ``threshold``; worst segment first."""
    runs: list[tuple[int, int]] = []
    start: int | None = None
    for idx, p in enumerate(points):
        if p.score > threshold:
            if start is None:
                start = idx
        elif start is not None:
            runs.append((start, idx - 1))
            start = None
    if start is not None:
        runs.append((start, len(points) - 1))

    segments: list[DangerousSegment] = []
    for lo, hi in runs:
        mid = points[(lo + hi) // 2]
        a = points[max(0, lo - 1)]
        b = points[min(len(points) - 1, hi + 1)]
        heading = bearing_deg(a.lat, a.lon, b.lat, b.lon) if (a.lat, a.lon) != (b.lat, b.lon) else 0.0
        segments.append(
            DangerousSegment(
                start_index=lo,
                end_index=hi,
                peak_score=max(p.score for p in points[lo : hi + 1]),
                mid_lon=mid.lon,
                mid_lat=mid.lat,
                heading=heading,
            )
        )
    segments.sort(key=lambda s: (-s.peak_score, s.start_index))
    return segments


def classify_route_safety(score: float) -> RouteClassification:
    s = clamp01(score)
    if s < SAFE_BELOW:
        return RouteClassification(
            classification="SAFE",
            rule_triggered="RULE_1",
            action="use_fastest",
            needs_alternatives=False,
            safety_score=s,
        )
    if s < HIGH_RISK_FROM:
        return RouteClassification(
            classification="MODERATE",
            rule_triggered="RULE_2",
            action="suggest_alternative",
            needs_alternatives=True,
            safety_score=s,
        )
    return RouteClassification(
        classification="HIGH_RISK",
        rule_triggered="RULE_3",
        action="require_alternative",
        needs_alternatives=True,
        safety_score=s,
    )


def score_route_safety(
    coordinates_lon_lat: Sequence[tuple[float, float]],
    context: ScoringContext,
    weights: FactorWeights,
    *,
    spacing_m: float | None = None,
    max_samples: int | None = None,
    danger_threshold: float | None = None,
) -> RouteSafety:
    """Score a polyline: 0.0 is safest, 1.0 most dangerous."""
    samples = densify_polyline(
        list(coordinates_lon_lat),
        spacing_m=spacing_m or settings.sample_spacing_m,
        max_samples=max_samples or settings.sample_max_points,
    )
    points = [score_point(lat, lon, context, weights) for lon, lat in samples]
    score = aggregate_route_score(p.score for p in points)
    if points:
        factor_scores = {f: round(sum(getattr(p, f) for p in points) / len(points), 4) for f in FACTORS}
    else:
        factor_scores = {f: 0.0 for f in FACTORS}
    threshold = settings.danger_threshold if danger_threshold is None else danger_threshold
    return RouteSafety(
        safety_score=score,
        points=points,
        factor_scores=factor_scores,
        dangerous_segments=find_dangerous_segments(points, threshold),
        classification=classify_route_safety(score),
    )
