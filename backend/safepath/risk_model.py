from __future__ import annotations

import math
from typing import Iterable

MEAN_WEIGHT = 0.7
TAIL_WEIGHT = 0.3
TAIL_QUANTILE = 0.9


def clamp01(value: float) -> float:
    if value != value:
        return 0.0
    return min(1.0, max(0.0, float(value)))


def quantile(values: list[float], q: float) -> float:
    if not values:
        return 0.0
    ordered = sorted(float(v) for v in values)
    q_clamped = min(1.0, max(0.0, float(q)))
    if len(ordered) == 1:
        return ordered[0]
    # Linear interpolation quantile for smoother and less biased tails.
    pos = q_clamped * (len(ordered) - 1)
    lo = int(math.floor(pos))
    hi = int(math.ceil(pos))
    if lo == hi:
        return ordered[lo]
    t = pos - lo
    return ordered[lo] + ((ordered[hi] - ordered[lo]) * t)


def aggregate_route_score(point_scores: Iterable[float]) -> float:
    """Blend the mean with the 90th percentile so short dangerous stretches still count."""
    values = [clamp01(v) for v in point_scores]
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    tail = quantile(values, TAIL_QUANTILE)
    return clamp01((MEAN_WEIGHT * mean) + (TAIL_WEIGHT * tail))


def safety_rating(score: float) -> float:
    """0..10 rating, higher is safer."""
    return round(10.0 * (1.0 - clamp01(score)), 2)
