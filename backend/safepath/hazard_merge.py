from __future__ import annotations

from collections.abc import Iterable, Sequence

from .geo import haversine_m
from .models import Hazard

DEFAULT_DEDUP_THRESHOLD_M = 50.0


def _is_duplicate(candidate: Hazard, kept: Sequence[Hazard], *, threshold_m: float, match_type: bool) -> bool:
    for existing in kept:
        if match_type and existing.type != candidate.type:
            continue
        d = haversine_m(existing.latitude, existing.longitude, candidate.latitude, candidate.longitude)
        if d <= threshold_m:
            return True
    return False


def merge_hazards(
    primary: Iterable[Hazard],
    secondary: Iterable[Hazard],
    *,
    threshold_m: float = DEFAULT_DEDUP_THRESHOLD_M,
    match_type: bool = False,
) -> list[Hazard]:
    """Merge two hazard lists, preferring ``primary`` entries.

    Every primary hazard is kept in order. A secondary hazard is appended only
    when no primary hazard lies within ``threshold_m`` metres of it (and, with
    ``match_type``, shares its type). Secondary hazards are not deduplicated
    against each other, so the output length never exceeds the input total.
    """
    kept = list(primary)
    anchors = tuple(kept)
    threshold = max(0.0, float(threshold_m))
    for hazard in secondary:
        if _is_duplicate(hazard, anchors, threshold_m=threshold, match_type=match_type):
            continue
        kept.append(hazard)
    return kept


def sort_by_distance(hazards: Iterable[Hazard]) -> list[Hazard]:
    # Unknown distances sort last; id keeps the order deterministic.
    return sorted(
        hazards,
        key=lambda h: (h.distance is None, h.distance if h.distance is not None else 0.0, h.source, h.id),
    )


def source_counts(hazards: Iterable[Hazard]) -> dict[str, int]:
    counts = {"community": 0, "osm": 0, "tomtom": 0}
    total = 0
    for hazard in hazards:
        counts[hazard.source] = counts.get(hazard.source, 0) + 1
        total += 1
    counts["total"] = total
    return counts
