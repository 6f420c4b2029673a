from __future__ import annotations

import pytest

from safepath.models import RouteComparable
from safepath.route_calculator import evaluate_alternative

FASTEST = RouteComparable(safety_score=0.6, distance=2.0)


@pytest.mark.parametrize(
    ("score", "distance", "accepted", "rule"),
    [
        (0.45, 2.3, True, "RULE_4"),
        (0.35, 2.7, True, "RULE_5"),
        (0.30, 3.2, False, "RULE_6"),
        (0.65, 2.1, False, "RULE_7"),
        (0.55, 2.8, False, "RULE_7"),
        (0.51, 2.5, False, "RULE_7"),
    ],
)
def test_rule_table(score, distance, accepted, rule):
    result = evaluate_alternative(RouteComparable(safety_score=score, distance=distance), FASTEST)
    assert result.accepted is accepted
    assert result.rule == rule


def test_metrics_are_reported_as_percentages():
    result = evaluate_alternative(RouteComparable(safety_score=0.45, distance=2.3), FASTEST)
    assert result.improvement_percent == pytest.approx(25.0)
    assert result.detour_percent == pytest.approx(15.0)


def test_detour_limit_beats_large_improvement():
    result = evaluate_alternative(RouteComparable(safety_score=0.05, distance=3.2), FASTEST)
    assert result.accepted is False
    assert result.rule == "RULE_6"


def test_identical_route_is_not_accepted():
    result = evaluate_alternative(FASTEST, FASTEST)
    assert result.accepted is False
    assert result.rule == "RULE_7"


def test_zero_score_fastest_cannot_be_improved():
    fastest = RouteComparable(safety_score=0.0, distance=2.0)
    result = evaluate_alternative(RouteComparable(safety_score=0.0, distance=2.1), fastest)
    assert result.accepted is False
    assert result.improvement_percent == 0.0


def test_shorter_alternative_counts_as_negative_detour():
    result = evaluate_alternative(RouteComparable(safety_score=0.4, distance=1.8), FASTEST)
    assert result.accepted is True
    assert result.rule == "RULE_4"
    assert result.detour_percent == pytest.approx(-10.0)
