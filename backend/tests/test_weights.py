from __future__ import annotations

import pytest

from safepath.models import SafetyPreferences
from safepath.safety_scoring import (
    DEFAULT_FACTOR_WEIGHTS,
    get_crime_severity_weights,
    get_factor_weights,
    normalise_weights,
)
from safepath.time_of_day import TIME_OF_DAY_VALUES


def test_normalise_weights_zero_sum_falls_back_to_defaults():
    assert normalise_weights({"crime": 0, "collision": 0, "lighting": 0, "hazard": 0}) == DEFAULT_FACTOR_WEIGHTS
    assert normalise_weights(None) == DEFAULT_FACTOR_WEIGHTS


def test_normalise_weights():
    w = normalise_weights({"crime": 2, "collision": 1, "lighting": 1, "hazard": 0})
    assert abs(w["crime"] - 0.5) < 1e-9
    assert abs(w["collision"] - 0.25) < 1e-9
    assert abs(w["lighting"] - 0.25) < 1e-9
    assert w["hazard"] == 0.0


def test_normalise_weights_preferences_over_one():
    # A UI that sends weights summing to 1.2 still yields a proper distribution.
    w = normalise_weights({"crime": 0.5, "collision": 0.3, "lighting": 0.25, "hazard": 0.15})
    assert abs(sum(w.values()) - 1.0) < 1e-9
    assert w["crime"] == pytest.approx(0.5 / 1.2)


@pytest.mark.parametrize("bucket", TIME_OF_DAY_VALUES)
def test_weights_sum_to_one_and_non_negative(bucket):
    w = get_factor_weights(bucket)
    values = list(w.as_dict().values())
    assert all(v >= 0 for v in values)
    assert abs(sum(values) - 1.0) < 1e-9


def test_lighting_weight_is_highest_at_night_and_lowest_by_day():
    lighting = {b: get_factor_weights(b).lighting for b in TIME_OF_DAY_VALUES}
    assert max(lighting, key=lighting.get) == "night"
    assert min(lighting, key=lighting.get) == "day"


@pytest.mark.parametrize("bucket", ["morning-rush", "evening-rush"])
def test_rush_hours_raise_collision_and_hazard(bucket):
    day = get_factor_weights("day")
    rush = get_factor_weights(bucket)
    assert rush.collision > day.collision
    assert rush.hazard > day.hazard


def test_default_day_weights():
    w = get_factor_weights("day")
    assert w.crime == pytest.approx(0.4 / 0.85, abs=1e-9)
    assert w.lighting == pytest.approx(0.05 / 0.85, abs=1e-9)


def test_user_preferences_bias_weights():
    prefs = SafetyPreferences(factor_weights={"crime": 0.0, "collision": 1.0, "lighting": 0.0, "hazard": 0.0})
    w = get_factor_weights("night", prefs)
    assert w.collision == pytest.approx(1.0)
    assert w.crime == 0.0


def test_weights_accept_alias_spellings():
    assert get_factor_weights("MORNING_RUSH") == get_factor_weights("morning-rush")


def test_crime_severity_weights_overlay():
    defaults = get_crime_severity_weights()
    assert defaults["Violence and sexual offences"] == 1.0
    assert defaults["Anti-social behaviour"] == 0.3

    prefs = SafetyPreferences(crime_severity={"Shoplifting": 0.9, "Bicycle theft": 5.0})
    custom = get_crime_severity_weights(prefs)
    assert custom["Shoplifting"] == 0.9
    assert custom["Bicycle theft"] == 1.0
    assert custom["Robbery"] == defaults["Robbery"]
