"""Tests for the minute-scale learning model."""

import math

import pytest

from srs_core.fsrs.constants import Rating
from srs_core.fsrs.stm_updates import (
    S_SHORT_MAX_MINUTES,
    ShortTermParams,
    clamp_interval_minutes,
    initial_short_stability,
    predicted_interval_minutes,
    short_retrievability,
    should_graduate,
    update_short_stability,
)


@pytest.mark.parametrize("rating,minutes", [
    (Rating.AGAIN, 5.0),
    (Rating.HARD, 15.0),
    (Rating.GOOD, 30.0),
    (Rating.EASY, 60.0),
])
def test_initial_stability_by_rating(rating, minutes):
    assert initial_short_stability(rating) == minutes


def test_again_resets_stability():
    assert update_short_stability(300.0, 20.0, Rating.AGAIN) == 5.0


def test_success_grows_with_elapsed_time():
    s_new = update_short_stability(30.0, 10.0, Rating.GOOD)
    expected = 30.0 * 1.4 * (0.5 * math.log(1 + 10 / 60) + 1)
    assert s_new == pytest.approx(expected)
    assert update_short_stability(30.0, 120.0, Rating.GOOD) > s_new


def test_elapsed_factor_capped_at_two():
    # ln(1 + t/60) > 2 once t is large; the factor itself stops at 2
    assert update_short_stability(30.0, 100_000.0, Rating.HARD) == pytest.approx(30.0 * 1.15 * 2)


def test_stability_capped_at_one_week():
    assert update_short_stability(9000.0, 100_000.0, Rating.EASY) == S_SHORT_MAX_MINUTES


def test_retrievability_decays_exponentially():
    assert short_retrievability(0, 30.0) == 1.0
    assert short_retrievability(30.0, 30.0) == pytest.approx(math.exp(-1))
    assert short_retrievability(10.0, 0.0) == 0.0


def test_predicted_interval_hits_target():
    minutes = predicted_interval_minutes(30.0, 0.85)
    assert minutes == pytest.approx(30.0 * -math.log(0.85))
    assert short_retrievability(minutes, 30.0) == pytest.approx(0.85)


def test_interval_clamp():
    assert clamp_interval_minutes(0.2, 1, 1440) == 1
    assert clamp_interval_minutes(5000, 1, 1440) == 1440
    assert clamp_interval_minutes(42.0, 1, 1440) == 42.0


class TestGraduation:

    def test_interval_at_cap_graduates(self):
        assert should_graduate(1440.0, 1, 1.0, 7)

    def test_attempt_cap_graduates(self):
        assert should_graduate(10.0, 7, 1.0, 7)

    def test_below_both_caps_stays(self):
        assert not should_graduate(1439.0, 6, 1.0, 7)


class TestFittedParams:

    def test_fitted_values_used_in_range(self):
        params = ShortTermParams(
            initial_s_short_by_rating={"3": 45.0},
            s_short_after_again=8.0,
            growth_by_rating={"4": 2.5},
        )
        assert initial_short_stability(Rating.GOOD, params) == 45.0
        assert initial_short_stability(Rating.HARD, params) == 15.0
        assert update_short_stability(100.0, 0.0, Rating.AGAIN, params) == 8.0
        assert update_short_stability(10.0, 0.0, Rating.EASY, params) == pytest.approx(25.0)

    def test_out_of_range_values_fall_back(self):
        params = ShortTermParams(
            initial_s_short_by_rating={"3": 0.5},
            s_short_after_again=float("nan"),
            growth_by_rating={"3": 9.0},
        )
        assert initial_short_stability(Rating.GOOD, params) == 30.0
        assert update_short_stability(100.0, 0.0, Rating.AGAIN, params) == 5.0
        assert update_short_stability(10.0, 0.0, Rating.GOOD, params) == pytest.approx(14.0)

    def test_large_values_clamped_to_upper_bound(self):
        params = ShortTermParams(initial_s_short_by_rating={"4": 500.0}, s_short_after_again=90.0)
        assert initial_short_stability(Rating.EASY, params) == 120.0
        assert params.after_again() == 30.0
