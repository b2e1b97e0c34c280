"""
Tests for the weight optimization contract.

The optimizers here are stand-ins for the external fitting backend.
"""

from datetime import timedelta

import pytest

from srs_core.fsrs.database import load_user_parameters, session_scope
from srs_core.fsrs.models import UserSettings
from srs_core.fsrs.optimization import (
    check_eligibility,
    export_review_log,
    run_short_term_optimization,
    run_weight_optimization,
)
from srs_core.fsrs.weights import DEFAULT_WEIGHTS


USER_ID = "user-1"
FITTED = [round(w * 1.05, 4) for w in DEFAULT_WEIGHTS.as_list()]


class StaticOptimizer:
    def __init__(self, output):
        self.output = output
        self.seen = None

    def fit(self, review_log):
        self.seen = review_log
        return self.output


class BrokenOptimizer:
    def fit(self, review_log):
        raise RuntimeError("solver diverged")


# ============================================================================
# Eligibility
# ============================================================================

class TestEligibility:

    def test_first_run_needs_400_reviews(self, now):
        assert not check_eligibility(399, 399, None, now).eligible
        result = check_eligibility(400, 400, None, now)
        assert result.eligible
        assert result.reason == "first_run"

    def test_subsequent_run_on_new_reviews(self, now):
        result = check_eligibility(1000, 200, now - timedelta(days=1), now)
        assert result.eligible
        assert result.reason == "enough_new_reviews"

    def test_subsequent_run_on_elapsed_days(self, now):
        result = check_eligibility(1000, 10, now - timedelta(days=14), now)
        assert result.eligible
        assert result.reason == "enough_time_passed"

    def test_too_soon(self, now):
        result = check_eligibility(1000, 199, now - timedelta(days=13), now)
        assert not result.eligible
        assert result.reason == "too_soon"
        assert result.days_since_last == pytest.approx(13.0)


# ============================================================================
# Long-term weights
# ============================================================================

class TestWeightOptimization:

    def test_export_schema(self, session_factory, add_review_logs, now):
        add_review_logs([(3, 0.9, 5), (1, 0.8, 10)])
        with session_scope(session_factory) as session:
            rows = export_review_log(session, USER_ID)

        assert [r["review_rating"] for r in rows] == [1, 3]
        assert set(rows[0]) == {"card_id", "review_time", "review_rating", "review_state", "review_duration"}
        assert rows[1]["review_time"] == int(now.timestamp() * 1000) - 5 * 60 * 1000

    def test_not_eligible_without_force(self, session_factory, add_review_logs, now):
        add_review_logs([(3, 0.9, i) for i in range(10)])
        optimizer = StaticOptimizer(FITTED)

        result = run_weight_optimization(USER_ID, optimizer, now, session_factory)

        assert not result.success
        assert "not_enough_reviews" in result.message
        assert optimizer.seen is None

    def test_valid_fit_is_stored(self, session_factory, add_review_logs, make_settings, now):
        make_settings(review_count_since_optimization=37)
        add_review_logs([(3, 0.9, i) for i in range(10)])

        result = run_weight_optimization(USER_ID, StaticOptimizer(FITTED), now, session_factory, force=True)

        assert result.success
        assert result.weights == FITTED
        with session_scope(session_factory) as session:
            settings = session.get(UserSettings, USER_ID)
            assert settings.weights == FITTED
            assert settings.review_count_since_optimization == 0
            assert load_user_parameters(session, USER_ID).weights.as_list() == FITTED

    @pytest.mark.parametrize("output", [FITTED[:20], FITTED[:20] + [float("inf")], None])
    def test_invalid_fit_leaves_weights(self, session_factory, add_review_logs, output, now):
        add_review_logs([(3, 0.9, 1)])

        result = run_weight_optimization(USER_ID, StaticOptimizer(output), now, session_factory, force=True)

        assert not result.success
        assert result.error
        with session_scope(session_factory) as session:
            assert session.get(UserSettings, USER_ID) is None

    def test_optimizer_exception_is_reported(self, session_factory, add_review_logs, now):
        add_review_logs([(3, 0.9, 1)])
        result = run_weight_optimization(USER_ID, BrokenOptimizer(), now, session_factory, force=True)
        assert not result.success
        assert result.error == "solver diverged"

    def test_no_reviews(self, session_factory, now):
        result = run_weight_optimization(USER_ID, StaticOptimizer(FITTED), now, session_factory, force=True)
        assert not result.success
        assert result.message == "No review logs found for user"


# ============================================================================
# Short-term params
# ============================================================================

class TestShortTermOptimization:

    def test_valid_params_stored(self, session_factory, add_review_logs, now):
        add_review_logs([(3, None, 1)])
        optimizer = StaticOptimizer({"initial_s_short_by_rating": {"3": 40.0}, "growth_by_rating": {"3": 1.6}})

        result = run_short_term_optimization(USER_ID, optimizer, now, session_factory)

        assert result.success
        with session_scope(session_factory) as session:
            learning = load_user_parameters(session, USER_ID).learning
            assert learning.short_term_params.initial_s_short_by_rating == {"3": 40.0}

    def test_malformed_params_rejected(self, session_factory, add_review_logs, now):
        add_review_logs([(3, None, 1)])
        result = run_short_term_optimization(
            USER_ID, StaticOptimizer({"initial_s_short_by_rating": "fast"}), now, session_factory
        )
        assert not result.success
        with session_scope(session_factory) as session:
            assert session.get(UserSettings, USER_ID) is None

    def test_params_without_usable_values_rejected(self, session_factory, add_review_logs, now):
        add_review_logs([(3, None, 1)])
        result = run_short_term_optimization(
            USER_ID, StaticOptimizer({"growth_by_rating": {"3": 50.0}}), now, session_factory
        )
        assert not result.success
        assert result.message == "Optimizer returned no usable parameters"
