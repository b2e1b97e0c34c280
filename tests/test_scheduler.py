"""
Tests for the review state machine.

Every transition of the four phases, the lapse policies, and the audit
event recorded for each review.
"""

from datetime import timedelta
import math

import pytest

from srs_core.config import LearningConfig
from srs_core.fsrs.constants import InvalidRatingError, Rating, ReviewState
from srs_core.fsrs.ltm_updates import next_interval
from srs_core.fsrs.memory_state import MemoryState, calculate_retrievability, compute_risk_timestamps
from srs_core.fsrs.phases import LearningCard, NewCard, RelearningCard, ReviewCard
from srs_core.fsrs.scheduler import ReviewScheduler
from srs_core.fsrs.weights import DEFAULT_WEIGHTS, ConfigurationError


@pytest.fixture
def scheduler():
    return ReviewScheduler(DEFAULT_WEIGHTS)


def graduated(now, stability=10.0, difficulty=5.0, days_ago=10.0):
    last = now - timedelta(days=days_ago)
    return ReviewCard(
        memory=MemoryState(stability, difficulty, last, last + timedelta(days=stability)),
        graduated_at=last,
    )


# ============================================================================
# New cards
# ============================================================================

class TestNewCard:

    def test_good_enters_learning(self, scheduler, now):
        result = scheduler.process_review(NewCard(due=now), Rating.GOOD, now)

        assert isinstance(result.phase, LearningCard)
        assert result.phase.short_stability_minutes == 30.0
        assert result.phase.learning_review_count == 1
        assert result.phase.last_review == now
        assert result.next_review == now + timedelta(minutes=30.0 * -math.log(0.85))
        assert result.retrievability == 1.0
        assert not result.graduated
        assert result.review_state == ReviewState.NEW

    def test_again_interval_clamped_to_minimum(self, scheduler, now):
        result = scheduler.process_review(NewCard(), Rating.AGAIN, now)
        assert result.next_review == now + timedelta(minutes=1)

    def test_first_review_never_graduates(self, now):
        config = LearningConfig(max_attempts_before_graduate=1)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            NewCard(), Rating.EASY, now
        )
        assert isinstance(result.phase, LearningCard)

    def test_short_term_disabled_goes_long_term(self, now):
        config = LearningConfig(short_term_enabled=False)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            NewCard(), Rating.GOOD, now
        )

        assert isinstance(result.phase, ReviewCard)
        assert result.phase.memory.stability == pytest.approx(2.3)
        assert result.graduated
        assert result.risk.critical_before is not None

    def test_invalid_rating(self, scheduler, now):
        with pytest.raises(InvalidRatingError):
            scheduler.process_review(NewCard(), 0, now)


# ============================================================================
# Learning
# ============================================================================

class TestLearning:

    def _learning(self, now, s_short=30.0, count=1, minutes_ago=5.0):
        last = now - timedelta(minutes=minutes_ago)
        return LearningCard(s_short, count, last, last + timedelta(minutes=5))

    def test_good_stays_in_learning(self, scheduler, now):
        phase = self._learning(now)
        result = scheduler.process_review(phase, Rating.GOOD, now)

        assert isinstance(result.phase, LearningCard)
        assert result.phase.learning_review_count == 2
        assert result.phase.short_stability_minutes > 30.0
        assert result.retrievability == pytest.approx(math.exp(-5 / 30))
        assert result.review_state == ReviewState.LEARNING

    def test_again_resets_short_stability(self, scheduler, now):
        result = scheduler.process_review(self._learning(now, s_short=200.0), Rating.AGAIN, now)
        assert result.phase.short_stability_minutes == 5.0
        assert result.phase.learning_review_count == 2

    def test_graduates_at_attempt_cap(self, now):
        config = LearningConfig(max_attempts_before_graduate=2)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            self._learning(now), Rating.GOOD, now
        )

        assert isinstance(result.phase, ReviewCard)
        assert result.graduated
        assert result.phase.graduated_at == now
        assert result.phase.memory.stability == pytest.approx(2.3)
        assert result.phase.memory.last_review == now
        assert result.event.review_state == ReviewState.LEARNING
        assert result.event.stability_after == pytest.approx(2.3)

    def test_graduates_at_interval_cap(self, scheduler, now):
        # S_short of 9000 predicts well over one day at 0.85
        result = scheduler.process_review(self._learning(now, s_short=9000.0), Rating.GOOD, now)
        assert isinstance(result.phase, ReviewCard)

    def test_interval_never_exceeds_max(self, now):
        config = LearningConfig(max_interval_minutes=10, graduation_cap_days=30)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            self._learning(now, s_short=600.0), Rating.GOOD, now
        )
        assert isinstance(result.phase, LearningCard)
        assert result.next_review == now + timedelta(minutes=10)

    def test_prior_long_term_seeds_graduation(self, now):
        prior = MemoryState(20.0, 4.0, now - timedelta(days=20), now)
        last = now - timedelta(minutes=5)
        phase = LearningCard(30.0, 6, last, last + timedelta(minutes=5), prior_long_term=prior)

        result = ReviewScheduler(DEFAULT_WEIGHTS).process_review(phase, Rating.GOOD, now)

        assert isinstance(result.phase, ReviewCard)
        assert result.phase.memory.stability > 20.0
        assert result.event.stability_before == 20.0

    def test_min_interval_above_max_rejected(self):
        config = LearningConfig(min_interval_minutes=100, max_interval_minutes=10)
        with pytest.raises(ConfigurationError):
            ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config)


# ============================================================================
# Review and lapses
# ============================================================================

class TestReview:

    def test_good_updates_long_term(self, scheduler, now):
        result = scheduler.process_review(graduated(now), Rating.GOOD, now)

        assert isinstance(result.phase, ReviewCard)
        assert result.phase.memory.stability > 10.0
        assert result.retrievability == pytest.approx(0.9)
        assert result.review_state == ReviewState.REVIEW
        assert result.risk.high_risk_before < result.risk.critical_before
        assert result.event.elapsed_days == pytest.approx(10.0)

    def test_again_enters_relearning(self, scheduler, now):
        result = scheduler.process_review(graduated(now), Rating.AGAIN, now)

        assert isinstance(result.phase, RelearningCard)
        assert result.entered_relearning
        assert result.phase.lapse_memory.stability <= 10.0
        assert result.phase.short_stability_minutes == 5.0
        assert result.next_review == now + timedelta(minutes=1)
        assert result.review_state == ReviewState.RELEARNING

    def test_lapse_keeps_risk_from_lapse_state(self, scheduler, now):
        result = scheduler.process_review(graduated(now), Rating.AGAIN, now)

        assert result.risk == compute_risk_timestamps(result.phase.lapse_memory)
        assert now < result.risk.high_risk_before < result.risk.critical_before

    def test_lapse_policy_off_stays_in_review(self, now):
        config = LearningConfig(apply_to_lapses="off")
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            graduated(now), Rating.AGAIN, now
        )
        assert isinstance(result.phase, ReviewCard)
        assert not result.entered_relearning
        assert result.review_state == ReviewState.REVIEW

    @pytest.mark.parametrize("within,expected", [(3, ReviewCard), (30, RelearningCard), (None, ReviewCard)])
    def test_lapse_policy_within_days(self, now, within, expected):
        config = LearningConfig(apply_to_lapses="within_days", lapse_within_days=within)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            graduated(now, days_ago=10.0), Rating.AGAIN, now
        )
        assert isinstance(result.phase, expected)

    def test_short_term_disabled_keeps_lapses_long_term(self, now):
        config = LearningConfig(short_term_enabled=False)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            graduated(now), Rating.AGAIN, now
        )
        assert isinstance(result.phase, ReviewCard)


class TestRelearning:

    def _relearning(self, now, count=1):
        lapse = MemoryState(3.0, 6.0, now - timedelta(minutes=5), now)
        last = now - timedelta(minutes=5)
        return RelearningCard(5.0, count, last, last + timedelta(minutes=1), lapse_memory=lapse)

    def test_stays_relearning_below_caps(self, scheduler, now):
        result = scheduler.process_review(self._relearning(now), Rating.GOOD, now)

        assert isinstance(result.phase, RelearningCard)
        assert result.phase.lapse_memory.stability == 3.0
        assert result.review_state == ReviewState.RELEARNING
        assert result.event.stability_after == 3.0

    def test_event_records_long_term_recall(self, scheduler, now):
        result = scheduler.process_review(self._relearning(now), Rating.GOOD, now)

        # 5 minutes after a lapse at S=3 days, long-term recall is near certain
        expected = calculate_retrievability(5 / 1440, 3.0)
        assert result.event.stability_before == 3.0
        assert result.event.retrievability_before == pytest.approx(expected)
        assert result.event.retrievability_before > 0.99
        assert result.retrievability == pytest.approx(math.exp(-5 / 5.0))
        assert result.risk == compute_risk_timestamps(result.phase.lapse_memory)

    def test_regraduates_with_lapse_state(self, now):
        config = LearningConfig(max_attempts_before_graduate=2)
        result = ReviewScheduler(DEFAULT_WEIGHTS, learning_config=config).process_review(
            self._relearning(now), Rating.GOOD, now
        )

        assert isinstance(result.phase, ReviewCard)
        assert result.phase.memory.stability == 3.0
        assert result.phase.memory.difficulty == 6.0
        expected = next_interval(DEFAULT_WEIGHTS, 3.0, 0.9, Rating.GOOD)
        assert result.next_review == now + timedelta(days=expected)


# ============================================================================
# Audit event
# ============================================================================

def test_duration_derived_from_shown_at(scheduler, now):
    result = scheduler.process_review(
        NewCard(), Rating.GOOD, now, shown_at=now - timedelta(seconds=4), session_id="s-1"
    )
    assert result.event.duration_ms == 4000
    assert result.event.session_id == "s-1"


def test_explicit_duration_wins(scheduler, now):
    result = scheduler.process_review(
        NewCard(), Rating.GOOD, now, duration_ms=1234, shown_at=now - timedelta(seconds=4)
    )
    assert result.event.duration_ms == 1234


def test_message_describes_interval(scheduler, now):
    result = scheduler.process_review(graduated(now, stability=3.0, days_ago=3.0), Rating.GOOD, now)
    assert result.message.startswith("Review")
