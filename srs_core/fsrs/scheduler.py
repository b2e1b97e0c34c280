"""
Scheduler - Review State Machine

Pure scheduling logic (no database calls).

Phases and transitions on a rating:
    New        -> Learning     (short-term model starts)
    Learning   -> Learning     (short interval, in minutes)
    Learning   -> Review       (graduation: one long-term review)
    Review     -> Review       (long-term update)
    Review     -> Relearning   (lapse, when the lapse policy applies)
    Relearning -> Relearning / Review (as Learning, using the lapse state)

This module handles ONLY the algorithm logic.
Persistence of the returned phase and event is handled by the scheduling
service, inside one transaction.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence
import logging

from srs_core.config import LearningConfig
from srs_core.fsrs import ltm_updates, stm_updates
from srs_core.fsrs.constants import (
    DEFAULT_TARGET_RETENTION,
    MINUTES_PER_DAY,
    Rating,
    ReviewState,
    to_rating,
)
from srs_core.fsrs.memory_state import (
    MemoryState,
    RiskTimestamps,
    calculate_retrievability,
    compute_risk_timestamps,
    elapsed_days,
    elapsed_minutes,
    format_interval_message,
)
from srs_core.fsrs.phases import (
    CardPhase,
    LearningCard,
    NewCard,
    RelearningCard,
    ReviewCard,
    last_review_of,
    review_state_of,
)
from srs_core.fsrs.weights import ConfigurationError, WeightVector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewEventRecord:
    """Immutable audit record for one graded review."""
    rating: Rating
    reviewed_at: datetime
    review_state: ReviewState
    scheduled_days: float
    elapsed_days: float
    duration_ms: Optional[int]
    stability_before: Optional[float]
    difficulty_before: Optional[float]
    retrievability_before: Optional[float]
    stability_after: Optional[float]
    difficulty_after: Optional[float]
    short_stability_after: Optional[float]
    session_id: Optional[str] = None
    shown_at: Optional[datetime] = None
    revealed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ScheduleResult:
    """Outcome of one review: the new phase plus everything derived from it."""
    phase: CardPhase
    next_review: datetime
    retrievability: float  # R before the review, in the model that was active
    interval_days: float
    message: str
    graduated: bool
    entered_relearning: bool
    risk: RiskTimestamps
    event: ReviewEventRecord

    @property
    def review_state(self) -> ReviewState:
        return self.event.review_state


class ReviewScheduler:
    """
    Card review state machine bound to one user's parameters.

    Args:
        weights: Long-term weight vector (21 values)
        target_retention: Long-term target retention
        learning_config: Short-term / learning-phase settings
    """

    def __init__(
        self,
        weights: Sequence[float] | WeightVector,
        target_retention: float = DEFAULT_TARGET_RETENTION,
        learning_config: Optional[LearningConfig] = None
    ):
        self.model = ltm_updates.MemoryModel(weights, target_retention)
        self.learning = learning_config or LearningConfig()
        if self.learning.min_interval_minutes > self.learning.max_interval_minutes:
            raise ConfigurationError("min_interval_minutes exceeds max_interval_minutes")

    @property
    def weights(self) -> WeightVector:
        return self.model.weights

    @property
    def target_retention(self) -> float:
        return self.model.target_retention

    def process_review(
        self,
        phase: CardPhase,
        rating: Rating | int,
        now: datetime,
        duration_ms: Optional[int] = None,
        shown_at: Optional[datetime] = None,
        revealed_at: Optional[datetime] = None,
        session_id: Optional[str] = None
    ) -> ScheduleResult:
        """
        Apply one rating to a card and return its new phase.

        Args:
            phase: Current card phase
            rating: 1=Again, 2=Hard, 3=Good, 4=Easy
            now: Review timestamp
            duration_ms: Explicit review duration; derived from shown_at if omitted
            shown_at / revealed_at / session_id: Timing data recorded on the event

        Returns:
            ScheduleResult

        Raises:
            InvalidRatingError: rating outside 1..4
        """
        rating = to_rating(rating)

        if isinstance(phase, NewCard):
            outcome = self._review_new(rating, now)
        elif isinstance(phase, (LearningCard, RelearningCard)):
            outcome = self._review_learning(phase, rating, now)
        elif isinstance(phase, ReviewCard):
            outcome = self._review_graduated(phase, rating, now)
        else:
            raise TypeError(f"Unknown card phase: {phase!r}")

        new_phase, retrievability, interval_days, graduated, relearning = outcome

        if graduated:
            logger.info("Card graduated to long-term scheduling (interval %.2f days)", interval_days)
        if relearning:
            logger.info("Card lapsed and entered relearning")

        if duration_ms is None and shown_at is not None:
            duration_ms = max(0, round((now - shown_at).total_seconds() * 1000))

        event = self._build_event(
            phase, new_phase, rating, now, retrievability, interval_days,
            relearning, duration_ms, session_id, shown_at, revealed_at
        )

        # Relearning cards are at risk by their post-lapse long-term state
        new_memory = None
        if isinstance(new_phase, ReviewCard):
            new_memory = new_phase.memory
        elif isinstance(new_phase, RelearningCard):
            new_memory = new_phase.lapse_memory
        next_review = _phase_next_review(new_phase)
        return ScheduleResult(
            phase=new_phase,
            next_review=next_review,
            retrievability=retrievability,
            interval_days=interval_days,
            message=format_interval_message(interval_days),
            graduated=graduated,
            entered_relearning=relearning,
            risk=compute_risk_timestamps(new_memory, self.weights.forgetting_curve_decay),
            event=event,
        )

    # ---- Transitions ----

    def _review_new(self, rating: Rating, now: datetime):
        if not self.learning.short_term_enabled:
            result = self.model.review_card(None, rating, now)
            return ReviewCard(memory=result.state, graduated_at=now), 1.0, result.interval, True, False

        phase, interval_minutes = self._start_short_term(rating, now, prior=None)
        return phase, 1.0, interval_minutes / MINUTES_PER_DAY, False, False

    def _review_learning(self, phase: LearningCard | RelearningCard, rating: Rating, now: datetime):
        minutes = max(0.0, elapsed_minutes(phase.last_review, now))
        retrievability = stm_updates.short_retrievability(minutes, phase.short_stability_minutes)

        s_short = stm_updates.update_short_stability(
            phase.short_stability_minutes, minutes, rating, self.learning.short_term_params
        )
        count = phase.learning_review_count + 1
        predicted = stm_updates.predicted_interval_minutes(s_short, self.learning.target_retention_short)

        if stm_updates.should_graduate(
            predicted,
            count,
            self.learning.graduation_cap_days,
            self.learning.max_attempts_before_graduate,
        ):
            memory, interval_days = self._graduate(phase, rating, now)
            return ReviewCard(memory=memory, graduated_at=now), retrievability, interval_days, True, False

        interval_minutes = self._clamp_minutes(predicted)
        next_review = now + timedelta(minutes=interval_minutes)
        if isinstance(phase, RelearningCard):
            new_phase = RelearningCard(
                short_stability_minutes=s_short,
                learning_review_count=count,
                last_review=now,
                next_review=next_review,
                lapse_memory=phase.lapse_memory,
            )
        else:
            new_phase = LearningCard(
                short_stability_minutes=s_short,
                learning_review_count=count,
                last_review=now,
                next_review=next_review,
                prior_long_term=phase.prior_long_term,
            )
        return new_phase, retrievability, interval_minutes / MINUTES_PER_DAY, False, False

    def _review_graduated(self, phase: ReviewCard, rating: Rating, now: datetime):
        result = self.model.review_card(phase.memory, rating, now)

        if rating == Rating.AGAIN and self._lapse_enters_relearning(phase.memory, now):
            new_phase, interval_minutes = self._start_short_term(rating, now, prior=result.state)
            return new_phase, result.retrievability, interval_minutes / MINUTES_PER_DAY, False, True

        new_phase = ReviewCard(memory=result.state, graduated_at=phase.graduated_at)
        return new_phase, result.retrievability, result.interval, False, False

    # ---- Helpers ----

    def _start_short_term(self, rating: Rating, now: datetime, prior: Optional[MemoryState]):
        s_short = stm_updates.initial_short_stability(rating, self.learning.short_term_params)
        interval_minutes = self._clamp_minutes(
            stm_updates.predicted_interval_minutes(s_short, self.learning.target_retention_short)
        )
        next_review = now + timedelta(minutes=interval_minutes)
        if prior is not None:
            phase = RelearningCard(
                short_stability_minutes=s_short,
                learning_review_count=1,
                last_review=now,
                next_review=next_review,
                lapse_memory=prior,
            )
        else:
            phase = LearningCard(
                short_stability_minutes=s_short,
                learning_review_count=1,
                last_review=now,
                next_review=next_review,
            )
        return phase, interval_minutes

    def _graduate(self, phase: LearningCard | RelearningCard, rating: Rating, now: datetime):
        """Hand the card to the long-term model; returns (memory, interval_days)."""
        if isinstance(phase, RelearningCard):
            # Lapse stability/difficulty were computed when the card failed
            lapse = phase.lapse_memory
            interval = ltm_updates.next_interval(
                self.weights, lapse.stability, self.target_retention, rating
            )
            memory = MemoryState(
                stability=lapse.stability,
                difficulty=lapse.difficulty,
                last_review=now,
                next_review=now + timedelta(days=interval),
            )
            return memory, interval

        result = self.model.review_card(phase.prior_long_term, rating, now)
        return result.state, result.interval

    def _lapse_enters_relearning(self, memory: MemoryState, now: datetime) -> bool:
        if not self.learning.short_term_enabled:
            return False
        policy = self.learning.apply_to_lapses
        if policy == "always":
            return True
        if policy == "within_days" and self.learning.lapse_within_days is not None:
            if memory.last_review is None:
                return False
            return elapsed_days(memory.last_review, now) <= self.learning.lapse_within_days
        return False

    def _clamp_minutes(self, minutes: float) -> float:
        return stm_updates.clamp_interval_minutes(
            minutes, self.learning.min_interval_minutes, self.learning.max_interval_minutes
        )

    def _build_event(
        self,
        before: CardPhase,
        after: CardPhase,
        rating: Rating,
        now: datetime,
        retrievability: float,
        interval_days: float,
        relearning: bool,
        duration_ms: Optional[int],
        session_id: Optional[str],
        shown_at: Optional[datetime],
        revealed_at: Optional[datetime]
    ) -> ReviewEventRecord:
        last = last_review_of(before)
        state = ReviewState.RELEARNING if relearning else review_state_of(before)

        stability_before = difficulty_before = retrievability_before = None
        if isinstance(before, ReviewCard):
            stability_before = before.memory.stability
            difficulty_before = before.memory.difficulty
            retrievability_before = retrievability
        elif isinstance(before, LearningCard) and before.prior_long_term is not None:
            prior = before.prior_long_term
            stability_before = prior.stability
            difficulty_before = prior.difficulty
            retrievability_before = calculate_retrievability(
                elapsed_days(prior.anchor, now), prior.stability, self.weights.forgetting_curve_decay
            )
        elif isinstance(before, RelearningCard):
            lapse = before.lapse_memory
            stability_before = lapse.stability
            difficulty_before = lapse.difficulty
            retrievability_before = calculate_retrievability(
                elapsed_days(lapse.anchor, now), lapse.stability, self.weights.forgetting_curve_decay
            )

        stability_after = difficulty_after = short_after = None
        if isinstance(after, ReviewCard):
            stability_after = after.memory.stability
            difficulty_after = after.memory.difficulty
        else:
            short_after = after.short_stability_minutes
            if isinstance(after, RelearningCard):
                stability_after = after.lapse_memory.stability
                difficulty_after = after.lapse_memory.difficulty

        return ReviewEventRecord(
            rating=rating,
            reviewed_at=now,
            review_state=state,
            scheduled_days=interval_days,
            elapsed_days=max(0.0, elapsed_days(last, now)) if last is not None else 0.0,
            duration_ms=duration_ms,
            stability_before=stability_before,
            difficulty_before=difficulty_before,
            retrievability_before=retrievability_before,
            stability_after=stability_after,
            difficulty_after=difficulty_after,
            short_stability_after=short_after,
            session_id=session_id,
            shown_at=shown_at,
            revealed_at=revealed_at,
        )


def _phase_next_review(phase: CardPhase) -> datetime:
    if isinstance(phase, ReviewCard):
        return phase.memory.next_review
    return phase.next_review
