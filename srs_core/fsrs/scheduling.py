"""
Scheduling Service - Persisted Review Path

Runs a review end to end inside ONE transaction:
1. Load the card and the user's parameters (read fresh every time)
2. Run the review state machine
3. Evaluate the short loop and upsert today's counters
4. Write the new card state, append the review log row

Any failure rolls everything back; the card keeps its prior state and no
partial review log row is written. Concurrent reviews of the same card are
detected by the card's version column (ConcurrentReviewError).

Also here: management penalty, content edits and card resets, which touch
a card outside a graded review.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
import logging
import random

from srs_core.config import (
    LearningConfig,
    ManagementPenaltyConfig,
    ShortLoopConfig,
)
from srs_core.fsrs.constants import Rating, to_rating
from srs_core.fsrs.database import (
    SessionFactory,
    UserParameters,
    append_review_log,
    apply_phase_to_card,
    card_to_phase,
    get_card,
    increment_review_count,
    load_user_parameters,
    session_scope,
)
from srs_core.fsrs.management import (
    ContentChange,
    ManagementPenaltyEngine,
    detect_content_change,
    reset_card_state,
)
from srs_core.fsrs.memory_state import compute_risk_timestamps, parse_timestamp
from srs_core.fsrs.phases import RelearningCard, ReviewCard
from srs_core.fsrs.scheduler import ReviewScheduler, ScheduleResult
from srs_core.policies.feature_flags import FEATURE_FLAGS, FeatureFlagService
from srs_core.policies.short_loop import (
    LoopCard,
    ShortLoopDecision,
    ShortLoopPolicy,
    SqlDailyLoopStore,
    load_session_stats,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReviewOutcome:
    card_id: str
    schedule: ScheduleResult
    short_loop: ShortLoopDecision


class ReviewService:
    """
    Persisted review operations.

    Args:
        session_factory: Session source (defaults to the configured database)
        short_loop_config: Same-day reinsertion settings
        penalty_config: Management penalty settings
        flags: Feature-flag lookups (None = config defaults only)
        rng: Random source for non-adaptive fuzzing
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        short_loop_config: Optional[ShortLoopConfig] = None,
        penalty_config: Optional[ManagementPenaltyConfig] = None,
        flags: Optional[FeatureFlagService] = None,
        rng: Optional[random.Random] = None
    ):
        self.session_factory = session_factory
        self.flags = flags
        self.short_loop = ShortLoopPolicy(short_loop_config or ShortLoopConfig(), flags)
        self.penalty_config = penalty_config or ManagementPenaltyConfig()
        self.rng = rng or random.Random()

    def review_card(
        self,
        user_id: str,
        card_id: str,
        rating: Rating | int,
        now: datetime,
        duration_ms: Optional[int] = None,
        shown_at: Optional[datetime] = None,
        revealed_at: Optional[datetime] = None,
        session_id: Optional[str] = None,
        intensity_mode: Optional[str] = None
    ) -> ReviewOutcome:
        """
        Grade one card and persist the result atomically.

        Raises:
            InvalidRatingError: rating outside 1..4 (nothing is read or written)
            CardNotFoundError: unknown card
            ConfigurationError: stored weights are invalid
            ConcurrentReviewError: the card changed underneath this review
            ReviewPersistenceError: the transaction failed and was rolled back
        """
        rating = to_rating(rating)

        with session_scope(self.session_factory) as session:
            card = get_card(session, user_id, card_id)
            params = load_user_parameters(session, user_id)
            scheduler = ReviewScheduler(
                params.weights,
                params.target_retention,
                self._learning_config(user_id, params),
            )

            phase = card_to_phase(card, now)
            # Short loop sees the card as it was before this review
            loop_card = LoopCard(
                card_id=card.id,
                stability=card.stability,
                difficulty=card.difficulty,
                is_important=bool(card.is_important),
            )

            result = scheduler.process_review(
                phase,
                rating,
                now,
                duration_ms=duration_ms,
                shown_at=shown_at,
                revealed_at=revealed_at,
                session_id=session_id,
            )

            decision = self.short_loop.evaluate_and_persist(
                SqlDailyLoopStore(session),
                user_id,
                loop_card,
                rating,
                now,
                session_stats=load_session_stats(session, user_id, session_id),
                session_id=session_id,
                mode=intensity_mode or params.study_intensity_mode,
            )

            apply_phase_to_card(card, result.phase, result.risk)
            append_review_log(session, user_id, card.id, result.event)
            increment_review_count(session, user_id)
            session.flush()

        logger.debug(
            "Reviewed card %s (rating %d): %s, next review %s",
            card_id, int(rating), result.review_state.name, result.next_review.isoformat(),
        )
        return ReviewOutcome(card_id=card_id, schedule=result, short_loop=decision)

    def apply_management_penalty(
        self,
        user_id: str,
        card_id: str,
        revealed_for_seconds: float,
        now: datetime
    ) -> Optional[datetime]:
        """
        Push a graduated card's next review after a passive answer reveal.

        Cards that are new or still learning are left alone.

        Returns:
            The card's next_review after the call (None if unset)
        """
        with session_scope(self.session_factory) as session:
            card = get_card(session, user_id, card_id)
            phase = card_to_phase(card, now)
            if not isinstance(phase, ReviewCard):
                return parse_timestamp(card.next_review)

            params = load_user_parameters(session, user_id)
            engine = ManagementPenaltyEngine(
                self.penalty_config, params.weights.forgetting_curve_decay, self.rng
            )
            memory = engine.apply(phase.memory, revealed_for_seconds, now)
            if memory is phase.memory:
                return memory.next_review

            card.next_review = memory.next_review
            session.flush()
            return memory.next_review

    def update_card_content(
        self,
        user_id: str,
        card_id: str,
        front: str,
        back: str,
        now: datetime,
        auto_reset: bool = True
    ) -> ContentChange:
        """
        Save edited card text; reset the memory state if the edit is large.

        Change is measured over front and back together.
        """
        with session_scope(self.session_factory) as session:
            card = get_card(session, user_id, card_id)
            change = detect_content_change(
                f"{card.front}\n{card.back}", f"{front}\n{back}"
            )
            card.front = front
            card.back = back
            if auto_reset and change.should_reset:
                apply_phase_to_card(card, reset_card_state(now))
                logger.info("Card %s reset after %.0f%% content change", card_id, change.change_percent)
            session.flush()
        return change

    def reset_card(self, user_id: str, card_id: str, now: datetime):
        """Discard a card's memory state; it becomes new and due now."""
        with session_scope(self.session_factory) as session:
            card = get_card(session, user_id, card_id)
            apply_phase_to_card(card, reset_card_state(now))
            session.flush()

    def refresh_risk_timestamps(self, user_id: str, card_id: str, now: datetime):
        """Recompute critical_before / high_risk_before for a graduated or relearning card."""
        with session_scope(self.session_factory) as session:
            card = get_card(session, user_id, card_id)
            phase = card_to_phase(card, now)
            if isinstance(phase, ReviewCard):
                memory = phase.memory
            elif isinstance(phase, RelearningCard):
                memory = phase.lapse_memory
            else:
                return
            params = load_user_parameters(session, user_id)
            risk = compute_risk_timestamps(memory, params.weights.forgetting_curve_decay)
            card.critical_before = risk.critical_before
            card.high_risk_before = risk.high_risk_before
            session.flush()

    def _learning_config(self, user_id: str, params: UserParameters) -> LearningConfig:
        enabled = params.learning_enabled_override
        if enabled is None:
            enabled = True
            if self.flags is not None:
                enabled = self.flags.is_enabled_for_user(
                    FEATURE_FLAGS["short_term_learning"], user_id, fallback=True
                )
        if enabled == params.learning.short_term_enabled:
            return params.learning
        return params.learning.model_copy(update={"short_term_enabled": enabled})
