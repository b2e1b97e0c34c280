"""
Long-Term Memory (LTM) Updates

Implements the day-scale FSRS update equations: initial stability and
difficulty, post-review stability and difficulty, same-day adjustment, and
the interval that keeps retrievability at the target retention.

Key principles:
- Spaced, effortful success produces the largest stability gains
- A lapse never increases stability
- Difficulty drifts toward the "Easy" baseline (mean reversion)

Every function is pure. Time enters only through the `now` argument.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence, TypeVar
import math

from srs_core.fsrs.constants import (
    D_MAX,
    D_MIN,
    DEFAULT_TARGET_RETENTION,
    LN_09,
    MIN_INTERVAL_DAYS,
    SAME_DAY_THRESHOLD_HOURS,
    Rating,
    to_rating,
)
from srs_core.fsrs.memory_state import (
    MemoryState,
    calculate_retrievability,
    elapsed_days,
    elapsed_hours,
    format_interval_message,
    is_same_day,
)
from srs_core.fsrs.weights import DEFAULT_WEIGHTS, ConfigurationError, WeightVector


CardRef = TypeVar("CardRef")


@dataclass(frozen=True)
class ReviewResult:
    """Outcome of a long-term review."""
    state: MemoryState
    retrievability: float  # R at the moment of review (1.0 for a new card)
    interval: float  # Days until next review
    message: str


@dataclass(frozen=True)
class DueCard:
    """A card that is due, with its current retrievability."""
    id: object
    state: MemoryState
    retrievability: float


def clamp_difficulty(value: float) -> float:
    return max(D_MIN, min(D_MAX, value))


def initial_stability(weights: WeightVector, rating: Rating) -> float:
    """S0(G) = w[G-1]"""
    return weights.initial_stability(rating)


def initial_difficulty(weights: WeightVector, rating: Rating) -> float:
    """D0(G) = w4 - e^(w5 * (G - 1)) + 1, clamped to [1, 10]"""
    return clamp_difficulty(
        weights.initial_difficulty_base
        - math.exp(weights.initial_difficulty_spread * (int(rating) - 1))
        + 1.0
    )


def update_difficulty(weights: WeightVector, difficulty: float, rating: Rating) -> float:
    """
    Update difficulty after a review.

    Formula:
        ΔD = -w6 * (G - 3)
        D' = D + ΔD * (10 - D) / 9          (linear damping near the ceiling)
        D_new = w7 * D0(Easy) + (1 - w7) * D'

    Returns:
        New difficulty, clipped to [1, 10]
    """
    delta = -weights.difficulty_step * (int(rating) - 3)
    damped = difficulty + delta * (10.0 - difficulty) / 9.0
    d0_easy = (
        weights.initial_difficulty_base
        - math.exp(weights.initial_difficulty_spread * 3)
        + 1.0
    )
    reverted = (
        weights.difficulty_mean_reversion * d0_easy
        + (1.0 - weights.difficulty_mean_reversion) * damped
    )
    return clamp_difficulty(reverted)


def update_stability_on_success(
    weights: WeightVector,
    stability: float,
    difficulty: float,
    retrievability: float
) -> float:
    """
    Update stability after a successful retrieval (Hard/Good/Easy).

    Formula:
        S_new = S * (1 + e^w8 * (11 - D) * S^(-w9) * (e^(w10 * (1 - R)) - 1))

    Lower R at review time (a well-spaced success) yields a larger gain.
    """
    growth = 1.0 + (
        math.exp(weights.success_stability_base)
        * (11.0 - difficulty)
        * math.pow(stability, -weights.success_stability_decay)
        * (math.exp(weights.success_retrievability_factor * (1.0 - retrievability)) - 1.0)
    )
    return stability * growth


def update_stability_on_failure(
    weights: WeightVector,
    stability: float,
    difficulty: float,
    retrievability: float
) -> float:
    """
    Update stability after a failed retrieval (Again).

    Formula:
        S_new = min(w11 * D^(-w12) * ((S + 1)^w13 - 1) * e^(w14 * (1 - R)), S)

    Post-lapse stability is capped at the pre-lapse value.
    """
    lapsed = (
        weights.failure_stability_base
        * math.pow(difficulty, -weights.failure_difficulty_exponent)
        * (math.pow(stability + 1.0, weights.failure_stability_exponent) - 1.0)
        * math.exp(weights.failure_retrievability_factor * (1.0 - retrievability))
    )
    return min(lapsed, stability)


def update_stability_same_day(
    weights: WeightVector,
    stability: float,
    hours_since_review: float,
    rating: Rating
) -> float:
    """
    Adjust stability for a review within 24h of the previous one.

    Formula:
        SInc = e^(w17 * (G - 3 + w18)) * S^(-w19)
        S_new = S * SInc, with SInc >= 1 for passing ratings (Good/Easy)
    """
    if hours_since_review >= SAME_DAY_THRESHOLD_HOURS:
        return stability

    increase = (
        math.exp(weights.same_day_rating_factor * (int(rating) - 3 + weights.same_day_rating_offset))
        * math.pow(stability, -weights.same_day_stability_decay)
    )
    if rating >= Rating.GOOD:
        increase = max(1.0, increase)
    return stability * increase


def next_interval(
    weights: WeightVector,
    stability: float,
    target_retention: float,
    rating: Rating
) -> float:
    """
    Days until retrievability falls to the target retention.

    Formula:
        I = (S / ln(0.9)) * ln(target), times w15 for Hard or w16 for Easy

    Returns:
        Interval in days, at least MIN_INTERVAL_DAYS
    """
    interval = (stability / LN_09) * math.log(target_retention)
    if rating == Rating.HARD:
        interval *= weights.hard_interval_modifier
    elif rating == Rating.EASY:
        interval *= weights.easy_interval_modifier
    return max(MIN_INTERVAL_DAYS, interval)


def review_card(
    weights: WeightVector,
    state: Optional[MemoryState],
    rating: Rating,
    now: datetime,
    target_retention: float = DEFAULT_TARGET_RETENTION
) -> ReviewResult:
    """
    Apply one graded review to a long-term memory state.

    Workflow:
    1. New card (no state, or stability 0): initialize S and D from the rating
    2. Otherwise: compute R from elapsed time, update D, then S
       (success or failure branch), then the same-day adjustment
    3. Schedule next_review = now + interval

    Args:
        weights: FSRS weight vector
        state: Current state (None for a never-reviewed card)
        rating: Learner's rating
        now: Review timestamp
        target_retention: Recall probability used to size the interval

    Returns:
        ReviewResult with the new state, R at review time, interval and message
    """
    rating = to_rating(rating)

    if state is None or state.stability <= 0:
        stability = initial_stability(weights, rating)
        difficulty = initial_difficulty(weights, rating)
        retrievability = 1.0
    else:
        anchor = state.anchor
        days = max(0.0, elapsed_days(anchor, now))
        retrievability = calculate_retrievability(
            days, state.stability, weights.forgetting_curve_decay
        )

        difficulty = update_difficulty(weights, state.difficulty, rating)
        if rating == Rating.AGAIN:
            stability = update_stability_on_failure(
                weights, state.stability, difficulty, retrievability
            )
        else:
            stability = update_stability_on_success(
                weights, state.stability, difficulty, retrievability
            )

        if state.last_review is not None and is_same_day(state.last_review, now):
            hours = elapsed_hours(state.last_review, now)
            stability = update_stability_same_day(weights, stability, hours, rating)

        if rating == Rating.AGAIN:
            stability = min(stability, state.stability)

    interval = next_interval(weights, stability, target_retention, rating)
    new_state = MemoryState(
        stability=stability,
        difficulty=difficulty,
        last_review=now,
        next_review=now + timedelta(days=interval),
    )
    return ReviewResult(
        state=new_state,
        retrievability=retrievability,
        interval=interval,
        message=format_interval_message(interval),
    )


def get_due_cards(
    cards: Iterable[tuple[CardRef, MemoryState]],
    now: datetime,
    target_retention: float = DEFAULT_TARGET_RETENTION,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> list[DueCard]:
    """
    Cards whose retrievability has fallen to the target retention or below.

    Returns:
        DueCard list sorted by retrievability, most at-risk first
    """
    due: list[DueCard] = []
    for card_id, state in cards:
        days = elapsed_days(state.anchor, now)
        retrievability = calculate_retrievability(days, state.stability, decay)
        if retrievability <= target_retention:
            due.append(DueCard(id=card_id, state=state, retrievability=retrievability))

    due.sort(key=lambda c: c.retrievability)
    return due


class MemoryModel:
    """
    Long-term model bound to one user's weights and target retention.

    Construction fails fast on an invalid weight vector.
    """

    def __init__(
        self,
        weights: Sequence[float] | WeightVector = DEFAULT_WEIGHTS,
        target_retention: float = DEFAULT_TARGET_RETENTION
    ):
        if not isinstance(weights, WeightVector):
            weights = WeightVector.from_sequence(weights)
        if not 0.0 < target_retention < 1.0:
            raise ConfigurationError(
                f"Target retention must be in (0, 1), got {target_retention}"
            )
        self.weights = weights
        self.target_retention = target_retention

    def calculate_retrievability(self, elapsed: float, stability: float) -> float:
        return calculate_retrievability(elapsed, stability, self.weights.forgetting_curve_decay)

    def review_card(
        self,
        state: Optional[MemoryState],
        rating: Rating,
        now: datetime
    ) -> ReviewResult:
        return review_card(self.weights, state, rating, now, self.target_retention)

    def get_due_cards(
        self,
        cards: Iterable[tuple[CardRef, MemoryState]],
        now: datetime
    ) -> list[DueCard]:
        return get_due_cards(
            cards, now, self.target_retention, self.weights.forgetting_curve_decay
        )
