"""
Short-Term Memory (STM) Updates

Minute-scale memory model used while a card is in the learning or
relearning phase (the first 0-2 days of exposure).

Retention model:
    R_short(t) = exp(-t / S_short)

S_short is measured in minutes. It starts from a per-rating value, grows
multiplicatively on success and resets on Again. Parameters come from the
short-term optimizer (ShortTermParams) or fall back to the defaults below.

Graduation to the long-term model happens when the predicted interval
reaches the graduation cap, or the number of learning reviews reaches the
attempt cap, whichever comes first.
"""

from __future__ import annotations
from typing import Optional
import math

from pydantic import BaseModel, ConfigDict, Field

from srs_core.fsrs.constants import MINUTES_PER_DAY, Rating


# ---- Defaults ----

# Initial S_short (minutes) by first rating
INITIAL_S_SHORT_BY_RATING = {
    Rating.AGAIN: 5.0,
    Rating.HARD: 15.0,
    Rating.GOOD: 30.0,
    Rating.EASY: 60.0,
}

# After Again, S_short resets to this (minutes)
S_SHORT_AFTER_AGAIN = 5.0

# Growth multipliers on success
GROWTH_BY_RATING = {
    Rating.AGAIN: 0.5,
    Rating.HARD: 1.15,
    Rating.GOOD: 1.4,
    Rating.EASY: 1.7,
}

# Accepted ranges for fitted values; anything outside falls back to defaults
INITIAL_S_SHORT_RANGE = (1.0, 120.0)
S_SHORT_AFTER_AGAIN_RANGE = (1.0, 30.0)
GROWTH_RANGE = (0.5, 3.0)

S_SHORT_MAX_MINUTES = 7 * MINUTES_PER_DAY  # Cap at one week


class ShortTermParams(BaseModel):
    """
    Fitted short-term parameters (output of the short-term optimizer).

    Keys of the per-rating maps are the rating numbers as strings ("1".."4"),
    matching the persisted JSON.
    """
    model_config = ConfigDict(frozen=True)

    initial_s_short_by_rating: dict[str, float] = Field(default_factory=dict)
    s_short_after_again: Optional[float] = Field(default=None)
    growth_by_rating: dict[str, float] = Field(default_factory=dict)

    def initial_for(self, rating: Rating) -> Optional[float]:
        value = self.initial_s_short_by_rating.get(str(int(rating)))
        if _usable(value) and value >= INITIAL_S_SHORT_RANGE[0]:
            return min(INITIAL_S_SHORT_RANGE[1], value)
        return None

    def after_again(self) -> Optional[float]:
        value = self.s_short_after_again
        if _usable(value) and value >= S_SHORT_AFTER_AGAIN_RANGE[0]:
            return min(S_SHORT_AFTER_AGAIN_RANGE[1], value)
        return None

    def growth_for(self, rating: Rating) -> Optional[float]:
        value = self.growth_by_rating.get(str(int(rating)))
        if _usable(value) and GROWTH_RANGE[0] <= value <= GROWTH_RANGE[1]:
            return value
        return None


def _usable(value) -> bool:
    return value is not None and isinstance(value, (int, float)) and math.isfinite(value)


def initial_short_stability(rating: Rating, params: Optional[ShortTermParams] = None) -> float:
    """
    Initial S_short (minutes) from the first rating of a new or relearning card.
    """
    fitted = params.initial_for(rating) if params is not None else None
    if fitted is not None:
        return fitted
    return max(1.0, INITIAL_S_SHORT_BY_RATING[rating])


def update_short_stability(
    s_short: float,
    minutes_since_review: float,
    rating: Rating,
    params: Optional[ShortTermParams] = None
) -> float:
    """
    Update S_short after a learning review.

    Formula (success):
        elapsed_factor = 0.5 * ln(1 + t / 60) + 1, capped at 2
        S_new = S * growth(rating) * elapsed_factor

    On Again, S_short resets to the after-again value.

    Args:
        s_short: Current short-term stability (minutes)
        minutes_since_review: Time since the previous review (minutes)
        rating: Learner's rating
        params: Optional fitted parameters

    Returns:
        New S_short in minutes, within [1, one week]
    """
    if rating == Rating.AGAIN:
        fitted = params.after_again() if params is not None else None
        return max(1.0, fitted if fitted is not None else S_SHORT_AFTER_AGAIN)

    fitted_growth = params.growth_for(rating) if params is not None else None
    growth = fitted_growth if fitted_growth is not None else GROWTH_BY_RATING[rating]
    elapsed_factor = math.log(1.0 + max(0.0, minutes_since_review) / 60.0) * 0.5 + 1.0
    new_s = s_short * growth * min(2.0, elapsed_factor)
    return max(1.0, min(S_SHORT_MAX_MINUTES, new_s))


def short_retrievability(minutes_elapsed: float, s_short: float) -> float:
    """R_short(t) = exp(-t / S_short)"""
    if minutes_elapsed <= 0:
        return 1.0
    if s_short <= 0:
        return 0.0
    return math.exp(-minutes_elapsed / s_short)


def predicted_interval_minutes(s_short: float, target_retention: float) -> float:
    """
    Minutes until R_short falls to the target.

    Formula: t = S_short * (-ln(target))
    """
    target = max(0.0, target_retention)
    if target >= 1.0:
        return 0.0
    if target <= 0.0:
        return S_SHORT_MAX_MINUTES
    return max(0.0, s_short * -math.log(target))


def clamp_interval_minutes(interval: float, min_minutes: float, max_minutes: float) -> float:
    return max(min_minutes, min(max_minutes, interval))


def should_graduate(
    interval_minutes: float,
    learning_review_count: int,
    graduation_cap_days: float,
    max_attempts: int
) -> bool:
    """
    Graduate when the predicted interval reaches the day cap, or the learning
    review count reaches the attempt cap.
    """
    if interval_minutes >= graduation_cap_days * MINUTES_PER_DAY:
        return True
    return learning_review_count >= max_attempts
