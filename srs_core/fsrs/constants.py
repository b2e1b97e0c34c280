"""
FSRS Constants and Parameters

Enums and fixed numeric constants shared by the long-term and
short-term memory models. Fitted parameters live in weights.py.
"""

from enum import IntEnum
import math


# ---- Ratings ----

class Rating(IntEnum):
    """Learner's graded recall of a card."""
    AGAIN = 1   # Retrieval failed
    HARD = 2    # Retrieved with high effort
    GOOD = 3    # Retrieved normally
    EASY = 4    # Retrieved fluently


class ReviewState(IntEnum):
    """Phase a card was in when it was reviewed (FSRS optimizer log schema)."""
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class InvalidRatingError(ValueError):
    """Rating outside the 1-4 range."""


def to_rating(value) -> Rating:
    """
    Coerce an int-like value to a Rating.

    Raises:
        InvalidRatingError: if value is not in 1..4
    """
    if isinstance(value, bool):
        raise InvalidRatingError(f"Rating must be 1-4, got {value!r}")
    try:
        return Rating(int(value))
    except (TypeError, ValueError):
        raise InvalidRatingError(f"Rating must be 1-4, got {value!r}") from None


# ---- Long-term model ----

DEFAULT_TARGET_RETENTION = 0.9
REFERENCE_RETENTION = 0.9  # Stability is defined as days until R drops to this
LN_09 = math.log(REFERENCE_RETENTION)

MIN_INTERVAL_DAYS = 0.1
D_MIN = 1.0
D_MAX = 10.0

SAME_DAY_THRESHOLD_HOURS = 24.0


# ---- Risk thresholds (pre-computed timestamps on each card) ----

CRITICAL_RETRIEVABILITY = 0.1   # critical_before: R falls under 10%
HIGH_RISK_RETRIEVABILITY = 0.5  # high_risk_before: R falls under 50%


# ---- Time ----

SECONDS_PER_MINUTE = 60
MINUTES_PER_DAY = 24 * 60
HOURS_PER_DAY = 24
DAYS_PER_WEEK = 7
DAYS_PER_MONTH = 30
