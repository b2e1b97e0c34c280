"""
FSRS - Free Spaced Repetition Scheduler

Main API of the scheduling core.

This package implements:
- Long-term memory model (21 weights, power forgetting curve)
- Short-term memory model for the learning phase (minutes)
- Explicit card phases: New, Learning, Review, Relearning
- Management penalty and content change detection

Quick start:
    from srs_core import fsrs

    model = fsrs.MemoryModel()
    result = model.review_card(None, fsrs.Rating.GOOD, now)

The review state machine lives in srs_core.fsrs.scheduler and the persisted
review path in srs_core.fsrs.scheduling.
"""

# Constants and enums
from srs_core.fsrs.constants import (
    Rating,
    ReviewState,
    InvalidRatingError,
    DEFAULT_TARGET_RETENTION,
    D_MIN,
    D_MAX,
    MIN_INTERVAL_DAYS,
)

# Weights
from srs_core.fsrs.weights import (
    WEIGHT_COUNT,
    DEFAULT_WEIGHTS,
    ConfigurationError,
    WeightVector,
)

# Memory state
from srs_core.fsrs.memory_state import (
    MemoryState,
    RiskTimestamps,
    calculate_retrievability,
    compute_risk_timestamps,
    format_interval_message,
)

# Long-term model
from srs_core.fsrs.ltm_updates import (
    DueCard,
    MemoryModel,
    ReviewResult,
    get_due_cards,
    review_card,
)

# Short-term model
from srs_core.fsrs.stm_updates import (
    ShortTermParams,
    initial_short_stability,
    update_short_stability,
    predicted_interval_minutes,
    should_graduate,
)

# Card phases
from srs_core.fsrs.phases import (
    CardPhase,
    NewCard,
    LearningCard,
    ReviewCard,
    RelearningCard,
    review_state_of,
)


__all__ = [
    # Enums
    "Rating",
    "ReviewState",
    "InvalidRatingError",

    # Parameters
    "DEFAULT_TARGET_RETENTION",
    "D_MIN",
    "D_MAX",
    "MIN_INTERVAL_DAYS",
    "WEIGHT_COUNT",
    "DEFAULT_WEIGHTS",
    "ConfigurationError",
    "WeightVector",

    # Memory state
    "MemoryState",
    "RiskTimestamps",
    "calculate_retrievability",
    "compute_risk_timestamps",
    "format_interval_message",

    # Long-term model
    "DueCard",
    "MemoryModel",
    "ReviewResult",
    "get_due_cards",
    "review_card",

    # Short-term model
    "ShortTermParams",
    "initial_short_stability",
    "update_short_stability",
    "predicted_interval_minutes",
    "should_graduate",

    # Phases
    "CardPhase",
    "NewCard",
    "LearningCard",
    "ReviewCard",
    "RelearningCard",
    "review_state_of",
]
