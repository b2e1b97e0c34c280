"""
SQLAlchemy ORM Models for the Scheduling Database

Defines cards, review logs, per-user settings, day-scoped short-loop state
and feature flags.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class UserSettings(Base):
    """
    Per-user scheduling parameters.

    weights and target_retention are replaced wholesale by the optimizer and
    the adaptive retention policy; every review reads them fresh.
    """
    __tablename__ = 'user_settings'

    user_id = Column(String(255), primary_key=True)

    # Long-term model
    weights = Column(JSON, nullable=True)  # 21 floats, None = library defaults
    target_retention = Column(Float, nullable=False, default=0.9)

    # Learning phase (None = default)
    learning_enabled = Column(Boolean, nullable=True)
    learning_target_retention_short = Column(Float, nullable=True)
    learning_min_interval_minutes = Column(Float, nullable=True)
    learning_max_interval_minutes = Column(Float, nullable=True)
    learning_graduation_cap_days = Column(Float, nullable=True)
    learning_max_attempts_before_graduate = Column(Integer, nullable=True)
    learning_apply_to_lapses = Column(String(20), nullable=True)
    learning_lapse_within_days = Column(Float, nullable=True)
    learning_short_fsrs_params = Column(JSON, nullable=True)
    study_intensity_mode = Column(String(20), nullable=False, default='default')

    # Optimization bookkeeping
    last_optimized_at = Column(DateTime(timezone=True), nullable=True)
    learning_last_optimized_at = Column(DateTime(timezone=True), nullable=True)
    review_count_since_optimization = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<UserSettings({self.user_id})>"


class Card(Base):
    """
    A flashcard and its scheduling state.

    phase holds the ReviewState value (0=New, 1=Learning, 2=Review,
    3=Relearning). stability/difficulty are only set in the Review phase;
    while learning, the long-term state waiting for graduation lives in the
    held_* columns.
    """
    __tablename__ = 'cards'

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(255), nullable=False)
    deck_id = Column(String(36), nullable=True)

    front = Column(Text, nullable=False)
    back = Column(Text, nullable=False)
    is_important = Column(Boolean, nullable=False, default=False)

    phase = Column(Integer, nullable=False, default=0)

    # Long-term memory state
    stability = Column(Float, nullable=True)
    difficulty = Column(Float, nullable=True)
    last_review = Column(DateTime(timezone=True), nullable=True)
    next_review = Column(DateTime(timezone=True), nullable=True)
    graduated_at = Column(DateTime(timezone=True), nullable=True)

    # Short-term memory state
    short_stability_minutes = Column(Float, nullable=True)
    learning_review_count = Column(Integer, nullable=True)

    # Long-term state held during learning/relearning
    held_stability = Column(Float, nullable=True)
    held_difficulty = Column(Float, nullable=True)
    held_last_review = Column(DateTime(timezone=True), nullable=True)
    held_next_review = Column(DateTime(timezone=True), nullable=True)

    # Pre-computed risk timestamps
    critical_before = Column(DateTime(timezone=True), nullable=True)  # R < 0.1
    high_risk_before = Column(DateTime(timezone=True), nullable=True)  # R < 0.5

    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index('ix_cards_user_next_review', 'user_id', 'next_review'),
        Index('ix_cards_user_critical_before', 'user_id', 'critical_before'),
    )

    def __repr__(self):
        return f"<Card({self.id}, user={self.user_id}, phase={self.phase})>"


class ReviewLog(Base):
    """
    Append-only audit record of one graded review.

    Column names follow the FSRS optimizer's review log schema.
    """
    __tablename__ = 'review_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    card_id = Column(String(36), nullable=False)
    user_id = Column(String(255), nullable=False)

    rating = Column(Integer, nullable=False)  # 1=Again, 2=Hard, 3=Good, 4=Easy
    review_time = Column(DateTime(timezone=True), nullable=False)
    review_date = Column(Date, nullable=False)
    review_state = Column(Integer, nullable=False)  # 0=New, 1=Learning, 2=Review, 3=Relearning
    review_duration = Column(Integer, nullable=True)  # Milliseconds

    shown_at = Column(DateTime(timezone=True), nullable=True)
    revealed_at = Column(DateTime(timezone=True), nullable=True)
    session_id = Column(String(255), nullable=True)

    scheduled_days = Column(Float, nullable=False)
    elapsed_days = Column(Float, nullable=False)

    # State before review
    stability_before = Column(Float, nullable=True)
    difficulty_before = Column(Float, nullable=True)
    retrievability_before = Column(Float, nullable=True)

    # State after review
    stability_after = Column(Float, nullable=True)
    difficulty_after = Column(Float, nullable=True)
    short_stability_after = Column(Float, nullable=True)

    __table_args__ = (
        Index('ix_review_logs_user_time', 'user_id', 'review_time'),
        Index('ix_review_logs_user_session', 'user_id', 'session_id'),
    )

    def __repr__(self):
        return f"<ReviewLog(id={self.id}, card={self.card_id}, rating={self.rating})>"


class CardDailyLoopState(Base):
    """
    Same-day short-loop counters, one row per (user, card, day).

    A new day starts from a fresh row, so counters reset implicitly.
    """
    __tablename__ = 'card_daily_loop_state'

    user_id = Column(String(255), primary_key=True)
    card_id = Column(String(36), primary_key=True)
    loop_date = Column(Date, primary_key=True)

    session_id = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    iteration = Column(Integer, nullable=False, default=0)
    reviews_today = Column(Integer, nullable=False, default=0)
    consecutive_successes = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_rating = Column(Integer, nullable=True)
    last_gap_seconds = Column(Integer, nullable=True)
    next_short_loop_at = Column(DateTime(timezone=True), nullable=True)
    fatigue_score = Column(Float, nullable=True)
    importance_multiplier = Column(Float, nullable=True)
    difficulty_multiplier = Column(Float, nullable=True)
    confidence_multiplier = Column(Float, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<CardDailyLoopState({self.user_id}, {self.card_id}, {self.loop_date})>"


class FeatureFlag(Base):
    __tablename__ = 'feature_flags'

    flag_key = Column(String(100), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    rollout_percentage = Column(Integer, nullable=False, default=0)
    description = Column(Text, nullable=True)


class FeatureFlagOverride(Base):
    __tablename__ = 'feature_flag_user_overrides'

    flag_key = Column(String(100), primary_key=True)
    user_id = Column(String(255), primary_key=True)
    enabled = Column(Boolean, nullable=False)
