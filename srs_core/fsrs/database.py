"""
Database - Scheduling Database I/O Operations

Handles all database operations for cards, review logs and user settings.
Uses SQLAlchemy ORM; Postgres in production, SQLite in tests.

This module handles ONLY database I/O.
Algorithm logic is handled by the scheduler module.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional
import logging

from pydantic import ValidationError
from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from srs_core.config import LearningConfig, get_database_url
from srs_core.fsrs.constants import DEFAULT_TARGET_RETENTION, ReviewState
from srs_core.fsrs.memory_state import (
    MemoryState,
    RiskTimestamps,
    parse_timestamp,
    sanitize_timestamp,
)
from srs_core.fsrs.models import Base, Card, ReviewLog, UserSettings
from srs_core.fsrs.phases import (
    CardPhase,
    LearningCard,
    NewCard,
    RelearningCard,
    ReviewCard,
)
from srs_core.fsrs.scheduler import ReviewEventRecord
from srs_core.fsrs.stm_updates import ShortTermParams
from srs_core.fsrs.weights import DEFAULT_WEIGHTS, ConfigurationError, WeightVector

logger = logging.getLogger(__name__)


SessionFactory = Callable[[], Session]


# ---- Errors ----

class ReviewPersistenceError(RuntimeError):
    """The review transaction was rolled back; prior state is intact. Retryable."""


class ConcurrentReviewError(ReviewPersistenceError):
    """Another writer updated the card first (optimistic version check failed)."""


class CardNotFoundError(LookupError):
    """No (non-deleted) card with this id for this user."""


# ---- Engine and sessions ----

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """
    Get SQLAlchemy engine for database connection.

    Uses connection pooling for better performance. Created once per process.

    Returns:
        SQLAlchemy Engine instance
    """
    global _engine
    if _engine is None:
        db_url = get_database_url()
        if db_url.startswith("sqlite"):
            _engine = create_engine(db_url, echo=False)
        else:
            _engine = create_engine(
                db_url,
                pool_size=5,           # Keep 5 connections open
                max_overflow=10,       # Allow up to 10 extra connections
                pool_pre_ping=True,    # Verify connections before use
                echo=False
            )
    return _engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


def get_session() -> Session:
    """
    Get a SQLAlchemy session for database operations.

    Returns:
        SQLAlchemy Session instance
    """
    return get_session_factory()()


@contextmanager
def session_scope(session_factory: Optional[SessionFactory] = None) -> Iterator[Session]:
    """
    Transactional unit of work.

    Commits when the block exits normally. Any exception rolls the whole
    transaction back and propagates; database errors are re-raised as
    ReviewPersistenceError (ConcurrentReviewError for a stale version).
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConcurrentReviewError(
            "Card was modified by a concurrent review; retry the review"
        ) from exc
    except SQLAlchemyError as exc:
        session.rollback()
        raise ReviewPersistenceError(f"Transaction rolled back: {exc}") from exc
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None):
    """
    Initialize database schema if tables don't exist.

    Creates all tables defined in SQLAlchemy models.
    Safe to call multiple times - only creates missing tables.
    """
    engine = engine or get_engine()

    inspector = inspect(engine)
    existing_tables = set(inspector.get_table_names())
    if not set(Base.metadata.tables).issubset(existing_tables):
        Base.metadata.create_all(engine)
        return

    card_columns = {col["name"] for col in inspector.get_columns("cards")}
    if "version" not in card_columns or "phase" not in card_columns:
        raise RuntimeError(
            "Card schema missing phase/version columns. "
            "Please reset or migrate the database to the current schema."
        )


def reset_db(engine: Optional[Engine] = None):
    """
    DANGEROUS: Delete all data and recreate tables.

    Only use this for testing or when you want to start fresh.
    All review history will be lost!
    """
    engine = engine or get_engine()
    Base.metadata.drop_all(engine)
    logger.warning("All scheduling tables dropped")

    init_db(engine)


# ---- Card state mapping ----

def card_to_phase(card: Card, now: datetime) -> CardPhase:
    """
    Read a card row into its phase.

    Timestamps are sanitized: missing or malformed values become `now`.
    A row whose phase column disagrees with its fields is read by its fields.
    """
    phase = card.phase
    last_review = parse_timestamp(card.last_review)

    if phase in (ReviewState.LEARNING, ReviewState.RELEARNING) and card.short_stability_minutes:
        last = sanitize_timestamp(card.last_review, now, "last_review")
        next_review = sanitize_timestamp(card.next_review, now, "next_review")
        if next_review < last:
            next_review = last
        held = _held_memory(card, now)

        if phase == ReviewState.RELEARNING and held is not None:
            return RelearningCard(
                short_stability_minutes=card.short_stability_minutes,
                learning_review_count=card.learning_review_count or 0,
                last_review=last,
                next_review=next_review,
                lapse_memory=held,
            )
        return LearningCard(
            short_stability_minutes=card.short_stability_minutes,
            learning_review_count=card.learning_review_count or 0,
            last_review=last,
            next_review=next_review,
            prior_long_term=held,
        )

    if card.stability and card.stability > 0 and card.difficulty is not None:
        next_review = sanitize_timestamp(card.next_review, now, "next_review")
        if last_review is not None and next_review < last_review:
            next_review = last_review
        return ReviewCard(
            memory=MemoryState(
                stability=card.stability,
                difficulty=card.difficulty,
                last_review=last_review,
                next_review=next_review,
            ),
            graduated_at=parse_timestamp(card.graduated_at),
        )

    return NewCard(due=parse_timestamp(card.next_review))


def _held_memory(card: Card, now: datetime) -> Optional[MemoryState]:
    if not card.held_stability or card.held_difficulty is None:
        return None
    last = parse_timestamp(card.held_last_review)
    next_review = sanitize_timestamp(card.held_next_review, now, "held_next_review")
    if last is not None and next_review < last:
        next_review = last
    return MemoryState(
        stability=card.held_stability,
        difficulty=card.held_difficulty,
        last_review=last,
        next_review=next_review,
    )


def apply_phase_to_card(card: Card, phase: CardPhase, risk: Optional[RiskTimestamps] = None):
    """
    Write a phase onto a card row (modifies in place).

    Every field not valid for the phase is cleared.
    """
    card.stability = None
    card.difficulty = None
    card.short_stability_minutes = None
    card.learning_review_count = None
    card.held_stability = None
    card.held_difficulty = None
    card.held_last_review = None
    card.held_next_review = None
    card.critical_before = risk.critical_before if risk else None
    card.high_risk_before = risk.high_risk_before if risk else None

    if isinstance(phase, NewCard):
        card.phase = int(ReviewState.NEW)
        card.last_review = None
        card.next_review = phase.due
        card.graduated_at = None
        card.critical_before = None
        card.high_risk_before = None
        return

    if isinstance(phase, ReviewCard):
        card.phase = int(ReviewState.REVIEW)
        card.stability = phase.memory.stability
        card.difficulty = phase.memory.difficulty
        card.last_review = phase.memory.last_review
        card.next_review = phase.memory.next_review
        card.graduated_at = phase.graduated_at
        return

    card.phase = int(ReviewState.RELEARNING if isinstance(phase, RelearningCard) else ReviewState.LEARNING)
    card.short_stability_minutes = phase.short_stability_minutes
    card.learning_review_count = phase.learning_review_count
    card.last_review = phase.last_review
    card.next_review = phase.next_review
    held = phase.lapse_memory if isinstance(phase, RelearningCard) else phase.prior_long_term
    if held is not None:
        card.held_stability = held.stability
        card.held_difficulty = held.difficulty
        card.held_last_review = held.last_review
        card.held_next_review = held.next_review


# ---- Cards ----

def get_card(session: Session, user_id: str, card_id: str) -> Card:
    """
    Load a card for update.

    Raises:
        CardNotFoundError: unknown or soft-deleted card
    """
    card = session.execute(
        select(Card).where(
            Card.id == card_id,
            Card.user_id == user_id,
            Card.deleted_at.is_(None),
        )
    ).scalar_one_or_none()
    if card is None:
        raise CardNotFoundError(f"Card {card_id} not found for user {user_id}")
    return card


def create_card(
    session: Session,
    user_id: str,
    front: str,
    back: str,
    now: datetime,
    deck_id: Optional[str] = None,
    is_important: bool = False
) -> Card:
    card = Card(
        user_id=user_id,
        deck_id=deck_id,
        front=front,
        back=back,
        is_important=is_important,
        phase=int(ReviewState.NEW),
        next_review=now,
        created_at=now,
    )
    session.add(card)
    session.flush()
    return card


def get_due_cards(
    session: Session,
    user_id: str,
    now: datetime,
    limit: Optional[int] = None
) -> list[Card]:
    """Cards whose next_review has passed, earliest first."""
    query = (
        select(Card)
        .where(
            Card.user_id == user_id,
            Card.deleted_at.is_(None),
            Card.next_review <= now,
        )
        .order_by(Card.next_review)
    )
    if limit is not None:
        query = query.limit(limit)
    return list(session.execute(query).scalars())


def get_at_risk_cards(
    session: Session,
    user_id: str,
    now: datetime,
    critical_only: bool = False,
    limit: Optional[int] = None
) -> list[Card]:
    """
    Due cards already past a risk threshold, most urgent first.

    Uses the pre-computed critical_before / high_risk_before columns, so no
    retrievability is computed at read time.
    """
    threshold = Card.critical_before if critical_only else Card.high_risk_before
    query = (
        select(Card)
        .where(
            Card.user_id == user_id,
            Card.deleted_at.is_(None),
            Card.next_review <= now,
            threshold.is_not(None),
            threshold <= now,
        )
        .order_by(Card.critical_before)
    )
    if limit is not None:
        query = query.limit(limit)
    return list(session.execute(query).scalars())


def count_at_risk_cards(session: Session, user_id: str, now: datetime) -> dict:
    """Counts of due cards past the high-risk and critical thresholds."""
    base = (
        select(func.count())
        .select_from(Card)
        .where(
            Card.user_id == user_id,
            Card.deleted_at.is_(None),
            Card.next_review <= now,
        )
    )
    critical = session.execute(
        base.where(Card.critical_before.is_not(None), Card.critical_before <= now)
    ).scalar_one()
    high_risk = session.execute(
        base.where(Card.high_risk_before.is_not(None), Card.high_risk_before <= now)
    ).scalar_one()
    return {"critical": critical, "high_risk": high_risk}


# ---- Review log ----

def append_review_log(
    session: Session,
    user_id: str,
    card_id: str,
    event: ReviewEventRecord
) -> ReviewLog:
    """Append one audit row (never updated afterwards)."""
    row = ReviewLog(
        card_id=card_id,
        user_id=user_id,
        rating=int(event.rating),
        review_time=event.reviewed_at,
        review_date=event.reviewed_at.date(),
        review_state=int(event.review_state),
        review_duration=event.duration_ms,
        shown_at=event.shown_at,
        revealed_at=event.revealed_at,
        session_id=event.session_id,
        scheduled_days=event.scheduled_days,
        elapsed_days=event.elapsed_days,
        stability_before=event.stability_before,
        difficulty_before=event.difficulty_before,
        retrievability_before=event.retrievability_before,
        stability_after=event.stability_after,
        difficulty_after=event.difficulty_after,
        short_stability_after=event.short_stability_after,
    )
    session.add(row)
    return row


def get_recent_reviews(
    session: Session,
    user_id: str,
    since: datetime
) -> list[ReviewLog]:
    return list(
        session.execute(
            select(ReviewLog)
            .where(ReviewLog.user_id == user_id, ReviewLog.review_time >= since)
            .order_by(ReviewLog.review_time)
        ).scalars()
    )


# ---- User parameters ----

@dataclass(frozen=True)
class UserParameters:
    """Scheduling parameters read fresh at the start of every review."""
    weights: WeightVector
    target_retention: float
    learning: LearningConfig
    study_intensity_mode: str = "default"
    learning_enabled_override: Optional[bool] = None


_LEARNING_COLUMNS = {
    "target_retention_short": "learning_target_retention_short",
    "min_interval_minutes": "learning_min_interval_minutes",
    "max_interval_minutes": "learning_max_interval_minutes",
    "graduation_cap_days": "learning_graduation_cap_days",
    "max_attempts_before_graduate": "learning_max_attempts_before_graduate",
    "apply_to_lapses": "learning_apply_to_lapses",
    "lapse_within_days": "learning_lapse_within_days",
}


def get_or_create_settings(session: Session, user_id: str) -> UserSettings:
    settings = session.get(UserSettings, user_id)
    if settings is None:
        settings = UserSettings(
            user_id=user_id,
            target_retention=DEFAULT_TARGET_RETENTION,
            study_intensity_mode="default",
            review_count_since_optimization=0,
        )
        session.add(settings)
        session.flush()
    return settings


def load_user_parameters(session: Session, user_id: str) -> UserParameters:
    """
    Read a user's weights, target retention and learning settings.

    Missing settings give library defaults. Stored learning values that fail
    validation fall back to their defaults individually.

    Raises:
        ConfigurationError: stored weights are not exactly 21 finite numbers
    """
    settings = session.get(UserSettings, user_id)
    if settings is None:
        return UserParameters(
            weights=DEFAULT_WEIGHTS,
            target_retention=DEFAULT_TARGET_RETENTION,
            learning=LearningConfig(),
        )

    weights = DEFAULT_WEIGHTS
    if settings.weights is not None:
        weights = WeightVector.from_sequence(settings.weights)

    target = settings.target_retention
    if target is None or not 0.0 < target < 1.0:
        logger.warning("Invalid target retention %r for user %s; using default", target, user_id)
        target = DEFAULT_TARGET_RETENTION

    return UserParameters(
        weights=weights,
        target_retention=target,
        learning=_learning_config_from_settings(settings),
        study_intensity_mode=settings.study_intensity_mode or "default",
        learning_enabled_override=settings.learning_enabled,
    )


def _learning_config_from_settings(settings: UserSettings) -> LearningConfig:
    values = {}
    for field, column in _LEARNING_COLUMNS.items():
        value = getattr(settings, column)
        if value is None:
            continue
        try:
            LearningConfig(**{field: value})
        except ValidationError:
            logger.warning(
                "Invalid learning setting %s=%r for user %s; using default",
                column, value, settings.user_id,
            )
            continue
        values[field] = value

    raw_params = settings.learning_short_fsrs_params
    if isinstance(raw_params, dict):
        try:
            values["short_term_params"] = ShortTermParams.model_validate(raw_params)
        except ValidationError:
            logger.warning("Invalid short-term params for user %s; using defaults", settings.user_id)

    config = LearningConfig(**values)
    if config.min_interval_minutes > config.max_interval_minutes:
        logger.warning(
            "Learning interval bounds inverted for user %s; using default bounds", settings.user_id
        )
        values.pop("min_interval_minutes", None)
        values.pop("max_interval_minutes", None)
        config = LearningConfig(**values)
    return config


def save_weights(session: Session, user_id: str, weights: WeightVector, now: datetime):
    settings = get_or_create_settings(session, user_id)
    settings.weights = weights.as_list()
    settings.last_optimized_at = now
    settings.review_count_since_optimization = 0


def save_target_retention(session: Session, user_id: str, target_retention: float):
    if not 0.0 < target_retention < 1.0:
        raise ConfigurationError(f"Target retention must be in (0, 1), got {target_retention}")
    settings = get_or_create_settings(session, user_id)
    settings.target_retention = target_retention


def save_short_term_params(session: Session, user_id: str, params: ShortTermParams, now: datetime):
    settings = get_or_create_settings(session, user_id)
    settings.learning_short_fsrs_params = params.model_dump()
    settings.learning_last_optimized_at = now


def increment_review_count(session: Session, user_id: str):
    settings = get_or_create_settings(session, user_id)
    settings.review_count_since_optimization = (settings.review_count_since_optimization or 0) + 1
