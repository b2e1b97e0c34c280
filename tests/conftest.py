"""Pytest configuration and shared fixtures.

Every test that touches the database gets its own SQLite file under
tmp_path, with all tables created.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine

from srs_core.fsrs.database import (
    apply_phase_to_card,
    create_card,
    get_card,
    init_db,
    make_session_factory,
    session_scope,
)
from srs_core.fsrs.memory_state import MemoryState, compute_risk_timestamps
from srs_core.fsrs.models import ReviewLog, UserSettings
from srs_core.fsrs.phases import ReviewCard
from srs_core.fsrs.weights import DEFAULT_WEIGHTS


# Noon UTC, so minute-scale reviews stay on the same calendar day
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
USER_ID = "user-1"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def weights():
    return DEFAULT_WEIGHTS


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def make_card(session_factory, now):
    """Create a card and return its id."""
    def _make(user_id=USER_ID, front="het huis", back="the house", is_important=False):
        with session_scope(session_factory) as session:
            card = create_card(session, user_id, front, back, now, is_important=is_important)
            return card.id
    return _make


@pytest.fixture
def make_graduated_card(session_factory, make_card, now):
    """Create a card already in the Review phase."""
    def _make(stability=10.0, difficulty=5.0, days_ago=9.0, due_in_hours=2.0, user_id=USER_ID):
        card_id = make_card(user_id=user_id)
        memory = MemoryState(
            stability=stability,
            difficulty=difficulty,
            last_review=now - timedelta(days=days_ago),
            next_review=now + timedelta(hours=due_in_hours),
        )
        with session_scope(session_factory) as session:
            card = get_card(session, user_id, card_id)
            apply_phase_to_card(
                card,
                ReviewCard(memory=memory, graduated_at=memory.last_review),
                compute_risk_timestamps(memory),
            )
        return card_id
    return _make


@pytest.fixture
def make_settings(session_factory):
    """Store a user_settings row with the given column values."""
    def _make(user_id=USER_ID, **columns):
        with session_scope(session_factory) as session:
            session.add(UserSettings(user_id=user_id, **columns))
    return _make


@pytest.fixture
def add_review_logs(session_factory):
    """Insert review log rows: one per (rating, retrievability_before, minutes_ago)."""
    def _add(rows, user_id=USER_ID, card_id="card-1", session_id=None, now=NOW):
        with session_scope(session_factory) as session:
            for rating, retrievability, minutes_ago in rows:
                reviewed_at = now - timedelta(minutes=minutes_ago)
                session.add(ReviewLog(
                    card_id=card_id,
                    user_id=user_id,
                    rating=rating,
                    review_time=reviewed_at,
                    review_date=reviewed_at.date(),
                    review_state=2,
                    review_duration=4000,
                    session_id=session_id,
                    scheduled_days=1.0,
                    elapsed_days=minutes_ago / 1440,
                    retrievability_before=retrievability,
                ))
    return _add
