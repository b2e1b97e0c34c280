"""
Short Loop Policy - Same-Day Reinsertion

After each rating of a card that is still being learned, decide whether to
show it again later today, stop for today, or leave it to the long-term
scheduler.

Decision table (first match wins):
1. not a candidate                          -> graduate_to_fsrs (not_candidate)
2. reviews today >= cap for the study mode  -> defer (max_reps)
3. fatigue >= threshold and >= 2 reviews    -> defer (fatigue_throttle)
4. success after a success earlier today    -> graduate_to_fsrs (graduated)
5. otherwise                                -> reinsert_today (retry / confirm_success)

A card is a candidate when it has no long-term stability yet, is marked
important, or was rated Again/Hard.

Counters live in a store keyed by (user, card, calendar day) and are
upserted once per review; a new day starts from zero.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Literal, Optional, Protocol
import logging
import math

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from srs_core.config import ShortLoopConfig, StudyIntensityMode
from srs_core.fsrs.constants import Rating, to_rating
from srs_core.fsrs.memory_state import ensure_utc
from srs_core.fsrs.models import CardDailyLoopState, ReviewLog
from srs_core.policies.feature_flags import FEATURE_FLAGS, FeatureFlagService

logger = logging.getLogger(__name__)


ShortLoopAction = Literal["reinsert_today", "defer", "graduate_to_fsrs"]

MODE_FACTORS = {"light": 1.35, "default": 1.0, "intensive": 0.8}
# Stored as importance_multiplier on the day row
MODE_MULTIPLIERS = {"light": 1.3, "default": 1.0, "intensive": 0.8}
RATING_FACTORS = {
    Rating.AGAIN: 1.35,
    Rating.HARD: 1.15,
    Rating.GOOD: 0.9,
    Rating.EASY: 0.75,
}
IMPORTANT_CARD_FACTOR = 0.85
MIN_REVIEWS_BEFORE_FATIGUE_THROTTLE = 2


@dataclass(frozen=True)
class ShortLoopDecision:
    enabled: bool
    action: ShortLoopAction
    reason: str
    next_gap_seconds: Optional[int]
    loop_iteration: int
    fatigue_score: Optional[float]
    importance_mode: StudyIntensityMode


@dataclass(frozen=True)
class LoopCard:
    """The card fields the policy looks at, as they were before the review."""
    card_id: str
    stability: Optional[float]
    difficulty: Optional[float]
    is_important: bool = False


@dataclass(frozen=True)
class DailyLoopState:
    iteration: int = 0
    reviews_today: int = 0
    consecutive_successes: int = 0
    consecutive_failures: int = 0
    last_rating: Optional[int] = None
    last_gap_seconds: Optional[int] = None
    next_short_loop_at: Optional[datetime] = None
    fatigue_score: Optional[float] = None
    session_id: Optional[str] = None
    is_active: bool = False
    importance_multiplier: Optional[float] = None
    difficulty_multiplier: Optional[float] = None
    confidence_multiplier: Optional[float] = None


@dataclass(frozen=True)
class SessionStats:
    """Aggregates over the reviews already logged in the current session."""
    review_count: int
    fail_ratio: float
    avg_duration_ms: Optional[float]


# ---- Pure policy ----

def normalize_mode(mode: Optional[str]) -> StudyIntensityMode:
    if mode in ("light", "intensive"):
        return mode
    return "default"


def estimate_fatigue(stats: Optional[SessionStats]) -> Optional[float]:
    """
    Fatigue score in [0, 1] from the current session.

    Formula:
        min(1, fail_ratio * 0.5 + min(1, n / 50) * 0.3 + min(1, avg_ms / 12000) * 0.2)

    Returns:
        None without a session, 0 for a session with no reviews yet
    """
    if stats is None:
        return None
    if stats.review_count <= 0:
        return 0.0
    fatigue = (
        stats.fail_ratio * 0.5
        + min(1.0, stats.review_count / 50.0) * 0.3
        + min(1.0, (stats.avg_duration_ms or 0.0) / 12000.0) * 0.2
    )
    return max(0.0, min(1.0, fatigue))


def difficulty_factor(difficulty: Optional[float]) -> float:
    if difficulty is None:
        return 1.0
    return max(0.75, min(1.75, difficulty / 5.0))


def adaptive_gap_seconds(
    config: ShortLoopConfig,
    card: LoopCard,
    rating: Rating,
    iteration: int,
    fatigue: Optional[float],
    mode: StudyIntensityMode
) -> int:
    """
    Seconds until the card is shown again today.

    Formula:
        gap = min_gap * 2^iteration * difficulty * fatigue * mode * importance * rating

    Clamped to [min_gap_seconds, max_gap_seconds].
    """
    base = config.min_gap_seconds * (2 ** max(0, iteration))
    gap = (
        base
        * difficulty_factor(card.difficulty)
        * (1.0 + (fatigue or 0.0) * 0.8)
        * MODE_FACTORS[mode]
        * (IMPORTANT_CARD_FACTOR if card.is_important else 1.0)
        * RATING_FACTORS[rating]
    )
    return int(max(config.min_gap_seconds, min(config.max_gap_seconds, math.floor(gap + 0.5))))


def is_candidate(card: LoopCard, rating: Rating) -> bool:
    return card.stability is None or card.is_important or rating <= Rating.HARD


def decide(
    config: ShortLoopConfig,
    card: LoopCard,
    rating: Rating | int,
    state: Optional[DailyLoopState],
    fatigue: Optional[float],
    mode: Optional[str] = "default"
) -> ShortLoopDecision:
    """Apply the decision table to today's counters. No side effects."""
    rating = to_rating(rating)
    mode = normalize_mode(mode)
    state = state or DailyLoopState()

    gap = None
    if not is_candidate(card, rating):
        action, reason = "graduate_to_fsrs", "not_candidate"
    elif state.reviews_today >= config.max_reps(mode):
        action, reason = "defer", "max_reps"
    elif (fatigue or 0.0) >= config.fatigue_threshold and state.reviews_today >= MIN_REVIEWS_BEFORE_FATIGUE_THROTTLE:
        action, reason = "defer", "fatigue_throttle"
    elif rating >= Rating.GOOD and state.consecutive_successes >= 1:
        action, reason = "graduate_to_fsrs", "graduated"
    else:
        action = "reinsert_today"
        reason = "retry" if rating <= Rating.HARD else "confirm_success"
        gap = adaptive_gap_seconds(config, card, rating, state.iteration, fatigue, mode)

    return ShortLoopDecision(
        enabled=True,
        action=action,
        reason=reason,
        next_gap_seconds=gap,
        loop_iteration=state.iteration + 1,
        fatigue_score=fatigue,
        importance_mode=mode,
    )


def disabled_decision(mode: Optional[str] = "default") -> ShortLoopDecision:
    return ShortLoopDecision(
        enabled=False,
        action="graduate_to_fsrs",
        reason="feature_disabled",
        next_gap_seconds=None,
        loop_iteration=0,
        fatigue_score=None,
        importance_mode=normalize_mode(mode),
    )


def next_state(
    previous: Optional[DailyLoopState],
    decision: ShortLoopDecision,
    card: LoopCard,
    rating: Rating,
    now: datetime,
    session_id: Optional[str] = None
) -> DailyLoopState:
    """Counters after this review (successes reset unless Good/Easy, failures unless Again)."""
    previous = previous or DailyLoopState()
    gap = decision.next_gap_seconds
    return DailyLoopState(
        iteration=previous.iteration + 1,
        reviews_today=previous.reviews_today + 1,
        consecutive_successes=previous.consecutive_successes + 1 if rating >= Rating.GOOD else 0,
        consecutive_failures=previous.consecutive_failures + 1 if rating == Rating.AGAIN else 0,
        last_rating=int(rating),
        last_gap_seconds=gap,
        next_short_loop_at=now + timedelta(seconds=gap) if gap is not None else None,
        fatigue_score=decision.fatigue_score,
        session_id=session_id,
        is_active=decision.action == "reinsert_today",
        importance_multiplier=MODE_MULTIPLIERS[decision.importance_mode],
        difficulty_multiplier=difficulty_factor(card.difficulty),
        confidence_multiplier=1.1 if rating >= Rating.GOOD else 0.9,
    )


# ---- Day-scoped store ----

class DailyLoopStore(Protocol):
    def get(self, user_id: str, card_id: str, loop_date: date) -> Optional[DailyLoopState]:
        ...

    def upsert(self, user_id: str, card_id: str, loop_date: date, state: DailyLoopState, now: datetime):
        ...


class InMemoryDailyLoopStore:
    """Dict keyed by (user, card, day)."""

    def __init__(self):
        self.rows: dict[tuple[str, str, date], DailyLoopState] = {}

    def get(self, user_id: str, card_id: str, loop_date: date) -> Optional[DailyLoopState]:
        return self.rows.get((user_id, card_id, loop_date))

    def upsert(self, user_id: str, card_id: str, loop_date: date, state: DailyLoopState, now: datetime):
        self.rows[(user_id, card_id, loop_date)] = state


class SqlDailyLoopStore:
    """card_daily_loop_state rows, read and written inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, user_id: str, card_id: str, loop_date: date) -> Optional[DailyLoopState]:
        row = self.session.get(CardDailyLoopState, (user_id, card_id, loop_date))
        if row is None:
            return None
        return DailyLoopState(
            iteration=row.iteration or 0,
            reviews_today=row.reviews_today or 0,
            consecutive_successes=row.consecutive_successes or 0,
            consecutive_failures=row.consecutive_failures or 0,
            last_rating=row.last_rating,
            last_gap_seconds=row.last_gap_seconds,
            next_short_loop_at=row.next_short_loop_at,
            fatigue_score=row.fatigue_score,
            session_id=row.session_id,
            is_active=bool(row.is_active),
            importance_multiplier=row.importance_multiplier,
            difficulty_multiplier=row.difficulty_multiplier,
            confidence_multiplier=row.confidence_multiplier,
        )

    def upsert(self, user_id: str, card_id: str, loop_date: date, state: DailyLoopState, now: datetime):
        row = self.session.get(CardDailyLoopState, (user_id, card_id, loop_date))
        if row is None:
            row = CardDailyLoopState(user_id=user_id, card_id=card_id, loop_date=loop_date)
            self.session.add(row)
        row.iteration = state.iteration
        row.reviews_today = state.reviews_today
        row.consecutive_successes = state.consecutive_successes
        row.consecutive_failures = state.consecutive_failures
        row.last_rating = state.last_rating
        row.last_gap_seconds = state.last_gap_seconds
        row.next_short_loop_at = state.next_short_loop_at
        row.fatigue_score = state.fatigue_score
        row.session_id = state.session_id
        row.is_active = state.is_active
        row.importance_multiplier = state.importance_multiplier
        row.difficulty_multiplier = state.difficulty_multiplier
        row.confidence_multiplier = state.confidence_multiplier
        row.updated_at = now


def load_session_stats(session: Session, user_id: str, session_id: Optional[str]) -> Optional[SessionStats]:
    """Aggregate the review log of one study session (None without a session id)."""
    if not session_id:
        return None
    review_count, failures, avg_duration = session.execute(
        select(
            func.count(ReviewLog.id),
            func.sum(case((ReviewLog.rating == 1, 1), else_=0)),
            func.avg(ReviewLog.review_duration),
        ).where(ReviewLog.user_id == user_id, ReviewLog.session_id == session_id)
    ).one()
    review_count = int(review_count or 0)
    if review_count == 0:
        return SessionStats(review_count=0, fail_ratio=0.0, avg_duration_ms=None)
    return SessionStats(
        review_count=review_count,
        fail_ratio=float(failures or 0) / review_count,
        avg_duration_ms=float(avg_duration) if avg_duration is not None else None,
    )


# ---- Policy ----

class ShortLoopPolicy:
    """
    Feature-gated short-loop evaluation.

    The governing flag is day1_short_loop_policy, with config.enabled as
    the fallback when the flag is missing or cannot be read.
    """

    def __init__(self, config: ShortLoopConfig, flags: Optional[FeatureFlagService] = None):
        self.config = config
        self.flags = flags

    def is_enabled(self, user_id: str) -> bool:
        if self.flags is None:
            return self.config.enabled
        return self.flags.is_enabled_for_user(
            FEATURE_FLAGS["day1_short_loop_policy"], user_id, fallback=self.config.enabled
        )

    def evaluate_and_persist(
        self,
        store: DailyLoopStore,
        user_id: str,
        card: LoopCard,
        rating: Rating | int,
        now: datetime,
        session_stats: Optional[SessionStats] = None,
        session_id: Optional[str] = None,
        mode: Optional[str] = "default"
    ) -> ShortLoopDecision:
        """
        Decide for one review and upsert today's counters.

        When the feature is disabled nothing is read or written.
        """
        rating = to_rating(rating)
        if not self.is_enabled(user_id):
            return disabled_decision(mode)

        loop_date = ensure_utc(now).date()
        previous = store.get(user_id, card.card_id, loop_date)
        fatigue = estimate_fatigue(session_stats)
        decision = decide(self.config, card, rating, previous, fatigue, mode)

        store.upsert(
            user_id,
            card.card_id,
            loop_date,
            next_state(previous, decision, card, rating, now, session_id),
            now,
        )
        logger.debug(
            "Short loop for card %s: %s (%s), gap=%s",
            card.card_id, decision.action, decision.reason, decision.next_gap_seconds,
        )
        return decision
