"""
Memory State - Long-Term Card State and Retrievability

Defines the long-term memory state and the quantities derived from it.

Key concepts:
- Stability (S): Days until recall probability decays to 90%
- Difficulty (D): How hard the card is to learn (1-10 scale)
- Retrievability (R): Probability of successful recall at time t

All functions here are pure; "now" is always passed in by the caller.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging
import math

from srs_core.fsrs.constants import (
    CRITICAL_RETRIEVABILITY,
    DAYS_PER_MONTH,
    DAYS_PER_WEEK,
    HIGH_RISK_RETRIEVABILITY,
    HOURS_PER_DAY,
    REFERENCE_RETENTION,
)
from srs_core.fsrs.weights import DEFAULT_WEIGHTS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryState:
    """
    Long-term memory state for a single card.

    Invariant: next_review >= last_review whenever last_review is set.
    """
    stability: float  # S, in days
    difficulty: float  # D, range 1-10
    last_review: Optional[datetime]
    next_review: datetime

    def __post_init__(self):
        if self.last_review is not None and self.next_review < self.last_review:
            raise ValueError(
                f"next_review ({self.next_review}) precedes last_review ({self.last_review})"
            )

    @property
    def anchor(self) -> datetime:
        """Reference point for elapsed time: last review, or next review if never reviewed."""
        return self.last_review if self.last_review is not None else self.next_review


@dataclass(frozen=True)
class RiskTimestamps:
    """Moments at which retrievability falls under the risk thresholds."""
    critical_before: Optional[datetime]  # R < 0.1 from here on
    high_risk_before: Optional[datetime]  # R < 0.5 from here on


# ---- Forgetting curve ----

def curve_factor(decay: float) -> float:
    """f = 0.9^(-1/decay) - 1, chosen so that R(S, S) == 0.9."""
    return math.pow(REFERENCE_RETENTION, -1.0 / decay) - 1.0


def calculate_retrievability(
    elapsed_days: float,
    stability: float,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> float:
    """
    Calculate retrievability with the power forgetting curve.

    Formula: R = (1 + f * t / S) ^ (-decay)

    Where:
    - t = days since last review
    - S = stability in days
    - f = 0.9^(-1/decay) - 1

    Returns:
        Retrievability between 0 and 1 (1 if no time has passed, 0 if S <= 0)
    """
    if elapsed_days <= 0:
        return 1.0
    if stability <= 0:
        return 0.0

    factor = curve_factor(decay)
    return math.pow(1.0 + factor * elapsed_days / stability, -decay)


def days_until_retrievability(
    stability: float,
    retrievability: float,
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> float:
    """
    Inverse of the forgetting curve: days after review at which R reaches a level.

    Formula: t = S / f * (R^(-1/decay) - 1)
    """
    if stability <= 0:
        return 0.0
    if retrievability >= 1.0:
        return 0.0
    factor = curve_factor(decay)
    return stability / factor * (math.pow(retrievability, -1.0 / decay) - 1.0)


def compute_risk_timestamps(
    state: Optional[MemoryState],
    decay: float = DEFAULT_WEIGHTS.forgetting_curve_decay
) -> RiskTimestamps:
    """
    Pre-compute when a card becomes high-risk (R < 0.5) and critical (R < 0.1).

    Stored on the card so "due and at risk" queries need no per-card math.
    """
    if state is None or state.stability <= 0:
        return RiskTimestamps(critical_before=None, high_risk_before=None)

    anchor = state.anchor
    critical = days_until_retrievability(state.stability, CRITICAL_RETRIEVABILITY, decay)
    high_risk = days_until_retrievability(state.stability, HIGH_RISK_RETRIEVABILITY, decay)
    return RiskTimestamps(
        critical_before=anchor + timedelta(days=critical),
        high_risk_before=anchor + timedelta(days=high_risk),
    )


# ---- Time helpers ----

def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sanitize_timestamp(value, now: datetime, field: str = "timestamp") -> datetime:
    """
    Convert a stored timestamp to an aware UTC datetime.

    Malformed or missing values (None, NaN, unparsable strings) fall back to
    `now` so they never reach date arithmetic.
    """
    parsed = parse_timestamp(value)
    if parsed is None:
        logger.warning("Invalid %s %r read from storage; using now", field, value)
        return now
    return parsed


def parse_timestamp(value) -> Optional[datetime]:
    """
    Parse a stored timestamp, returning None if it is missing or malformed.

    Accepts datetimes, ISO-8601 strings and epoch milliseconds.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return ensure_utc(datetime.fromisoformat(value.strip()))
        except ValueError:
            return None
    return None


def elapsed_days(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86400.0


def elapsed_hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def elapsed_minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60.0


def is_same_day(first: datetime, second: datetime) -> bool:
    """Same calendar day (UTC)."""
    return ensure_utc(first).date() == ensure_utc(second).date()


def format_interval_message(days: float) -> str:
    """
    Human-readable description of an interval.

    Examples: "Review again soon", "Review in 3 hours", "Review tomorrow",
    "Review in 2 weeks".
    """
    if days < 1:
        hours = _round_half_up(days * HOURS_PER_DAY)
        if hours < 1:
            return "Review again soon"
        return f"Review in {hours} hour{'s' if hours != 1 else ''}"

    rounded_days = _round_half_up(days)
    if rounded_days == 1:
        return "Review tomorrow"
    if rounded_days < DAYS_PER_WEEK:
        return f"Review in {rounded_days} days"
    if rounded_days < DAYS_PER_MONTH:
        weeks = _round_half_up(rounded_days / DAYS_PER_WEEK)
        return f"Review in {weeks} week{'s' if weeks != 1 else ''}"
    months = _round_half_up(rounded_days / DAYS_PER_MONTH)
    return f"Review in {months} month{'s' if months != 1 else ''}"


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))
