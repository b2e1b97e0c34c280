"""
Weight Optimization Contract

The fitting itself happens outside this package (an external FSRS optimizer
run over the exported review log). The only contract is:

    optimizer output = exactly 21 finite floats, or a failure

A failed or invalid fit is reported as OptimizationResult(success=False)
and never touches the stored parameters. A valid fit is committed in its
own transaction, so an aborted job leaves the last-good weights in place.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence
import logging

from pydantic import ValidationError
from sqlalchemy import func, select

from srs_core.fsrs.database import (
    ReviewPersistenceError,
    SessionFactory,
    save_short_term_params,
    save_weights,
    session_scope,
)
from srs_core.fsrs.constants import Rating
from srs_core.fsrs.memory_state import elapsed_days, parse_timestamp
from srs_core.fsrs.models import ReviewLog, UserSettings
from srs_core.fsrs.stm_updates import ShortTermParams
from srs_core.fsrs.weights import ConfigurationError, WeightVector

logger = logging.getLogger(__name__)


# Eligibility thresholds
MIN_REVIEW_COUNT_FIRST = 400
MIN_REVIEW_COUNT_SUBSEQUENT = 200
MIN_DAYS_SINCE_LAST_OPT = 14


class WeightOptimizer(Protocol):
    def fit(self, review_log: list[dict]) -> Sequence[float]:
        ...


class ShortTermOptimizer(Protocol):
    def fit(self, review_log: list[dict]) -> Mapping:
        ...


@dataclass(frozen=True)
class OptimizationResult:
    success: bool
    message: str
    weights: Optional[list[float]] = None
    short_term_params: Optional[ShortTermParams] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class OptimizationEligibility:
    eligible: bool
    reason: str
    total_reviews: int
    new_reviews: int
    days_since_last: Optional[float]


def check_eligibility(
    total_reviews: int,
    new_reviews: int,
    last_optimized_at: Optional[datetime],
    now: datetime
) -> OptimizationEligibility:
    """
    First run: at least 400 reviews in total.
    Later runs: at least 200 new reviews, or 14 days since the last run.
    """
    last = parse_timestamp(last_optimized_at)
    if last is None:
        eligible = total_reviews >= MIN_REVIEW_COUNT_FIRST
        reason = "first_run" if eligible else "not_enough_reviews"
        return OptimizationEligibility(eligible, reason, total_reviews, new_reviews, None)

    days = max(0.0, elapsed_days(last, now))
    if new_reviews >= MIN_REVIEW_COUNT_SUBSEQUENT:
        return OptimizationEligibility(True, "enough_new_reviews", total_reviews, new_reviews, days)
    if days >= MIN_DAYS_SINCE_LAST_OPT:
        return OptimizationEligibility(True, "enough_time_passed", total_reviews, new_reviews, days)
    return OptimizationEligibility(False, "too_soon", total_reviews, new_reviews, days)


def export_review_log(session, user_id: str) -> list[dict]:
    """
    Review log rows in the optimizer's input schema.

    Columns: card_id, review_time (epoch ms), review_rating, review_state,
    review_duration.
    """
    rows = session.execute(
        select(ReviewLog)
        .where(ReviewLog.user_id == user_id, ReviewLog.review_time.is_not(None))
        .order_by(ReviewLog.review_time)
    ).scalars()
    exported = []
    for row in rows:
        review_time = parse_timestamp(row.review_time)
        exported.append({
            "card_id": row.card_id,
            "review_time": int(review_time.timestamp() * 1000),
            "review_rating": row.rating,
            "review_state": row.review_state,
            "review_duration": row.review_duration,
        })
    return exported


def get_eligibility(session, user_id: str, now: datetime) -> OptimizationEligibility:
    total = session.execute(
        select(func.count(ReviewLog.id)).where(ReviewLog.user_id == user_id)
    ).scalar_one()
    settings = session.get(UserSettings, user_id)
    new_reviews = (settings.review_count_since_optimization or 0) if settings else total
    last = settings.last_optimized_at if settings else None
    return check_eligibility(total, new_reviews, last, now)


def run_weight_optimization(
    user_id: str,
    optimizer: WeightOptimizer,
    now: datetime,
    session_factory: Optional[SessionFactory] = None,
    force: bool = False
) -> OptimizationResult:
    """
    Fit and commit new long-term weights for one user.

    Args:
        user_id: User to optimize
        optimizer: External fitting backend
        now: Current time (recorded as last_optimized_at)
        session_factory: Session source (defaults to the configured database)
        force: Skip the eligibility check

    Returns:
        OptimizationResult; failures are reported, never raised
    """
    with session_scope(session_factory) as session:
        eligibility = get_eligibility(session, user_id, now)
        if not force and not eligibility.eligible:
            return OptimizationResult(
                success=False,
                message=f"Optimization not needed yet ({eligibility.reason})",
            )
        review_log = export_review_log(session, user_id)

    if not review_log:
        return OptimizationResult(success=False, message="No review logs found for user")

    try:
        raw = optimizer.fit(review_log)
    except Exception as exc:  # external backend: any failure is non-fatal
        logger.warning("Weight optimizer failed for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Optimization failed", error=str(exc))

    try:
        weights = WeightVector.from_sequence(raw)
    except ConfigurationError as exc:
        logger.warning("Rejected optimizer output for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Optimizer returned invalid weights", error=str(exc))

    try:
        with session_scope(session_factory) as session:
            save_weights(session, user_id, weights, now)
    except ReviewPersistenceError as exc:
        logger.warning("Could not store optimized weights for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Could not store weights", error=str(exc))

    logger.info("Stored optimized weights for user %s (%d reviews)", user_id, len(review_log))
    return OptimizationResult(
        success=True,
        message=f"Optimized on {len(review_log)} reviews",
        weights=weights.as_list(),
    )


def run_short_term_optimization(
    user_id: str,
    optimizer: ShortTermOptimizer,
    now: datetime,
    session_factory: Optional[SessionFactory] = None
) -> OptimizationResult:
    """
    Fit and commit short-term (learning phase) parameters for one user.

    The result must validate as ShortTermParams and contain at least one
    usable value; otherwise nothing is stored.
    """
    with session_scope(session_factory) as session:
        review_log = export_review_log(session, user_id)

    if not review_log:
        return OptimizationResult(success=False, message="No review logs found for user")

    try:
        raw = optimizer.fit(review_log)
    except Exception as exc:  # external backend: any failure is non-fatal
        logger.warning("Short-term optimizer failed for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Optimization failed", error=str(exc))

    try:
        params = ShortTermParams.model_validate(raw)
    except ValidationError as exc:
        logger.warning("Rejected short-term optimizer output for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Optimizer returned invalid parameters", error=str(exc))

    if not _has_usable_value(params):
        return OptimizationResult(success=False, message="Optimizer returned no usable parameters")

    try:
        with session_scope(session_factory) as session:
            save_short_term_params(session, user_id, params, now)
    except ReviewPersistenceError as exc:
        logger.warning("Could not store short-term params for user %s: %s", user_id, exc)
        return OptimizationResult(success=False, message="Could not store parameters", error=str(exc))

    logger.info("Stored short-term params for user %s", user_id)
    return OptimizationResult(success=True, message="Short-term parameters updated", short_term_params=params)


def _has_usable_value(params: ShortTermParams) -> bool:
    if params.after_again() is not None:
        return True
    return any(
        params.initial_for(rating) is not None or params.growth_for(rating) is not None
        for rating in Rating
    )
