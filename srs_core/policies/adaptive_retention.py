"""
Adaptive Retention Policy

Recommends moving a user's target retention by one step, based on how well
the model's predictions matched what actually happened over a trailing
window:

- observed recall more than 5pp below predicted   -> raise target
- observed recall more than 5pp above predicted   -> lower target
- Brier score above 0.22 (poor calibration)       -> raise target
- heavy load (> 600 reviews) with recall above 0.9
  and good calibration (Brier < 0.18 or unknown)  -> lower target

Nothing is recommended without enough evidence (300 reviews or 20 sessions)
and a sample that is not of low reliability.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional
import logging
import math

from sqlalchemy.orm import Session

from srs_core.analytics import RecallSummary, load_review_log_df, summarize_recall
from srs_core.config import AdaptiveRetentionConfig
from srs_core.fsrs.database import save_target_retention
from srs_core.fsrs.models import UserSettings
from srs_core.policies.feature_flags import FEATURE_FLAGS, FeatureFlagService

logger = logging.getLogger(__name__)


Confidence = Literal["low", "medium", "high"]

RECALL_GAP_THRESHOLD = 0.05
HIGH_BRIER_SCORE = 0.22
GOOD_BRIER_SCORE = 0.18
HIGH_LOAD_REVIEWS = 600
GOOD_RECALL_RATE = 0.9


@dataclass(frozen=True)
class RetentionRecommendation:
    enabled: bool
    current_target: float
    recommended_target: float
    confidence: Confidence
    reasons: tuple[str, ...]
    review_count: int
    session_count: int
    reliability: str

    @property
    def changed(self) -> bool:
        return not math.isclose(self.recommended_target, self.current_target, abs_tol=1e-9)


def round_to_step(value: float, step: float) -> float:
    return round(math.floor(value / step + 0.5) * step, 6)


def recommend_target(
    config: AdaptiveRetentionConfig,
    current_target: float,
    summary: RecallSummary,
    enabled: bool = True
) -> RetentionRecommendation:
    """
    Pure recommendation from a recall summary.

    Returns:
        RetentionRecommendation; the target is unchanged with low confidence
        when disabled or when evidence is insufficient
    """
    def keep(reason: str, is_enabled: bool) -> RetentionRecommendation:
        return RetentionRecommendation(
            enabled=is_enabled,
            current_target=current_target,
            recommended_target=current_target,
            confidence="low",
            reasons=(reason,),
            review_count=summary.review_count,
            session_count=summary.session_count,
            reliability=summary.reliability,
        )

    if not enabled:
        return keep("adaptive_retention_disabled", False)

    enough_evidence = (
        summary.review_count >= config.min_reviews_for_confidence
        or summary.session_count >= config.min_sessions_for_confidence
    )
    if not enough_evidence or summary.reliability == "low":
        return keep("insufficient_evidence", True)

    recommended = current_target
    reasons: list[str] = []
    observed = summary.observed_recall_rate
    predicted = summary.avg_predicted_recall
    brier = summary.brier_score

    if observed is not None and predicted is not None:
        gap = observed - predicted
        if gap < -RECALL_GAP_THRESHOLD:
            recommended += config.step
            reasons.append("observed_below_predicted")
        elif gap > RECALL_GAP_THRESHOLD:
            recommended -= config.step
            reasons.append("observed_above_predicted")

    if brier is not None and brier > HIGH_BRIER_SCORE:
        recommended += config.step
        reasons.append("high_brier_score")

    if (
        summary.review_count > HIGH_LOAD_REVIEWS
        and observed is not None
        and observed > GOOD_RECALL_RATE
        and (brier is None or brier < GOOD_BRIER_SCORE)
    ):
        recommended -= config.step
        reasons.append("high_load_with_good_recall")

    if not reasons:
        reasons.append("stable_keep_current")

    low = min(config.min_target, config.max_target)
    high = max(config.min_target, config.max_target)
    recommended = max(low, min(high, round_to_step(recommended, config.step)))

    confidence: Confidence = (
        "high" if summary.reliability == "high" and summary.review_count >= HIGH_LOAD_REVIEWS else "medium"
    )
    return RetentionRecommendation(
        enabled=True,
        current_target=current_target,
        recommended_target=recommended,
        confidence=confidence,
        reasons=tuple(reasons),
        review_count=summary.review_count,
        session_count=summary.session_count,
        reliability=summary.reliability,
    )


class AdaptiveRetentionPolicy:
    """
    Out-of-band retention tuning for one user at a time.

    Runs outside the review path; it communicates with reviews only through
    the persisted target_retention.
    """

    def __init__(self, config: AdaptiveRetentionConfig, flags: Optional[FeatureFlagService] = None):
        self.config = config
        self.flags = flags

    def is_enabled(self, user_id: str) -> bool:
        if self.flags is None:
            return self.config.enabled
        return self.flags.is_enabled_for_user(
            FEATURE_FLAGS["adaptive_retention_policy"], user_id, fallback=self.config.enabled
        )

    def current_target(self, session: Session, user_id: str) -> float:
        settings = session.get(UserSettings, user_id)
        if settings is None or settings.target_retention is None:
            return self.config.default_target
        return settings.target_retention

    def compute_recommended_target(
        self,
        session: Session,
        user_id: str,
        now: datetime
    ) -> RetentionRecommendation:
        reviews_df = load_review_log_df(session, user_id, now, self.config.window_days)
        summary = summarize_recall(reviews_df, self.config.window_days)
        return recommend_target(
            self.config,
            self.current_target(session, user_id),
            summary,
            enabled=self.is_enabled(user_id),
        )

    def apply_recommendation(
        self,
        session: Session,
        user_id: str,
        recommendation: RetentionRecommendation
    ) -> bool:
        """
        Persist a recommended target (caller owns the transaction).

        Returns:
            True if the stored target changed
        """
        if not recommendation.enabled or recommendation.confidence == "low" or not recommendation.changed:
            return False

        save_target_retention(session, user_id, recommendation.recommended_target)
        logger.info(
            "Target retention for user %s: %.3f -> %.3f (%s)",
            user_id,
            recommendation.current_target,
            recommendation.recommended_target,
            ", ".join(recommendation.reasons),
        )
        return True
