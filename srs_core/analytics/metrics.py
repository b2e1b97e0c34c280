"""
Recall calibration metrics.

Feeds the adaptive retention policy: how often the learner actually
recalls cards versus how often the model predicted they would.
"""

from __future__ import annotations

from typing import Optional

import pandas as pd

from srs_core.analytics.types import Reliability, RecallSummary


DEFAULT_WINDOW_DAYS = 30


def reliability_from_sample_size(sample_size: int) -> Reliability:
    if sample_size < 50:
        return "low"
    if sample_size < 200:
        return "medium"
    return "high"


def compute_observed_recall(reviews_df: pd.DataFrame) -> Optional[float]:
    """
    Share of reviews that were passed (rating >= 2).
    """
    if reviews_df.empty:
        return None
    return float((reviews_df["rating"] >= 2).mean())


def compute_avg_predicted_recall(reviews_df: pd.DataFrame) -> Optional[float]:
    if reviews_df.empty:
        return None
    predicted = reviews_df["retrievability_before"].dropna()
    if predicted.empty:
        return None
    return float(predicted.mean())


def compute_brier_score(reviews_df: pd.DataFrame) -> Optional[float]:
    """
    Mean squared error between predicted recall and the pass/fail outcome.

    Reviews without a prediction (new cards) are ignored.
    """
    if reviews_df.empty:
        return None
    scored = reviews_df.dropna(subset=["retrievability_before"])
    if scored.empty:
        return None
    outcome = (scored["rating"] >= 2).astype("float64")
    return float(((scored["retrievability_before"] - outcome) ** 2).mean())


def compute_session_count(reviews_df: pd.DataFrame) -> int:
    if reviews_df.empty:
        return 0
    return int(reviews_df["session_id"].dropna().nunique())


def summarize_recall(reviews_df: pd.DataFrame, window_days: int = DEFAULT_WINDOW_DAYS) -> RecallSummary:
    """
    Build the recall summary for one user's windowed review log.
    """
    review_count = int(len(reviews_df))
    return RecallSummary(
        window_days=window_days,
        review_count=review_count,
        session_count=compute_session_count(reviews_df),
        observed_recall_rate=compute_observed_recall(reviews_df),
        avg_predicted_recall=compute_avg_predicted_recall(reviews_df),
        brier_score=compute_brier_score(reviews_df),
        reliability=reliability_from_sample_size(review_count),
    )
