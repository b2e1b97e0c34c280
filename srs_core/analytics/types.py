"""
Types for recall analytics.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional


Reliability = Literal["low", "medium", "high"]


@dataclass(frozen=True)
class RecallSummary:
    """
    Calibration metrics over a trailing window of the review log.
    """
    window_days: int
    review_count: int
    session_count: int
    observed_recall_rate: Optional[float]  # Share of reviews rated Hard/Good/Easy
    avg_predicted_recall: Optional[float]  # Mean retrievability_before
    brier_score: Optional[float]  # Mean (R_before - outcome)^2
    reliability: Reliability
