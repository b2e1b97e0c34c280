"""
Analytics package exports.
"""

from srs_core.analytics.metrics import summarize_recall, reliability_from_sample_size
from srs_core.analytics.queries import load_review_log_df
from srs_core.analytics.types import RecallSummary, Reliability

__all__ = [
    "summarize_recall",
    "reliability_from_sample_size",
    "load_review_log_df",
    "RecallSummary",
    "Reliability",
]
