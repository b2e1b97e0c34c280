"""
Data-loading helpers for analytics.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pandas as pd
from sqlalchemy.orm import Session

from srs_core.fsrs.database import get_recent_reviews


REVIEW_COLUMNS = ["review_time", "rating", "retrievability_before", "session_id"]


def load_review_log_df(session: Session, user_id: str, now: datetime, days: int) -> pd.DataFrame:
    """
    Load a user's review log for the trailing window into a dataframe.
    """
    rows = get_recent_reviews(session, user_id, since=now - timedelta(days=days))
    if not rows:
        return pd.DataFrame(columns=REVIEW_COLUMNS)

    df = pd.DataFrame(
        [
            {
                "review_time": row.review_time,
                "rating": row.rating,
                "retrievability_before": row.retrievability_before,
                "session_id": row.session_id,
            }
            for row in rows
        ]
    )
    df["review_time"] = pd.to_datetime(df["review_time"], utc=True, errors="coerce")
    df["retrievability_before"] = pd.to_numeric(df["retrievability_before"], errors="coerce")
    df = df.dropna(subset=["review_time", "rating"])
    return df.sort_values("review_time").reset_index(drop=True)
