"""
Recompute adaptive target-retention recommendations.

Runs out-of-band (cron / manual). Prints the recommendation per user and,
with --apply, stores targets that changed with at least medium confidence.

Usage:
    python -m scripts.maintenance.tune_target_retention [--apply] [user_id ...]
"""

import argparse
from datetime import datetime, timezone

from sqlalchemy import select

from srs_core.config import load_adaptive_retention_config
from srs_core.fsrs.database import session_scope
from srs_core.fsrs.models import UserSettings
from srs_core.policies.adaptive_retention import AdaptiveRetentionPolicy
from srs_core.policies.feature_flags import FeatureFlagService


def build_parser():
    parser = argparse.ArgumentParser(description="Recompute adaptive target retention per user")
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Store changed targets instead of only printing them"
    )
    parser.add_argument(
        "user_ids",
        nargs="*",
        help="Users to tune (default: every user with settings)"
    )
    return parser


def main(argv=None, session_factory=None, now=None):
    args = build_parser().parse_args(argv)
    now = now or datetime.now(timezone.utc)
    policy = AdaptiveRetentionPolicy(load_adaptive_retention_config(), FeatureFlagService(session_factory))

    with session_scope(session_factory) as session:
        user_ids = args.user_ids
        if not user_ids:
            user_ids = list(session.execute(select(UserSettings.user_id)).scalars())

        for user_id in user_ids:
            rec = policy.compute_recommended_target(session, user_id, now)
            print(
                f"{user_id}: {rec.current_target:.3f} -> {rec.recommended_target:.3f} "
                f"[{rec.confidence}] {', '.join(rec.reasons)} "
                f"({rec.review_count} reviews, {rec.session_count} sessions)"
            )
            if args.apply and policy.apply_recommendation(session, user_id, rec):
                print("  stored")


if __name__ == "__main__":
    main()
