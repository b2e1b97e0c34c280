"""
Feature Flags

Per-user feature gating backed by the feature_flags tables:
- a user override wins
- otherwise the flag must be enabled, and the user must fall inside the
  rollout percentage (stable sha256 bucket of "flag_key:user_id")

Lookups never raise: on any database error the caller's fallback is used.
"""

from __future__ import annotations
from collections import OrderedDict
from typing import Callable, Optional
import hashlib
import logging
import time

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from srs_core.fsrs.database import SessionFactory, get_session_factory
from srs_core.fsrs.models import FeatureFlag, FeatureFlagOverride

logger = logging.getLogger(__name__)


FEATURE_FLAGS = {
    "adaptive_retention_policy": "adaptive_retention_policy",
    "day1_short_loop_policy": "day1_short_loop_policy",
    "short_term_learning": "short_term_learning",
}

CACHE_TTL_SECONDS = 30.0
CACHE_MAX_ENTRIES = 5000


def bucket_for_user(user_id: str, flag_key: str) -> int:
    """Stable 0-99 bucket from the first 8 hex digits of sha256("flag:user")."""
    digest = hashlib.sha256(f"{flag_key}:{user_id}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


class FeatureFlagService:
    """
    Cached feature-flag lookups.

    Results (including fallbacks) are cached for CACHE_TTL_SECONDS; the cache
    evicts its oldest entry once CACHE_MAX_ENTRIES is reached.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._session_factory = session_factory
        self._clock = clock
        self._cache: OrderedDict[str, tuple[bool, float]] = OrderedDict()

    def clear_cache(self):
        self._cache.clear()

    def is_enabled_for_user(self, flag_key: str, user_id: str, fallback: bool) -> bool:
        key = f"{flag_key}:{user_id}:{1 if fallback else 0}"
        cached = self._get_cached(key)
        if cached is not None:
            return cached

        try:
            value = self._evaluate(flag_key, user_id, fallback)
        except SQLAlchemyError as exc:
            logger.warning(
                "Feature flag evaluation failed; using fallback "
                "(flag=%s, user=%s, fallback=%s): %s",
                flag_key, user_id, fallback, exc,
            )
            value = fallback

        self._set_cached(key, value)
        return value

    def _evaluate(self, flag_key: str, user_id: str, fallback: bool) -> bool:
        factory = self._session_factory or get_session_factory()
        session = factory()
        try:
            flag = session.execute(
                select(FeatureFlag).where(FeatureFlag.flag_key == flag_key)
            ).scalar_one_or_none()
            if flag is None:
                return fallback

            override = session.get(FeatureFlagOverride, (flag_key, user_id))
            if override is not None:
                return bool(override.enabled)
        finally:
            session.close()

        if not flag.enabled:
            return False

        rollout = max(0, min(100, int(flag.rollout_percentage or 0)))
        if rollout >= 100:
            return True
        if rollout <= 0:
            return False
        return bucket_for_user(user_id, flag_key) < rollout

    def _get_cached(self, key: str) -> Optional[bool]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            del self._cache[key]
            return None
        return value

    def _set_cached(self, key: str, value: bool):
        if key not in self._cache and len(self._cache) >= CACHE_MAX_ENTRIES:
            self._cache.popitem(last=False)
        self._cache[key] = (value, self._clock() + CACHE_TTL_SECONDS)
