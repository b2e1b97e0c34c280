"""Tests for per-user feature flags."""

import logging

import pytest
from sqlalchemy.exc import OperationalError

from srs_core.fsrs.database import session_scope
from srs_core.fsrs.models import FeatureFlag, FeatureFlagOverride
from srs_core.policies.feature_flags import (
    CACHE_MAX_ENTRIES,
    CACHE_TTL_SECONDS,
    FeatureFlagService,
    bucket_for_user,
)


FLAG = "day1_short_loop_policy"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def flags(session_factory, clock):
    return FeatureFlagService(session_factory, clock=clock)


@pytest.fixture
def add_flag(session_factory):
    def _add(enabled=True, rollout=100, overrides=None):
        with session_scope(session_factory) as session:
            session.add(FeatureFlag(flag_key=FLAG, enabled=enabled, rollout_percentage=rollout))
            for user_id, value in (overrides or {}).items():
                session.add(FeatureFlagOverride(flag_key=FLAG, user_id=user_id, enabled=value))
    return _add


def test_missing_flag_returns_fallback(flags):
    assert flags.is_enabled_for_user(FLAG, "u1", fallback=True)
    assert not flags.is_enabled_for_user(FLAG, "u1", fallback=False)


def test_full_rollout(flags, add_flag):
    add_flag(enabled=True, rollout=100)
    assert flags.is_enabled_for_user(FLAG, "u1", fallback=False)


def test_disabled_flag_ignores_fallback(flags, add_flag):
    add_flag(enabled=False, rollout=100)
    assert not flags.is_enabled_for_user(FLAG, "u1", fallback=True)


def test_zero_rollout(flags, add_flag):
    add_flag(enabled=True, rollout=0)
    assert not flags.is_enabled_for_user(FLAG, "u1", fallback=True)


def test_override_wins(flags, add_flag):
    add_flag(enabled=False, rollout=0, overrides={"u1": True, "u2": False})
    assert flags.is_enabled_for_user(FLAG, "u1", fallback=False)
    assert not flags.is_enabled_for_user(FLAG, "u2", fallback=True)


def test_partial_rollout_uses_stable_bucket(flags, add_flag):
    add_flag(enabled=True, rollout=50)
    for user_id in ("alice", "bob", "carol", "dave", "erin"):
        expected = bucket_for_user(user_id, FLAG) < 50
        assert flags.is_enabled_for_user(FLAG, user_id, fallback=not expected) == expected


def test_bucket_is_deterministic():
    assert bucket_for_user("u1", FLAG) == bucket_for_user("u1", FLAG)
    assert all(0 <= bucket_for_user(f"user-{i}", FLAG) < 100 for i in range(200))


class TestCache:

    def test_value_cached_until_ttl(self, flags, add_flag, session_factory, clock):
        add_flag(enabled=True, rollout=100)
        assert flags.is_enabled_for_user(FLAG, "u1", fallback=False)

        with session_scope(session_factory) as session:
            session.get(FeatureFlag, FLAG).enabled = False

        clock.now += CACHE_TTL_SECONDS - 1
        assert flags.is_enabled_for_user(FLAG, "u1", fallback=False)

        clock.now += 2
        assert not flags.is_enabled_for_user(FLAG, "u1", fallback=False)

    def test_fallback_is_part_of_key(self, flags):
        assert flags.is_enabled_for_user(FLAG, "u1", fallback=True)
        assert not flags.is_enabled_for_user(FLAG, "u1", fallback=False)

    def test_clear_cache(self, flags, add_flag, clock):
        assert not flags.is_enabled_for_user(FLAG, "u1", fallback=False)
        add_flag(enabled=True, rollout=100)
        flags.clear_cache()
        assert flags.is_enabled_for_user(FLAG, "u1", fallback=False)

    def test_oldest_entry_evicted(self, flags):
        for i in range(CACHE_MAX_ENTRIES):
            flags._set_cached(f"key-{i}", True)
        flags.is_enabled_for_user(FLAG, "u1", fallback=True)

        assert len(flags._cache) == CACHE_MAX_ENTRIES
        assert "key-0" not in flags._cache
        assert f"{FLAG}:u1:1" in flags._cache


def test_database_error_returns_fallback(caplog):
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("database is down"))

    flags = FeatureFlagService(broken_session)
    with caplog.at_level(logging.WARNING):
        assert flags.is_enabled_for_user(FLAG, "u1", fallback=True)
    assert "using fallback" in caplog.text
