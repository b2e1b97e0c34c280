"""Tests for the out-of-band maintenance scripts."""

import pytest

from scripts.maintenance import tune_target_retention
from srs_core.fsrs.database import session_scope
from srs_core.fsrs.models import UserSettings


USER_ID = "user-1"


@pytest.fixture
def poorly_calibrated_user(make_settings, add_review_logs, monkeypatch):
    monkeypatch.setenv("ADAPTIVE_RETENTION_ENABLED", "true")
    make_settings(target_retention=0.9)
    # Half the reviews fail although the model predicted 90% recall
    add_review_logs([(1 if i % 2 == 0 else 3, 0.9, i) for i in range(320)])


class TestTuneTargetRetention:

    def test_apply_stores_recommendation(self, poorly_calibrated_user, session_factory, now, capsys):
        tune_target_retention.main(["--apply"], session_factory=session_factory, now=now)

        out = capsys.readouterr().out
        assert f"{USER_ID}: 0.900 -> 0.920" in out
        assert "stored" in out
        with session_scope(session_factory) as session:
            assert session.get(UserSettings, USER_ID).target_retention == pytest.approx(0.92)

    def test_without_apply_only_prints(self, poorly_calibrated_user, session_factory, now, capsys):
        tune_target_retention.main([USER_ID], session_factory=session_factory, now=now)

        out = capsys.readouterr().out
        assert "0.900 -> 0.920" in out
        assert "stored" not in out
        with session_scope(session_factory) as session:
            assert session.get(UserSettings, USER_ID).target_retention == pytest.approx(0.9)

    def test_unknown_option_rejected(self, session_factory, now):
        with pytest.raises(SystemExit):
            tune_target_retention.main(["--aply"], session_factory=session_factory, now=now)
