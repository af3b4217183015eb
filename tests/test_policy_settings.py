"""
Policy and Settings Tests

Tests for policy defaults and validation, YAML loading fallbacks and
infrastructure settings.
"""

import pydantic
import pytest

from trust_engine.config import Settings
from trust_engine.policy import DEFAULT_POLICY, LookbackRules, ScoreThresholds, TrustPolicy, load_policy


class TestDefaults:

    def test_score_tiers(self):
        scores = DEFAULT_POLICY.scores
        assert (scores.minimum, scores.reject_service, scores.warning, scores.maximum) == (0, 70, 85, 100)
        assert scores.initial == 100

    def test_behavior_tiers(self):
        behavior = DEFAULT_POLICY.behavior
        assert behavior.horizon_months == 3
        assert behavior.warning_claim_count == 3
        assert behavior.warning_ratio == 0.6

    def test_lookback_windows(self):
        assert DEFAULT_POLICY.lookback.window_days == [30, 90, 365]
        assert DEFAULT_POLICY.lookback.target_orders == 5

    def test_clamp(self):
        assert DEFAULT_POLICY.clamp(-15) == 0
        assert DEFAULT_POLICY.clamp(42) == 42
        assert DEFAULT_POLICY.clamp(130) == 100


class TestValidation:

    @pytest.mark.parametrize("windows", [[30, 90], [90, 30, 365], [30, 90, 365, 730]])
    def test_lookback_windows_must_be_three_ascending(self, windows):
        with pytest.raises(pydantic.ValidationError):
            LookbackRules(window_days=windows)

    def test_tier_order_enforced(self):
        with pytest.raises(pydantic.ValidationError):
            TrustPolicy(scores=ScoreThresholds(reject_service=90, warning=85))

    def test_initial_within_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            TrustPolicy(scores=ScoreThresholds(initial=120))

    def test_fingerprint(self):
        same = TrustPolicy(version="1.0.0", description="Default trust & risk policy")
        changed = TrustPolicy(scores=ScoreThresholds(warning=80))

        assert same.fingerprint() == DEFAULT_POLICY.fingerprint()
        assert changed.fingerprint() != DEFAULT_POLICY.fingerprint()
        assert len(DEFAULT_POLICY.fingerprint()) == 16


class TestLoadPolicy:

    def test_missing_file_uses_default(self, tmp_path, caplog):
        policy = load_policy(tmp_path / "missing.yaml")

        assert policy is DEFAULT_POLICY
        assert "not found" in caplog.text

    def test_invalid_yaml_uses_default(self, tmp_path, caplog):
        path = tmp_path / "policy.yaml"
        path.write_text("scores: [unclosed\n")

        assert load_policy(path) is DEFAULT_POLICY
        assert "Policy load failed" in caplog.text

    def test_invalid_values_use_default(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text("scores:\n  reject_service: 95\n  warning: 85\n")

        assert load_policy(path) is DEFAULT_POLICY

    def test_override(self, tmp_path):
        path = tmp_path / "policy.yaml"
        path.write_text(
            "version: '2.1.0'\n"
            "scores:\n"
            "  warning: 80\n"
            "food_safety:\n"
            "  report_threshold: 5\n"
        )

        policy = load_policy(path)

        assert policy.version == "2.1.0"
        assert policy.scores.warning == 80
        assert policy.scores.reject_service == 70
        assert policy.food_safety.report_threshold == 5


class TestSettings:

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for key in ["APP_ENV", "POSTGRES_PASSWORD", "POSTGRES_HOST", "REDIS_PASSWORD", "REDIS_HOST", "TASK_BACKEND"]:
            monkeypatch.delenv(key, raising=False)

    def test_urls(self, monkeypatch):
        monkeypatch.setenv("POSTGRES_PASSWORD", "pw")
        monkeypatch.setenv("REDIS_PASSWORD", "secret")

        settings = Settings(_env_file=None)

        assert settings.postgres_url == "postgresql+asyncpg://trust_user:pw@localhost:5432/trust_engine"
        assert settings.redis_url == "redis://:secret@localhost:6379/0"

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.task_backend == "inprocess"
        assert settings.redis_url == "redis://localhost:6379/0"
        assert settings.read_timeout_seconds == 2.0

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("TASK_BACKEND", "redis")

        assert Settings(_env_file=None).task_backend == "redis"

    def test_production_requires_database_password(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")

        with pytest.raises(ValueError) as excinfo:
            Settings(_env_file=None)

        assert "POSTGRES_PASSWORD" in str(excinfo.value)

    def test_production_allows_with_password(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        monkeypatch.setenv("POSTGRES_PASSWORD", "pw")

        assert Settings(_env_file=None).app_env == "production"
