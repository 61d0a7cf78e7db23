"""
Tests for postqueue.config module.

Covers:
    - QueueConfig / SchedulingConfig / ResilienceConfig defaults and validation
    - Settings.from_yaml with files, env overrides and bad input
    - Singleton get_settings / reset_settings behaviour
    - validate_env()
"""

import pytest

from postqueue.config import (
    DEFAULT_RATE_LIMIT_RULES,
    QueueConfig,
    RateLimitRule,
    ResilienceConfig,
    SchedulingConfig,
    Settings,
    get_settings,
    reset_settings,
    validate_env,
)
from postqueue.exceptions import ConfigurationError


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_singleton():
    """Ensure the Settings singleton is cleared before and after each test."""
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def write_settings(tmp_path):
    def _write(text: str):
        path = tmp_path / "settings.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    return _write


# ===========================================================================
# 1. Section dataclasses
# ===========================================================================


class TestQueueConfig:
    def test_defaults(self):
        cfg = QueueConfig()
        assert cfg.batch_size == 50
        assert cfg.default_max_retries == 3
        assert cfg.retry_delays_seconds == [60, 300, 1800]
        assert cfg.sweep_interval_seconds == 60
        assert cfg.stuck_timeout_minutes == 10

    def test_rejects_non_positive_batch(self):
        with pytest.raises(ConfigurationError, match="batch_size"):
            QueueConfig(batch_size=0)

    def test_rejects_empty_ladder(self):
        with pytest.raises(ConfigurationError):
            QueueConfig(retry_delays_seconds=[])

    def test_sweep_must_not_exceed_smallest_delay(self):
        """A slower sweep would make retries visibly late."""
        with pytest.raises(ConfigurationError, match="smallest retry delay"):
            QueueConfig(sweep_interval_seconds=120)
        assert QueueConfig(sweep_interval_seconds=30).sweep_interval_seconds == 30


class TestSchedulingConfig:
    def test_defaults(self):
        cfg = SchedulingConfig()
        assert cfg.conflict_window_minutes == 5
        assert cfg.max_days_ahead == 365
        assert cfg.default_timezone == "UTC"
        assert cfg.approval_length_threshold == 200


class TestResilienceConfig:
    def test_defaults(self):
        cfg = ResilienceConfig()
        assert cfg.failure_threshold == 5
        assert cfg.reset_timeout_seconds == 60.0
        assert "rate_limit" not in cfg.retryable_errors

    def test_default_rate_limit_rules(self):
        assert DEFAULT_RATE_LIMIT_RULES["login"] == RateLimitRule(5, 900, 1800)
        assert DEFAULT_RATE_LIMIT_RULES["general"].max_attempts == 100


# ===========================================================================
# 2. Settings.from_yaml
# ===========================================================================


class TestSettingsFromYaml:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = Settings.from_yaml(tmp_path / "nope.yaml")
        assert settings.log_level == "INFO"
        assert settings.queue == QueueConfig()

    def test_sections_are_loaded(self, write_settings):
        path = write_settings(
            "log_level: DEBUG\n"
            "queue:\n"
            "  batch_size: 10\n"
            "  retry_delays_seconds: [30, 90]\n"
            "  sweep_interval_seconds: 30\n"
            "scheduling:\n"
            "  conflict_window_minutes: 15\n"
            "rate_limits:\n"
            "  login:\n"
            "    max_attempts: 3\n"
            "    window_seconds: 60\n"
            "    block_duration_seconds: 120\n"
        )

        settings = Settings.from_yaml(path)

        assert settings.log_level == "DEBUG"
        assert settings.queue.batch_size == 10
        assert settings.queue.retry_delays_seconds == [30, 90]
        assert settings.scheduling.conflict_window_minutes == 15
        assert settings.rate_limits["login"].max_attempts == 3
        assert settings.rate_limits["general"] == DEFAULT_RATE_LIMIT_RULES["general"]

    def test_empty_file(self, write_settings):
        assert Settings.from_yaml(write_settings("")).queue.batch_size == 50

    def test_env_overrides_yaml(self, write_settings, monkeypatch):
        path = write_settings("queue:\n  batch_size: 10\n")
        monkeypatch.setenv("POSTQUEUE_BATCH_SIZE", "25")
        monkeypatch.setenv("POSTQUEUE_DEFAULT_TIMEZONE", "Europe/Berlin")
        monkeypatch.setenv("POSTQUEUE_LOG_LEVEL", "warning")

        settings = Settings.from_yaml(path)

        assert settings.queue.batch_size == 25
        assert settings.scheduling.default_timezone == "Europe/Berlin"
        assert settings.log_level == "WARNING"

    def test_bad_env_value(self, tmp_path, monkeypatch):
        monkeypatch.setenv("POSTQUEUE_BATCH_SIZE", "lots")
        with pytest.raises(ConfigurationError, match="POSTQUEUE_BATCH_SIZE"):
            Settings.from_yaml(tmp_path / "nope.yaml")

    def test_unknown_keys_rejected(self, write_settings):
        path = write_settings("queue:\n  batch_sise: 10\n")
        with pytest.raises(ConfigurationError, match="batch_sise"):
            Settings.from_yaml(path)

    def test_invalid_yaml(self, write_settings):
        path = write_settings("queue: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            Settings.from_yaml(path)

    def test_invalid_values_surface_as_configuration_error(self, write_settings):
        path = write_settings("queue:\n  sweep_interval_seconds: 600\n")
        with pytest.raises(ConfigurationError):
            Settings.from_yaml(path)


class TestSettingsSingleton:
    def test_cached_until_reset(self):
        first = get_settings()
        assert get_settings() is first
        reset_settings()
        assert get_settings() is not first


# ===========================================================================
# 3. validate_env
# ===========================================================================


class TestValidateEnv:
    def test_missing_required_raises(self):
        with pytest.raises(ConfigurationError, match="SUPABASE_URL"):
            validate_env()

    def test_non_strict_returns_status(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        status = validate_env(strict=False)
        assert status == {
            "SUPABASE_URL": True,
            "SUPABASE_SERVICE_KEY": False,
            "X_API_BEARER_TOKEN": False,
        }

    def test_all_present(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
        monkeypatch.setenv("SUPABASE_SERVICE_KEY", "service-key")
        assert validate_env()["SUPABASE_SERVICE_KEY"] is True
