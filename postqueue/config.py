"""
Centralized configuration loader for postqueue.

Loads settings from YAML files and environment variables, providing
sensible defaults when configuration files are absent.

Provides:
    - QueueConfig: Job queue batch size, backoff ladder, retry ceiling
    - SchedulingConfig: Conflict window, horizon, approval rules
    - ResilienceConfig: Circuit breaker and classified-retry parameters
    - RateLimitRule / DEFAULT_RATE_LIMIT_RULES: Per-action limiter thresholds
    - Settings: Global application settings loaded from YAML + env vars
    - get_settings(): Cached accessor for Settings
    - validate_env(): Startup validation of required environment variables
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv

from postqueue.exceptions import ConfigurationError

# ---------------------------------------------------------------------------
# Load .env file (no-op if file does not exist)
# ---------------------------------------------------------------------------
load_dotenv()

# ---------------------------------------------------------------------------
# Project root directory (parent of postqueue/)
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent

logger = logging.getLogger(__name__)


# ===========================================================================
# JOB QUEUE CONFIGURATION
# ===========================================================================


@dataclass
class QueueConfig:
    """
    Job queue tuning.

    ``retry_delays_seconds`` is the fixed backoff ladder: the n-th retry
    waits ``retry_delays_seconds[min(n - 1, len - 1)]``. The ceiling is
    deliberately fixed so users can be told when a post will retry.
    """

    batch_size: int = 50
    default_max_retries: int = 3
    retry_delays_seconds: List[int] = field(default_factory=lambda: [60, 300, 1800])
    sweep_interval_seconds: int = 60
    stuck_timeout_minutes: int = 10
    recovery_interval_cycles: int = 10
    max_consecutive_errors: int = 10
    retry_all_limit: int = 100

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ConfigurationError(f"batch_size must be positive, got {self.batch_size}")
        if self.default_max_retries <= 0:
            raise ConfigurationError(
                f"default_max_retries must be positive, got {self.default_max_retries}"
            )
        if not self.retry_delays_seconds:
            raise ConfigurationError("retry_delays_seconds cannot be empty")
        # Retries are only visibly on time if the sweep runs at least as
        # often as the smallest backoff step.
        if self.sweep_interval_seconds > min(self.retry_delays_seconds):
            raise ConfigurationError(
                f"sweep_interval_seconds ({self.sweep_interval_seconds}) must not exceed "
                f"the smallest retry delay ({min(self.retry_delays_seconds)})"
            )


# ===========================================================================
# SCHEDULING CONFIGURATION
# ===========================================================================


@dataclass
class SchedulingConfig:
    """Scheduling business rules."""

    conflict_window_minutes: int = 5
    max_days_ahead: int = 365
    default_timezone: str = "UTC"

    # Approval routing: long, promotional, or media-bearing posts need review
    approval_length_threshold: int = 200
    flagged_terms: List[str] = field(default_factory=lambda: ["sale", "discount"])

    # Bulk scheduling minimum spacing between posts
    bulk_min_interval_minutes: int = 5


# ===========================================================================
# RESILIENCE CONFIGURATION
# ===========================================================================


@dataclass
class ResilienceConfig:
    """Circuit breaker and classified-retry defaults for outbound calls."""

    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    max_registered_breakers: int = 100

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    # ErrorType values retried within one delivery attempt; add "rate_limit"
    # to retry 429 responses in place
    retryable_errors: List[str] = field(
        default_factory=lambda: ["network_error", "timeout", "server_error", "service_unavailable"]
    )


@dataclass(frozen=True)
class RateLimitRule:
    """Sliding-window thresholds for one action class."""

    max_attempts: int
    window_seconds: int
    block_duration_seconds: int


DEFAULT_RATE_LIMIT_RULES: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(max_attempts=5, window_seconds=15 * 60, block_duration_seconds=30 * 60),
    "password_reset": RateLimitRule(max_attempts=3, window_seconds=60 * 60, block_duration_seconds=60 * 60),
    "token_refresh": RateLimitRule(max_attempts=20, window_seconds=5 * 60, block_duration_seconds=15 * 60),
    "general": RateLimitRule(max_attempts=100, window_seconds=15 * 60, block_duration_seconds=15 * 60),
}


# ===========================================================================
# GLOBAL SETTINGS
# ===========================================================================


@dataclass
class Settings:
    """
    Global application settings.

    Loaded from ``config/settings.yaml`` when available, falling back to
    sensible defaults. Environment variables override YAML values for
    deployment-specific configuration.
    """

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Name used to tag ApiErrors raised by the posting collaborator
    publisher_service: str = "x-api"
    x_api_base_url: str = "https://api.twitter.com/2"
    x_api_timeout_seconds: float = 30.0

    queue: QueueConfig = field(default_factory=QueueConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    rate_limits: Dict[str, RateLimitRule] = field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMIT_RULES)
    )

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "Settings":
        """
        Load settings from a YAML file.

        If the file does not exist, returns an instance with all defaults.
        Environment variables override YAML values for specific keys.

        Args:
            path: Path to the YAML file. Defaults to
                ``<PROJECT_ROOT>/config/settings.yaml``.

        Returns:
            Populated Settings instance.

        Raises:
            ConfigurationError: If the YAML file exists but cannot be parsed,
                or a section contains unknown keys or invalid values.
        """
        path = path or PROJECT_ROOT / "config" / "settings.yaml"

        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    data = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    f"Failed to parse settings YAML at {path}: {exc}"
                ) from exc

        # -----------------------------------------------------------------
        # Environment variable overrides (flat keys -> nested sections)
        # -----------------------------------------------------------------
        env_overrides: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
            "POSTQUEUE_BATCH_SIZE": ("queue", "batch_size", int),
            "POSTQUEUE_MAX_RETRIES": ("queue", "default_max_retries", int),
            "POSTQUEUE_SWEEP_INTERVAL": ("queue", "sweep_interval_seconds", int),
            "POSTQUEUE_CONFLICT_WINDOW": ("scheduling", "conflict_window_minutes", int),
            "POSTQUEUE_DEFAULT_TIMEZONE": ("scheduling", "default_timezone", str),
            "POSTQUEUE_BREAKER_THRESHOLD": ("resilience", "failure_threshold", int),
            "POSTQUEUE_BREAKER_RESET_SECONDS": ("resilience", "reset_timeout_seconds", float),
        }
        for env_key, (section, attr_name, cast_fn) in env_overrides.items():
            env_val = os.environ.get(env_key)
            if env_val is None:
                continue
            try:
                data.setdefault(section, {})[attr_name] = cast_fn(env_val)
            except (ValueError, TypeError) as exc:
                raise ConfigurationError(
                    f"Invalid value for env var {env_key}='{env_val}': {exc}"
                ) from exc

        top_level: Dict[str, Any] = {}
        for key in ("log_level", "log_dir", "publisher_service", "x_api_base_url", "x_api_timeout_seconds"):
            if key in data:
                top_level[key] = data[key]
        env_log_level = os.environ.get("POSTQUEUE_LOG_LEVEL")
        if env_log_level:
            top_level["log_level"] = env_log_level.upper()

        # -----------------------------------------------------------------
        # Rate-limit rules: YAML entries override defaults per action
        # -----------------------------------------------------------------
        rate_limits = dict(DEFAULT_RATE_LIMIT_RULES)
        for action, rule_data in (data.get("rate_limits") or {}).items():
            rate_limits[action] = _build_section(RateLimitRule, rule_data, f"rate_limits.{action}")

        return cls(
            queue=_build_section(QueueConfig, data.get("queue"), "queue"),
            scheduling=_build_section(SchedulingConfig, data.get("scheduling"), "scheduling"),
            resilience=_build_section(ResilienceConfig, data.get("resilience"), "resilience"),
            rate_limits=rate_limits,
            **top_level,
        )


def _build_section(section_cls: Any, values: Optional[Dict[str, Any]], name: str) -> Any:
    """Instantiate a config dataclass, turning bad keys into ConfigurationError."""
    values = values or {}
    unknown = set(values) - set(section_cls.__dataclass_fields__)
    if unknown:
        raise ConfigurationError(f"Unknown keys in '{name}' settings: {sorted(unknown)}")
    try:
        return section_cls(**values)
    except TypeError as exc:
        raise ConfigurationError(f"Invalid '{name}' settings: {exc}") from exc


# ===========================================================================
# CACHED SETTINGS ACCESSOR
# ===========================================================================

_settings_instance: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the cached Settings instance.

    On first call, loads from ``config/settings.yaml`` (or defaults).
    Subsequent calls return the cached instance.
    """
    global _settings_instance
    if _settings_instance is None:
        _settings_instance = Settings.from_yaml()
    return _settings_instance


def reset_settings() -> None:
    """
    Reset the cached Settings instance.

    Useful for testing or when configuration files have been updated
    at runtime.
    """
    global _settings_instance
    _settings_instance = None


# ===========================================================================
# ENVIRONMENT VARIABLE VALIDATION
# ===========================================================================

# Required environment variables for the system to function
REQUIRED_ENV_VARS: List[str] = [
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
]

# Optional but recommended environment variables
OPTIONAL_ENV_VARS: List[str] = [
    "X_API_BEARER_TOKEN",
]


def validate_env(strict: bool = True) -> Dict[str, bool]:
    """
    Validate that required environment variables are set.

    Args:
        strict: If ``True``, raise ``ConfigurationError`` when any required
            variable is missing. If ``False``, return the status dict
            without raising.

    Returns:
        Dict mapping variable name to presence status (``True`` if set).

    Raises:
        ConfigurationError: If ``strict=True`` and required vars are missing.
    """
    status: Dict[str, bool] = {}
    missing: List[str] = []

    for var in REQUIRED_ENV_VARS:
        present = bool(os.environ.get(var))
        status[var] = present
        if not present:
            missing.append(var)

    for var in OPTIONAL_ENV_VARS:
        status[var] = bool(os.environ.get(var))

    if strict and missing:
        raise ConfigurationError(
            f"Missing required environment variables: {missing}. "
            f"Copy .env.example to .env and fill in the values."
        )

    return status


__all__ = [
    "PROJECT_ROOT",
    "QueueConfig",
    "SchedulingConfig",
    "ResilienceConfig",
    "RateLimitRule",
    "DEFAULT_RATE_LIMIT_RULES",
    "Settings",
    "get_settings",
    "reset_settings",
    "validate_env",
    "REQUIRED_ENV_VARS",
    "OPTIONAL_ENV_VARS",
]
