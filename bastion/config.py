from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bastion.logging import get_logger

logger = get_logger(__name__)

MIN_SESSION_TIMEOUT_MINUTES = 5
MAX_SESSION_TIMEOUT_MINUTES = 1440


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    # Rate limiting
    global_rate_limit: int = env_field(
        1000, "GLOBAL_RATE_LIMIT", description="Attempts allowed across all clients per window"
    )
    global_rate_window_seconds: int = env_field(60, "GLOBAL_RATE_WINDOW_SECONDS")
    ip_rate_limit: int = env_field(
        60, "IP_RATE_LIMIT", description="Attempts allowed per client address per window"
    )
    ip_rate_window_seconds: int = env_field(600, "IP_RATE_WINDOW_SECONDS")
    login_rate_limit: int = env_field(10, "LOGIN_RATE_LIMIT")
    login_rate_window_seconds: int = env_field(300, "LOGIN_RATE_WINDOW_SECONDS")
    password_reset_rate_limit: int = env_field(5, "PASSWORD_RESET_RATE_LIMIT")
    password_reset_rate_window_seconds: int = env_field(
        600, "PASSWORD_RESET_RATE_WINDOW_SECONDS"
    )

    # Lockout
    max_failed_attempts: int = env_field(
        5, "MAX_FAILED_ATTEMPTS", description="Failures before the hard lockout engages"
    )
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES")
    soft_delay_base_seconds: int = env_field(
        1,
        "SOFT_DELAY_BASE_SECONDS",
        description="Advisory backoff base; delay doubles per failure before lockout",
    )
    min_failure_response_ms: int = env_field(
        200,
        "MIN_FAILURE_RESPONSE_MS",
        description="Failed logins are padded to at least this long, measured from entry",
    )

    # Token lifetimes
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_code_ttl_minutes: int = env_field(60 * 24, "EMAIL_CODE_TTL_MINUTES")
    phone_code_ttl_minutes: int = env_field(10, "PHONE_CODE_TTL_MINUTES")
    two_factor_challenge_ttl_minutes: int = env_field(5, "TWO_FACTOR_CHALLENGE_TTL_MINUTES")
    verification_code_digits: int = env_field(6, "VERIFICATION_CODE_DIGITS")

    # Sessions
    default_session_timeout_minutes: int = env_field(30, "DEFAULT_SESSION_TIMEOUT_MINUTES")
    default_extend_on_activity: bool = env_field(True, "DEFAULT_EXTEND_ON_ACTIVITY")
    max_concurrent_sessions: int = env_field(
        0,
        "MAX_CONCURRENT_SESSIONS",
        description="Live sessions per identity; 0 disables the cap, otherwise the oldest is evicted",
    )

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_upper: bool = env_field(False, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(False, "PASSWORD_REQUIRE_LOWER")
    password_require_digit: bool = env_field(False, "PASSWORD_REQUIRE_DIGIT")
    password_require_symbol: bool = env_field(False, "PASSWORD_REQUIRE_SYMBOL")
    reject_common_passwords: bool = env_field(False, "REJECT_COMMON_PASSWORDS")
    argon2_time_cost: int = env_field(2, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(19456, "ARGON2_MEMORY_COST", description="KiB")
    argon2_parallelism: int = env_field(1, "ARGON2_PARALLELISM")

    # Two-factor
    two_factor_issuer: str = env_field("Bastion", "TWO_FACTOR_ISSUER")
    two_factor_accept_totp: bool = env_field(
        True,
        "TWO_FACTOR_ACCEPT_TOTP",
        description="Also accept RFC 6238 codes derived from the shared secret",
    )
    two_factor_encryption_key: str | None = env_field(
        None, "TWO_FACTOR_ENCRYPTION_KEY", description="Key material for secrets at rest"
    )

    # API keys
    api_key_prefix: str = env_field("apk_", "API_KEY_PREFIX")

    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors such as runtime resets",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "global_rate_limit",
        "global_rate_window_seconds",
        "ip_rate_limit",
        "ip_rate_window_seconds",
        "login_rate_limit",
        "login_rate_window_seconds",
        "password_reset_rate_limit",
        "password_reset_rate_window_seconds",
        "max_failed_attempts",
        "lockout_minutes",
        "password_reset_ttl_minutes",
        "email_code_ttl_minutes",
        "phone_code_ttl_minutes",
        "two_factor_challenge_ttl_minutes",
        "password_min_length",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("verification_code_digits")
    @classmethod
    def _validate_code_digits(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("verification codes must have between 4 and 10 digits")
        return value

    @field_validator("default_session_timeout_minutes")
    @classmethod
    def _validate_session_timeout(cls, value: int) -> int:
        if not MIN_SESSION_TIMEOUT_MINUTES <= value <= MAX_SESSION_TIMEOUT_MINUTES:
            raise ValueError(
                f"session timeout must be between {MIN_SESSION_TIMEOUT_MINUTES} "
                f"and {MAX_SESSION_TIMEOUT_MINUTES} minutes"
            )
        return value

    @field_validator("max_concurrent_sessions", "min_failure_response_ms", "soft_delay_base_seconds")
    @classmethod
    def _require_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded", test_mode=_settings_cache.test_mode)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
