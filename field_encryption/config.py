"""
Worker configuration from environment variables.

Variables (a ``.env`` file in the working directory is loaded first):

    DATABASE_URL             asyncpg DSN (required by the worker)
    FIELD_ENCRYPTION_KEY     64 hex characters; read per operation by
                             EnvironmentKeyProvider, never held here
    SURVEY_BASE_URL          base of participant survey links
    DELIVERY_POLL_INTERVAL   seconds between queue runs (default 30)
    DELIVERY_BATCH_SIZE      entries claimed per run (default 200)
    DELIVERY_CLAIM_LEASE     seconds a claimed entry stays hidden (default 300)
    SMTP_HOST, SMTP_PORT, SMTP_USERNAME, SMTP_PASSWORD, SMTP_STARTTLS
    LOG_LEVEL                default INFO
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping, Optional

from dotenv import load_dotenv

from .delivery import DEFAULT_BATCH_SIZE, DEFAULT_CLAIM_LEASE, DEFAULT_POLL_INTERVAL
from .errors import ConfigurationError
from .keys import DEFAULT_KEY_ENV_VAR
from .mailer import SmtpSettings


@dataclass
class Settings:
    """Delivery worker settings."""

    database_url: str
    survey_base_url: str
    smtp: SmtpSettings
    poll_interval: float = DEFAULT_POLL_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    claim_lease: timedelta = field(default=DEFAULT_CLAIM_LEASE)
    log_level: str = "INFO"
    key_env_var: str = DEFAULT_KEY_ENV_VAR

    def __repr__(self) -> str:
        # DATABASE_URL may embed a password
        return (
            f"Settings(survey_base_url={self.survey_base_url!r}, smtp={self.smtp!r}, "
            f"poll_interval={self.poll_interval}, batch_size={self.batch_size})"
        )


def _require(env: Mapping[str, str], name: str) -> str:
    value = env.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} must be set in environment or .env file")
    return value


def _positive_number(env: Mapping[str, str], name: str, default: float, cast=float):
    raw = env.get(name, "").strip()
    if not raw:
        return cast(default)
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    return _check_positive(name, value)


def _check_positive(name: str, value):
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    return value


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from the environment.

    Args:
        env: Mapping to read instead of ``os.environ`` (``.env`` is not loaded then)

    Returns:
        Settings instance

    Raises:
        ConfigurationError: If a required variable is missing or a number is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    smtp = SmtpSettings(
        host=_require(env, "SMTP_HOST"),
        port=_positive_number(env, "SMTP_PORT", 587, cast=int),
        username=env.get("SMTP_USERNAME", ""),
        password=env.get("SMTP_PASSWORD", ""),
        starttls=_flag(env, "SMTP_STARTTLS", True),
    )

    return Settings(
        database_url=_require(env, "DATABASE_URL"),
        survey_base_url=_require(env, "SURVEY_BASE_URL"),
        smtp=smtp,
        poll_interval=_positive_number(env, "DELIVERY_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        batch_size=_positive_number(env, "DELIVERY_BATCH_SIZE", DEFAULT_BATCH_SIZE, cast=int),
        claim_lease=timedelta(
            seconds=_positive_number(
                env, "DELIVERY_CLAIM_LEASE", DEFAULT_CLAIM_LEASE.total_seconds()
            )
        ),
        log_level=env.get("LOG_LEVEL", "INFO").strip() or "INFO",
    )


def apply_overrides(
    settings: Settings,
    poll_interval: Optional[float] = None,
    batch_size: Optional[int] = None,
) -> Settings:
    """
    Apply command-line overrides, validated like their environment variables.

    Raises:
        ConfigurationError: If an override is not positive
    """
    if poll_interval is not None:
        settings.poll_interval = _check_positive("--interval", poll_interval)
    if batch_size is not None:
        settings.batch_size = _check_positive("--batch-size", batch_size)
    return settings
