# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for the pipeline.

Two layers are kept apart:

* :class:`Settings` describes the process: database, HTTP server, scheduler
  intervals and delivery tuning. It is read once at startup from an INI file
  (``QMP_CONFIG``, default ``config.ini``) with ``QMP_*`` environment
  variables as fallbacks.
* :class:`ProviderConfig` describes how mail leaves the system: sender
  identity and transport credentials. It lives in the ``app_settings`` table
  so operators can change it without a restart, and it is re-read at the
  start of every invocation.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/quiz_mail.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [scheduler]
        active = true
        worker_interval = 60

        [delivery]
        batch_size = 10
        processing_timeout_seconds = 300
        skip_retry_on_permanent = false

        [reconciler]
        grace_seconds = 30
        batch_size = 20

        [logging]
        level = INFO
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .logger import get_logger

if TYPE_CHECKING:
    from .tables.app_settings import AppSettingsTable

logger = get_logger("ConfigLoader")

DEFAULT_SENDER_NAME = "Sparkly"
DEFAULT_SENDER_EMAIL = "noreply@sparkly.hr"
DEFAULT_SMTP_PORT = 587

PROVIDER_SETTING_KEYS = (
    "email_sender_name",
    "email_sender_email",
    "email_reply_to",
    "smtp_host",
    "smtp_port",
    "smtp_username",
    "smtp_password",
    "smtp_tls",
    "admin_notification_email",
    "resend_api_key",
)

SECRET_SETTING_KEYS = frozenset({"smtp_password", "resend_api_key"})

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


@dataclass
class Settings:
    """Process-level settings."""

    db_path: str = "/data/quiz_mail.db"
    http_host: str = "0.0.0.0"
    http_port: int = 8000
    api_token: str | None = None
    scheduler_active: bool = False
    worker_interval: float = 60.0
    resolver_interval: float = 60.0
    reconciler_interval: float = 60.0
    batch_size: int = 10
    processing_timeout_seconds: int = 300
    skip_retry_on_permanent: bool = False
    queue_retention_seconds: int = 7 * 24 * 3600
    grace_seconds: int = 30
    reconciler_batch_size: int = 20
    log_level: str = "INFO"


def load_settings(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Load :class:`Settings` from an INI file with environment fallbacks.

    Values in the file win; an environment variable is used when the file
    does not set the key; the dataclass default applies otherwise.

    Environment variables (all prefixed with QMP_):
      QMP_CONFIG - Path to config.ini file (default: config.ini)
      QMP_DB_PATH, QMP_HOST, QMP_PORT, QMP_API_TOKEN
      QMP_SCHEDULER_ACTIVE, QMP_WORKER_INTERVAL, QMP_RESOLVER_INTERVAL,
      QMP_RECONCILER_INTERVAL
      QMP_BATCH_SIZE, QMP_PROCESSING_TIMEOUT_SECONDS,
      QMP_SKIP_RETRY_ON_PERMANENT, QMP_QUEUE_RETENTION_SECONDS
      QMP_GRACE_SECONDS, QMP_RECONCILER_BATCH_SIZE
      QMP_LOG_LEVEL

    Raises:
        ValueError: If a numeric value cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("QMP_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    elif config_path is not None:
        raise FileNotFoundError(f"Config file not found: {path}")

    defaults = Settings()

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return env.get(env_name)

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        if value is None or str(value).strip() == "":
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from exc

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        if value is None or str(value).strip() == "":
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from exc

    settings = Settings(
        db_path=get("storage", "db_path", "QMP_DB_PATH") or defaults.db_path,
        http_host=get("server", "host", "QMP_HOST") or defaults.http_host,
        http_port=get_int("server", "port", "QMP_PORT", defaults.http_port),
        api_token=get("server", "api_token", "QMP_API_TOKEN"),
        scheduler_active=parse_bool(get("scheduler", "active", "QMP_SCHEDULER_ACTIVE")),
        worker_interval=get_float(
            "scheduler", "worker_interval", "QMP_WORKER_INTERVAL", defaults.worker_interval
        ),
        resolver_interval=get_float(
            "scheduler", "resolver_interval", "QMP_RESOLVER_INTERVAL", defaults.resolver_interval
        ),
        reconciler_interval=get_float(
            "scheduler", "reconciler_interval", "QMP_RECONCILER_INTERVAL", defaults.reconciler_interval
        ),
        batch_size=get_int("delivery", "batch_size", "QMP_BATCH_SIZE", defaults.batch_size),
        processing_timeout_seconds=get_int(
            "delivery",
            "processing_timeout_seconds",
            "QMP_PROCESSING_TIMEOUT_SECONDS",
            defaults.processing_timeout_seconds,
        ),
        skip_retry_on_permanent=parse_bool(
            get("delivery", "skip_retry_on_permanent", "QMP_SKIP_RETRY_ON_PERMANENT")
        ),
        queue_retention_seconds=get_int(
            "delivery",
            "queue_retention_seconds",
            "QMP_QUEUE_RETENTION_SECONDS",
            defaults.queue_retention_seconds,
        ),
        grace_seconds=get_int(
            "reconciler", "grace_seconds", "QMP_GRACE_SECONDS", defaults.grace_seconds
        ),
        reconciler_batch_size=get_int(
            "reconciler", "batch_size", "QMP_RECONCILER_BATCH_SIZE", defaults.reconciler_batch_size
        ),
        log_level=(get("logging", "level", "QMP_LOG_LEVEL") or defaults.log_level).upper(),
    )

    if not settings.db_path.startswith(("postgresql://", "postgres://")):
        settings.db_path = os.path.expanduser(settings.db_path)
    if settings.api_token is not None:
        settings.api_token = settings.api_token.strip() or None
    return settings


@dataclass(frozen=True)
class ProviderConfig:
    """Sender identity and transport credentials for one invocation."""

    sender_name: str = DEFAULT_SENDER_NAME
    sender_email: str = DEFAULT_SENDER_EMAIL
    reply_to: str | None = None
    smtp_host: str | None = None
    smtp_port: int = DEFAULT_SMTP_PORT
    smtp_username: str | None = None
    smtp_password: str | None = None
    smtp_tls: bool = True
    api_key: str | None = None
    admin_email: str | None = None

    @classmethod
    def from_values(
        cls, values: Mapping[str, Any], environ: Mapping[str, str] | None = None
    ) -> ProviderConfig:
        """Build the config from ``app_settings`` values plus environment secrets.

        Empty strings count as unset. ``RESEND_API_KEY`` in the environment
        overrides a stored ``resend_api_key``.
        """
        env = os.environ if environ is None else environ

        def text(key: str) -> str | None:
            value = values.get(key)
            if value is None:
                return None
            value = str(value).strip()
            return value or None

        port_value = text("smtp_port")
        try:
            smtp_port = int(port_value) if port_value else DEFAULT_SMTP_PORT
        except ValueError:
            logger.warning("Invalid smtp_port %r, using %d", port_value, DEFAULT_SMTP_PORT)
            smtp_port = DEFAULT_SMTP_PORT

        api_key = (env.get("RESEND_API_KEY") or "").strip() or text("resend_api_key")

        return cls(
            sender_name=text("email_sender_name") or DEFAULT_SENDER_NAME,
            sender_email=text("email_sender_email") or DEFAULT_SENDER_EMAIL,
            reply_to=text("email_reply_to"),
            smtp_host=text("smtp_host"),
            smtp_port=smtp_port,
            smtp_username=text("smtp_username"),
            # Passwords are taken verbatim; surrounding spaces can be significant.
            smtp_password=values.get("smtp_password") or None,
            smtp_tls=parse_bool(text("smtp_tls"), default=True),
            api_key=api_key,
            admin_email=text("admin_notification_email"),
        )


async def load_provider_config(
    app_settings: AppSettingsTable, environ: Mapping[str, str] | None = None
) -> ProviderConfig:
    """Read the provider settings from the store. Never cached."""
    values = await app_settings.get_many(PROVIDER_SETTING_KEYS)
    return ProviderConfig.from_values(values, environ)


__all__ = [
    "PROVIDER_SETTING_KEYS",
    "SECRET_SETTING_KEYS",
    "ProviderConfig",
    "Settings",
    "load_provider_config",
    "load_settings",
    "parse_bool",
]
