"""Application configuration accessors.

Centralizes environment variable parsing & defaults for the database
connection layer. The ``DB_``-prefixed names and ``DATABASE_URL`` used by
earlier deployments are still honored as fallbacks so operators do not need
to change deployment configs immediately.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_MAX_RETRIES = 5
DEFAULT_INITIAL_RETRY_DELAY_MS = 1000
DEFAULT_MAX_RETRY_DELAY_MS = 30000
DEFAULT_CONNECTION_TIMEOUT_MS = 30000
DEFAULT_HEALTH_CHECK_INTERVAL_MS = 30000
DEFAULT_HEALTH_CHECK_TIMEOUT_MS = 5000
DEFAULT_POOL_SIZE = 10
DEFAULT_POOL_RECYCLE_S = 60 * 30
DEFAULT_JITTER_FRACTION = 0.25
_TRUE = {"1", "true", "yes", "on"}


class ConfigurationError(RuntimeError):
    """Required configuration is missing or malformed (never retried)."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


def _raw_env(name: str, default: str | None = None) -> str | None:
    val = os.getenv(name)
    return val if val is not None else default


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value is not None and value.strip():
            return value.strip()
    return None


def env_bool(name: str, default: bool = False) -> bool:
    raw = _raw_env(name, str(default).lower())
    if raw is None:
        return default
    return raw.lower() in _TRUE


def _env_int(names: tuple[str, ...], default: int, minimum: int = 0) -> int:
    raw = _first_env(*names)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{names[0]} must be an integer, got {raw!r}", key=names[0]) from None
    if value < minimum:
        raise ConfigurationError(f"{names[0]} must be >= {minimum}, got {value}", key=names[0])
    return value


def log_level_name() -> str:
    return _raw_env("LOG_LEVEL", DEFAULT_LOG_LEVEL).upper()  # type: ignore[union-attr]


def target_address() -> str | None:
    """Backing-store SQLAlchemy URL (TARGET_ADDRESS, legacy DATABASE_URL). No default."""
    return _first_env("TARGET_ADDRESS", "DATABASE_URL")


def max_retries() -> int:
    return _env_int(("MAX_RETRIES", "DB_MAX_RETRIES"), DEFAULT_MAX_RETRIES, minimum=1)


def initial_retry_delay_ms() -> int:
    return _env_int(("INITIAL_RETRY_DELAY", "DB_INITIAL_RETRY_DELAY"), DEFAULT_INITIAL_RETRY_DELAY_MS)


def max_retry_delay_ms() -> int:
    return _env_int(("MAX_RETRY_DELAY", "DB_MAX_RETRY_DELAY"), DEFAULT_MAX_RETRY_DELAY_MS)


def connection_timeout_ms() -> int:
    return _env_int(("CONNECTION_TIMEOUT", "DB_CONNECTION_TIMEOUT"), DEFAULT_CONNECTION_TIMEOUT_MS, minimum=1)


def health_check_interval_ms() -> int:
    return _env_int(
        ("HEALTH_CHECK_INTERVAL", "DB_HEALTH_CHECK_INTERVAL"), DEFAULT_HEALTH_CHECK_INTERVAL_MS, minimum=1
    )


def health_check_timeout_ms() -> int:
    """Probe timeout; ``connection_settings`` clamps it below the interval."""
    return _env_int(("HEALTH_CHECK_TIMEOUT", "DB_HEALTH_CHECK_TIMEOUT"), DEFAULT_HEALTH_CHECK_TIMEOUT_MS, minimum=1)


def pool_size() -> int:
    return _env_int(("DB_POOL_SIZE",), DEFAULT_POOL_SIZE, minimum=1)


def pool_recycle_seconds() -> int:
    return _env_int(("DB_POOL_RECYCLE",), DEFAULT_POOL_RECYCLE_S, minimum=1)


def install_signal_hooks() -> bool:
    """Whether wiring should hook SIGTERM/SIGINT to disconnect (DB_INSTALL_SIGNAL_HOOKS)."""
    return env_bool("DB_INSTALL_SIGNAL_HOOKS", default=True)


@dataclass(frozen=True)
class ConnectionSettings:
    """Snapshot of connection configuration. All durations in seconds."""

    address: Optional[str]
    max_retries: int = DEFAULT_MAX_RETRIES
    initial_retry_delay: float = DEFAULT_INITIAL_RETRY_DELAY_MS / 1000.0
    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY_MS / 1000.0
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_MS / 1000.0
    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL_MS / 1000.0
    health_check_timeout: float = DEFAULT_HEALTH_CHECK_TIMEOUT_MS / 1000.0
    pool_size: int = DEFAULT_POOL_SIZE
    pool_recycle: int = DEFAULT_POOL_RECYCLE_S
    jitter_fraction: float = DEFAULT_JITTER_FRACTION

    def require_address(self) -> str:
        if not self.address:
            raise ConfigurationError("TARGET_ADDRESS (or DATABASE_URL) is not set", key="TARGET_ADDRESS")
        return self.address


def connection_settings() -> ConnectionSettings:
    """Read the connection settings from the environment.

    A missing TARGET_ADDRESS is not an error here; it surfaces as
    ``ConfigurationError`` on the first ``connect()``.
    """
    interval = health_check_interval_ms() / 1000.0
    probe_timeout = health_check_timeout_ms() / 1000.0
    if probe_timeout >= interval:
        probe_timeout = interval / 2.0
    return ConnectionSettings(
        address=target_address(),
        max_retries=max_retries(),
        initial_retry_delay=initial_retry_delay_ms() / 1000.0,
        max_retry_delay=max_retry_delay_ms() / 1000.0,
        connection_timeout=connection_timeout_ms() / 1000.0,
        health_check_interval=interval,
        health_check_timeout=probe_timeout,
        pool_size=pool_size(),
        pool_recycle=pool_recycle_seconds(),
    )


def summarize_runtime_config() -> dict:
    settings = connection_settings()
    return {
        "target_configured": bool(settings.address),
        "max_retries": settings.max_retries,
        "connection_timeout": settings.connection_timeout,
        "health_check_interval": settings.health_check_interval,
        "log_level": log_level_name(),
    }


__all__ = [
    "ConfigurationError",
    "ConnectionSettings",
    "connection_settings",
    "target_address",
    "max_retries",
    "initial_retry_delay_ms",
    "max_retry_delay_ms",
    "connection_timeout_ms",
    "health_check_interval_ms",
    "health_check_timeout_ms",
    "pool_size",
    "pool_recycle_seconds",
    "log_level_name",
    "install_signal_hooks",
    "summarize_runtime_config",
    "env_bool",
]
