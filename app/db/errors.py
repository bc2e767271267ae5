"""Connection layer error taxonomy.

Only ``ConnectionExhausted`` and ``ConfigurationError`` ever reach callers of
``ConnectionManager.connect()``; the others are raised and handled inside the
retry and health-check loops. ``HandleClosedError`` is raised by a retired
handle when a caller keeps using it after a reconnect or disconnect.
"""
from __future__ import annotations

from typing import Optional

from app.config import ConfigurationError


class DatabaseError(RuntimeError):
    """Base error for the connection layer."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        if self.cause is not None:
            return f"{base} | Caused by: {self.cause!r}"
        return base


class TransientConnectionError(DatabaseError):
    """A single connect attempt failed (network, auth or timeout)."""


class ConnectionTimeout(TransientConnectionError):
    """A connect attempt did not complete within the per-attempt timeout."""


class ConnectionExhausted(DatabaseError):
    """All attempts of one retry sequence failed."""

    def __init__(self, attempts: int, cause: Optional[BaseException] = None, message: Optional[str] = None):
        super().__init__(message or f"Database connection failed after {attempts} attempt(s)", cause)
        self.attempts = attempts


class HealthCheckTimeout(DatabaseError):
    """Liveness probe exceeded its timeout."""


class HandleClosedError(DatabaseError):
    """Operation attempted on a handle that has been retired."""


__all__ = [
    "DatabaseError",
    "TransientConnectionError",
    "ConnectionTimeout",
    "ConnectionExhausted",
    "HealthCheckTimeout",
    "HandleClosedError",
    "ConfigurationError",
]
