"""Database layer root.

The connection manager is built once at startup and bound to the Flask app
(``app.startup.wiring.init_app``); request code reaches it through
``current_manager()`` instead of a module-level singleton.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from flask import current_app
from sqlalchemy.orm import Session as SASession

from .errors import (
    ConfigurationError,
    ConnectionExhausted,
    DatabaseError,
    HandleClosedError,
)
from .handle import ConnectionHandle
from .manager import ConnectionManager, ConnectionState, build_manager

EXTENSION_KEY = "db_manager"


def current_manager() -> ConnectionManager:
    manager = current_app.extensions.get(EXTENSION_KEY)
    if manager is None:
        raise RuntimeError("Connection manager not initialized; call app.startup.wiring.init_app first.")
    return manager


@contextmanager
def app_session() -> Iterator[SASession]:
    """Session on the current handle; commit on success, rollback on error."""
    handle = current_manager().connect()
    with handle.session() as sess:
        yield sess


__all__ = [
    "EXTENSION_KEY",
    "ConnectionHandle",
    "ConnectionManager",
    "ConnectionState",
    "ConfigurationError",
    "ConnectionExhausted",
    "DatabaseError",
    "HandleClosedError",
    "build_manager",
    "current_manager",
    "app_session",
]
