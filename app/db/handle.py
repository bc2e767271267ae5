"""Connection handle owned by the connection manager.

A handle bundles the SQLAlchemy engine (the pool), the sentinel connection
opened while connecting, and a session factory. Callers borrow it from
``ConnectionManager.connect()``; only the manager closes it. A closed handle
refuses all work instead of silently forwarding to a newer one.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Optional

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.orm import Session as SASession, sessionmaker

from app.db.errors import HandleClosedError
from app.utils.logging import get_logger

LOG = get_logger("db.handle")

PROBE_SQL = "SELECT 1"


class ConnectionHandle:
    def __init__(self, engine: Engine, connection: Connection, *, label: Optional[str] = None) -> None:
        self._engine = engine
        self._connection = connection
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False, class_=SASession)
        self._lock = threading.Lock()
        self._probe_lock = threading.Lock()
        self._closed = False
        self.opened_at = datetime.now(timezone.utc)
        self.label = label or _safe_url(engine)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<ConnectionHandle {self.label} {state} at 0x{id(self):x}>"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def engine(self) -> Engine:
        self._ensure_open()
        return self._engine

    def _ensure_open(self) -> None:
        if self._closed:
            raise HandleClosedError(f"Connection handle {self.label} has been retired")

    @contextmanager
    def session(self) -> Iterator[SASession]:
        """Session bound to this handle's pool; commits on success, rolls back on error."""
        self._ensure_open()
        sess = self._sessions()
        try:
            yield sess
            sess.commit()
        except Exception:
            sess.rollback()
            raise
        finally:
            sess.close()

    def execute(self, statement: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Run one statement in its own transaction.

        Returns the fetched rows for row-returning statements, otherwise the
        affected row count.
        """
        self._ensure_open()
        with self._engine.begin() as conn:
            result = conn.execute(text(statement), dict(params or {}))
            if result.returns_rows:
                return result.all()
            return result.rowcount

    def probe(self) -> None:
        """Liveness round-trip on the sentinel connection. Raises on failure."""
        self._ensure_open()
        with self._probe_lock:
            self._connection.execute(text(PROBE_SQL)).scalar()
            # end the implicit transaction so the next probe sees a fresh snapshot
            self._connection.rollback()

    def close(self) -> None:
        """Release the sentinel connection and dispose the pool. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._connection.close()
            except Exception:
                LOG.warning("Error closing sentinel connection for %s", self.label, exc_info=True)
            try:
                self._engine.dispose()
            except Exception:
                LOG.warning("Error disposing engine for %s", self.label, exc_info=True)
        LOG.debug("Connection handle %s closed", self.label)


def _safe_url(engine: Engine) -> str:
    try:
        return engine.url.render_as_string(hide_password=True)
    except Exception:  # pragma: no cover - exotic engine stand-ins
        return repr(engine)


__all__ = ["ConnectionHandle", "PROBE_SQL"]
