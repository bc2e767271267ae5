"""Open one backing-store connection, raced against a per-attempt timeout."""
from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.engine.url import URL
from sqlalchemy.exc import ArgumentError, NoSuchModuleError

from app.config import ConfigurationError, ConnectionSettings
from app.db.errors import ConnectionTimeout, TransientConnectionError
from app.db.handle import ConnectionHandle
from app.utils.logging import get_logger

LOG = get_logger("db.opener")

EngineFactory = Callable[..., Engine]


class ConnectionOpener:
    """Creates an engine and checks out its first connection within a timeout.

    The connect call runs on a small worker pool so the caller can stop
    waiting after ``settings.connection_timeout``. A connection that arrives
    after the caller gave up is closed and its engine disposed.
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        engine_factory: EngineFactory = create_engine,
        max_workers: int = 4,
    ) -> None:
        self.settings = settings
        self._engine_factory = engine_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="db-connect")

    @property
    def timeout(self) -> float:
        return self.settings.connection_timeout

    def resolve_url(self) -> URL:
        address = self.settings.require_address()
        try:
            return make_url(address)
        except ArgumentError as exc:
            raise ConfigurationError(f"TARGET_ADDRESS is not a valid database URL: {exc}", key="TARGET_ADDRESS") from exc

    def engine_options(self, url: URL) -> Dict[str, Any]:
        """Pool and driver options mirroring the storefront's production pool."""
        timeout = self.settings.connection_timeout
        if url.get_backend_name() == "sqlite":
            # sentinel connection is probed from the health-check thread
            return {"connect_args": {"check_same_thread": False, "timeout": timeout}}
        options: Dict[str, Any] = {
            "pool_size": self.settings.pool_size,
            "pool_recycle": self.settings.pool_recycle,
            "pool_pre_ping": True,
            "pool_timeout": timeout,
        }
        if url.get_backend_name() == "postgresql":
            options["connect_args"] = {"connect_timeout": max(1, int(timeout))}
        return options

    def open(self) -> ConnectionHandle:
        """Return a live handle or raise ``TransientConnectionError``.

        ``ConfigurationError`` is raised for problems no retry can fix.
        """
        url = self.resolve_url()
        try:
            engine = self._engine_factory(url, **self.engine_options(url))
        except (ArgumentError, NoSuchModuleError) as exc:
            raise ConfigurationError(f"Cannot create engine for {url.get_backend_name()}: {exc}") from exc
        except Exception as exc:
            raise TransientConnectionError("Engine creation failed", cause=exc) from exc

        started = time.monotonic()
        future = self._executor.submit(engine.connect)
        try:
            connection = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.add_done_callback(lambda f: _discard_late(f, engine))
            raise ConnectionTimeout(f"Connection attempt timed out after {self.timeout:.3f}s") from None
        except Exception as exc:
            _dispose_quietly(engine)
            raise TransientConnectionError("Connection attempt failed", cause=exc) from exc

        LOG.debug("Connection opened in %.3fs", time.monotonic() - started)
        return ConnectionHandle(engine, connection)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _dispose_quietly(engine: Engine) -> None:
    try:
        engine.dispose()
    except Exception:
        LOG.warning("Error disposing engine after failed attempt", exc_info=True)


def _discard_late(future: "Future[Any]", engine: Engine) -> None:
    connection: Optional[Any] = None
    if not future.cancelled() and future.exception() is None:
        connection = future.result()
    if connection is not None:
        try:
            connection.close()
            LOG.info("Closed connection that completed after its attempt timed out")
        except Exception:
            LOG.warning("Error closing late connection", exc_info=True)
    _dispose_quietly(engine)


__all__ = ["ConnectionOpener", "EngineFactory"]
