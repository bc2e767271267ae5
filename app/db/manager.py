"""Database connection lifecycle manager.

One instance per process, built at startup (``build_manager``) and handed to
whoever needs the database. It owns the connection state machine:

    IDLE -> CONNECTING -> CONNECTED
    CONNECTING -> FAILED           (retries exhausted)
    CONNECTED -> CONNECTING        (health check failed, internal)
    any -> IDLE                    (disconnect)

Only one retry sequence runs at a time. Callers arriving while a sequence is
in flight block on its future and all receive the same handle or the same
exception. The health checker's reconnects go through the same in-flight
slot, so caller-initiated and health-initiated reconnects never overlap.
"""
from __future__ import annotations

import random
import threading
import time
from concurrent.futures import Future
from enum import Enum
from typing import Callable, Optional

from app.config import ConfigurationError, ConnectionSettings, connection_settings
from app.db.errors import ConnectionExhausted, TransientConnectionError
from app.db.handle import ConnectionHandle
from app.db.health import HealthChecker
from app.db.opener import ConnectionOpener
from app.db.retry_policy import RetryPolicy
from app.utils.logging import get_logger

LOG = get_logger("db.manager")


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class _InFlight:
    """One retry sequence: the shared result plus its abort flag."""

    __slots__ = ("future", "aborted", "reason")

    def __init__(self, reason: str) -> None:
        self.future: "Future[ConnectionHandle]" = Future()
        self.aborted = threading.Event()
        self.reason = reason


class ConnectionManager:
    def __init__(
        self,
        settings: Optional[ConnectionSettings] = None,
        *,
        policy: Optional[RetryPolicy] = None,
        opener: Optional[ConnectionOpener] = None,
        health_checker: Optional[HealthChecker] = None,
        health_checks: bool = True,
        rand: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings or connection_settings()
        self.policy = policy or RetryPolicy.from_settings(self.settings)
        self._opener = opener or ConnectionOpener(self.settings)
        self._health: Optional[HealthChecker] = None
        if health_checks:
            self._health = health_checker or HealthChecker(
                self.settings.health_check_interval, self.settings.health_check_timeout
            )
        self._rand = rand or random.random
        self._lock = threading.Lock()
        self._state = ConnectionState.IDLE
        self._handle: Optional[ConnectionHandle] = None
        self._attempts = 0
        self._inflight: Optional[_InFlight] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    def connect(self) -> ConnectionHandle:
        """Return the live handle, connecting (with retries) if needed.

        Raises ``ConnectionExhausted`` once the retry budget is spent and
        ``ConfigurationError`` when no target address is configured.
        """
        with self._lock:
            if self._state is ConnectionState.CONNECTED and self._handle is not None:
                return self._handle
            inflight = self._inflight
            if inflight is None:
                self.settings.require_address()
                inflight = self._begin_locked("connect")
                owner = True
            else:
                owner = False
        if not owner:
            LOG.info("Connection already in progress (%s), waiting", inflight.reason)
            return inflight.future.result()
        return self._run_sequence(inflight)

    def disconnect(self) -> None:
        """Stop health checks, abort any retry sequence, release the handle.

        Idempotent; a no-op when already idle.
        """
        with self._lock:
            handle, inflight = self._handle, self._inflight
            was = self._state
            self._handle = None
            self._inflight = None
            self._attempts = 0
            self._state = ConnectionState.IDLE
        # abort first: the health thread may be inside a reconnect backoff
        if inflight is not None:
            inflight.aborted.set()
        if self._health is not None:
            self._health.stop(join_timeout=self.settings.connection_timeout + 1.0)
            # a connect() published while stop() was joining must keep its checker
            self._start_health_checker()
        if handle is not None:
            handle.close()
        if was is not ConnectionState.IDLE:
            LOG.info("Disconnected from database (was %s)", was.value)

    def close(self) -> None:
        """Disconnect and stop the opener's worker threads; the manager is unusable afterwards."""
        self.disconnect()
        self._opener.shutdown()

    def _current_handle(self) -> Optional[ConnectionHandle]:
        if self._state is ConnectionState.CONNECTED:
            return self._handle
        return None

    def _begin_locked(self, reason: str) -> _InFlight:
        inflight = _InFlight(reason)
        self._inflight = inflight
        self._attempts = 0
        self._state = ConnectionState.CONNECTING
        return inflight

    def _start_health_checker(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            return
        if self._health is not None and not self._health.is_running:
            self._health.start(self._current_handle, self._on_unhealthy)

    def _run_sequence(self, inflight: _InFlight) -> ConnectionHandle:
        try:
            return self._attempt_sequence(inflight)
        except BaseException as exc:
            if not inflight.future.done():
                # interrupted (KeyboardInterrupt, SystemExit); waiters must not block forever
                error = ConnectionExhausted(
                    self._attempts, exc, message="Connection attempt interrupted"
                )
                LOG.error("Connection sequence interrupted: %r", exc)
                self._resolve_error(inflight, error, ConnectionState.FAILED)
            raise

    def _attempt_sequence(self, inflight: _InFlight) -> ConnectionHandle:
        started = time.monotonic()
        max_retries = self.policy.max_retries
        last_error: Optional[BaseException] = None
        made = 0
        for attempt in range(max_retries):
            if inflight.aborted.is_set():
                break
            made = attempt + 1
            LOG.info(
                "Connection attempt %d/%d (%s, elapsed=%.3fs)",
                made, max_retries, inflight.reason, time.monotonic() - started,
            )
            try:
                handle = self._opener.open()
            except ConfigurationError as exc:
                LOG.error("Database configuration error: %s", exc)
                self._resolve_error(inflight, exc, ConnectionState.IDLE)
                raise
            except TransientConnectionError as exc:
                last_error = exc
            except Exception as exc:
                last_error = TransientConnectionError("Connection attempt failed", cause=exc)
            else:
                if self._publish(inflight, handle):
                    LOG.info(
                        "Connection established (attempt %d, duration=%.3fs)",
                        made, time.monotonic() - started,
                    )
                    return handle
                break

            with self._lock:
                if self._inflight is inflight:
                    self._attempts = made
            if made >= max_retries:
                break
            delay = self.policy.delay(attempt, self._rand)
            LOG.warning(
                "Connection attempt %d/%d failed: %s; next try in %.3fs (elapsed=%.3fs)",
                made, max_retries, last_error, delay, time.monotonic() - started,
            )
            if inflight.aborted.wait(delay):
                break

        if inflight.aborted.is_set():
            error = ConnectionExhausted(made, last_error, message="Connection attempt aborted by disconnect")
            LOG.info("Connection sequence aborted after %d attempt(s)", made)
        else:
            error = ConnectionExhausted(made, last_error)
            LOG.error(
                "Database connection failed after %d attempt(s) in %.3fs: %s",
                made, time.monotonic() - started, last_error,
            )
        self._resolve_error(inflight, error, ConnectionState.FAILED)
        raise error

    def _publish(self, inflight: _InFlight, handle: ConnectionHandle) -> bool:
        with self._lock:
            current = self._inflight is inflight and not inflight.aborted.is_set()
            if current:
                self._handle = handle
                self._attempts = 0
                self._state = ConnectionState.CONNECTED
                self._inflight = None
        if not current:
            handle.close()
            return False
        inflight.future.set_result(handle)
        try:
            self._start_health_checker()
        except Exception:
            LOG.exception("Could not start the health checker; connection is unmonitored")
        return True

    def _resolve_error(self, inflight: _InFlight, error: BaseException, state: ConnectionState) -> None:
        with self._lock:
            # a disconnect that aborted this sequence already reset the state
            if self._inflight is inflight:
                self._inflight = None
                self._state = state
        inflight.future.set_exception(error)

    def _on_unhealthy(self, handle: ConnectionHandle, error: BaseException) -> None:
        """Health thread callback: retire ``handle`` and reconnect inline."""
        with self._lock:
            if self._handle is not handle or self._state is not ConnectionState.CONNECTED:
                LOG.debug("Unhealthy handle %r already replaced; nothing to do", handle)
                return
            self._handle = None
            inflight = self._begin_locked("health-check")
        LOG.warning("Health check failed (%s); retiring connection and reconnecting", error)
        handle.close()
        try:
            self._run_sequence(inflight)
        except ConnectionExhausted as exc:
            LOG.error("Reconnect after failed health check gave up: %s", exc)
        except ConfigurationError as exc:
            LOG.error("Reconnect after failed health check impossible: %s", exc)


def build_manager(settings: Optional[ConnectionSettings] = None, **kwargs) -> ConnectionManager:
    """Construct the process-wide manager from environment settings."""
    settings = settings or connection_settings()
    manager = ConnectionManager(settings, **kwargs)
    LOG.debug(
        "Connection manager built (max_retries=%d, timeout=%.3fs, max_backoff_total=%.3fs, health_interval=%.3fs)",
        manager.policy.max_retries,
        settings.connection_timeout,
        manager.policy.max_total_delay(),
        settings.health_check_interval,
    )
    return manager


__all__ = ["ConnectionManager", "ConnectionState", "build_manager"]
