"""Background liveness probing of the published connection handle.

Store connections get silently cut by idle timeouts and middleboxes; the
client only notices on next use. The checker probes on a fixed interval so
that a dead handle is replaced in the background instead of failing a
reader's request.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from app.db.errors import HealthCheckTimeout
from app.db.handle import ConnectionHandle
from app.utils.logging import get_logger

LOG = get_logger("db.health")


@dataclass(frozen=True)
class HealthCheckResult:
    timestamp: datetime
    success: bool
    latency: float
    error: Optional[str] = None


HandleGetter = Callable[[], Optional[ConnectionHandle]]
UnhealthyCallback = Callable[[ConnectionHandle, BaseException], None]


class HealthChecker:
    """Daemon thread ticking every ``interval`` seconds.

    ``on_unhealthy`` runs on the checker thread and may block it (the manager
    reconnects inline), which also keeps ticks from overlapping.
    """

    def __init__(self, interval: float, timeout: float, name: str = "db-health") -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        if timeout <= 0 or timeout >= interval:
            raise ValueError("timeout must be > 0 and shorter than interval")
        self.interval = interval
        self.timeout = timeout
        self.name = name
        self._lifecycle = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._last_result: Optional[HealthCheckResult] = None
        self._get_handle: Optional[HandleGetter] = None
        self._on_unhealthy: Optional[UnhealthyCallback] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> Optional[HealthCheckResult]:
        return self._last_result

    def start(self, get_handle: HandleGetter, on_unhealthy: UnhealthyCallback) -> None:
        with self._lifecycle:
            if self.is_running:
                LOG.debug("Health checker already running")
                return
            self._get_handle = get_handle
            self._on_unhealthy = on_unhealthy
            self._stop_event = threading.Event()
            self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix=f"{self.name}-probe")
            self._thread = threading.Thread(target=self._run, args=(self._stop_event,), name=self.name, daemon=True)
            self._thread.start()
        LOG.info("Health checker started (interval=%.3fs, timeout=%.3fs)", self.interval, self.timeout)

    def stop(self, join_timeout: Optional[float] = None) -> None:
        """Stop the thread running at call time; a later ``start()`` is left alone."""
        with self._lifecycle:
            thread, stop_event, executor = self._thread, self._stop_event, self._executor
            if thread is None:
                return
            self._thread = None
            self._executor = None
            stop_event.set()
        # joined outside the lock: the thread may be publishing a reconnect, which calls start()
        if thread is not threading.current_thread():
            thread.join(join_timeout)
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)
        LOG.info("Health checker stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception:
                LOG.exception("Health check tick failed")

    def tick(self) -> Optional[HealthCheckResult]:
        """One check of the current handle; None when nothing is connected."""
        handle = self._get_handle() if self._get_handle else None
        if handle is None or handle.closed:
            LOG.debug("Health check skipped: no established connection")
            return None
        result, error = self.check(handle)
        if not result.success and self._on_unhealthy is not None:
            self._on_unhealthy(handle, error)  # type: ignore[arg-type]
        return result

    def check(self, handle: ConnectionHandle) -> tuple[HealthCheckResult, Optional[BaseException]]:
        started = time.monotonic()
        error: Optional[BaseException] = None
        try:
            self._probe_with_timeout(handle)
        except Exception as exc:
            error = exc
        latency = time.monotonic() - started
        result = HealthCheckResult(
            timestamp=datetime.now(timezone.utc),
            success=error is None,
            latency=latency,
            error=None if error is None else str(error),
        )
        self._last_result = result
        if error is None:
            LOG.debug("Health check passed in %.3fs", latency)
        else:
            LOG.warning("Health check failed after %.3fs: %s", latency, error)
        return result, error

    def _probe_with_timeout(self, handle: ConnectionHandle) -> None:
        executor = self._executor
        if executor is None:
            handle.probe()
            return
        future = executor.submit(handle.probe)
        try:
            future.result(timeout=self.timeout)
        except FutureTimeout:
            raise HealthCheckTimeout(f"Health check timed out after {self.timeout:.3f}s") from None


__all__ = ["HealthChecker", "HealthCheckResult"]
