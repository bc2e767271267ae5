"""Shared fakes for connection layer tests."""
from __future__ import annotations

import itertools
import threading
import time
from typing import Callable, Iterable, List

import pytest

from app.config import ConnectionSettings
from app.db.errors import HandleClosedError, TransientConnectionError

_ids = itertools.count(1)


class FakeHandle:
    """Stands in for ConnectionHandle: probe outcome is switchable."""

    def __init__(self) -> None:
        self.id = next(_ids)
        self.closed = False
        self.healthy = True
        self.probe_delay = 0.0
        self.probes = 0

    def __repr__(self) -> str:
        return f"<FakeHandle {self.id}>"

    def probe(self) -> None:
        if self.closed:
            raise HandleClosedError("retired")
        self.probes += 1
        if self.probe_delay:
            time.sleep(self.probe_delay)
        if not self.healthy:
            raise OSError("server closed the connection unexpectedly")

    def close(self) -> None:
        self.closed = True


class ScriptedOpener:
    """Opener whose attempts follow a script of True (connect) / False (fail).

    Once the script runs out, ``default`` decides every further attempt.
    """

    def __init__(self, script: Iterable[bool] = (), default: bool = True, delay: float = 0.0) -> None:
        self._script = list(script)
        self.default = default
        self.delay = delay
        self.calls = 0
        self.handles: List[FakeHandle] = []
        self.call_times: List[float] = []
        self._lock = threading.Lock()
        self.shut_down = False

    def open(self) -> FakeHandle:
        with self._lock:
            self.calls += 1
            self.call_times.append(time.monotonic())
            outcome = self._script.pop(0) if self._script else self.default
        if self.delay:
            time.sleep(self.delay)
        if not outcome:
            raise TransientConnectionError("target unreachable", cause=ConnectionRefusedError(111, "refused"))
        handle = FakeHandle()
        self.handles.append(handle)
        return handle

    def shutdown(self) -> None:
        self.shut_down = True


@pytest.fixture
def make_settings() -> Callable[..., ConnectionSettings]:
    def _make(**overrides) -> ConnectionSettings:
        values = dict(
            address="sqlite://",
            max_retries=3,
            initial_retry_delay=0.01,
            max_retry_delay=0.05,
            connection_timeout=1.0,
            health_check_interval=60.0,
            health_check_timeout=0.5,
        )
        values.update(overrides)
        return ConnectionSettings(**values)

    return _make


@pytest.fixture
def scripted_opener() -> Callable[..., ScriptedOpener]:
    return ScriptedOpener


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def waiter() -> Callable[..., bool]:
    return wait_for


@pytest.fixture
def managers():
    """Collects managers built by a test and closes them afterwards."""
    created: list = []
    yield created
    for manager in created:
        manager.close()
