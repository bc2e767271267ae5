"""Tests for HealthChecker and health-driven self-healing in the manager."""
from __future__ import annotations

import threading
import time

import pytest

from app.db.errors import ConnectionExhausted, HandleClosedError, HealthCheckTimeout
from app.db.health import HealthChecker
from app.db.manager import ConnectionManager, ConnectionState
from app.db.opener import ConnectionOpener


@pytest.fixture
def checker():
    hc = HealthChecker(interval=60.0, timeout=0.05)
    yield hc
    hc.stop()


def test_tick_skips_without_connection(checker):
    calls = []
    checker.start(lambda: None, lambda h, e: calls.append((h, e)))

    assert checker.tick() is None
    assert calls == []
    assert checker.last_result is None


def test_successful_probe_is_recorded(checker, scripted_opener):
    handle = scripted_opener().open()
    calls = []
    checker.start(lambda: handle, lambda h, e: calls.append((h, e)))

    result = checker.tick()

    assert result.success is True
    assert result.latency >= 0
    assert checker.last_result is result
    assert calls == []


def test_failed_probe_invokes_callback(checker, scripted_opener):
    handle = scripted_opener().open()
    handle.healthy = False
    calls = []
    checker.start(lambda: handle, lambda h, e: calls.append((h, e)))

    result = checker.tick()

    assert result.success is False
    assert calls and calls[0][0] is handle
    assert isinstance(calls[0][1], OSError)


def test_slow_probe_times_out(checker, scripted_opener):
    handle = scripted_opener().open()
    handle.probe_delay = 0.3
    calls = []
    checker.start(lambda: handle, lambda h, e: calls.append((h, e)))

    started = time.monotonic()
    result = checker.tick()

    assert time.monotonic() - started < 0.25
    assert result.success is False
    assert isinstance(calls[0][1], HealthCheckTimeout)


def test_timeout_must_be_shorter_than_interval():
    with pytest.raises(ValueError):
        HealthChecker(interval=1.0, timeout=1.0)


def test_start_and_stop_are_idempotent(checker):
    checker.start(lambda: None, lambda h, e: None)
    checker.start(lambda: None, lambda h, e: None)
    assert checker.is_running

    checker.stop()
    checker.stop()
    assert not checker.is_running


def _manager(settings, opener, managers):
    manager = ConnectionManager(settings, opener=opener)
    managers.append(manager)
    return manager


def test_failed_probe_replaces_handle(make_settings, scripted_opener, managers):
    opener = scripted_opener()
    manager = _manager(make_settings(), opener, managers)
    old = manager.connect()
    old.healthy = False

    manager._health.tick()

    new = manager.connect()
    assert new is not old
    assert old.closed
    assert opener.calls == 2
    assert manager.state is ConnectionState.CONNECTED
    assert manager._attempts == 0


def test_retired_sqlite_handle_is_not_redirected(make_settings, managers, tmp_path):
    settings = make_settings(address=f"sqlite:///{tmp_path / 'library.db'}")
    manager = _manager(settings, ConnectionOpener(settings), managers)
    old = manager.connect()

    def dead_probe():
        raise OSError("server closed the connection unexpectedly")

    old.probe = dead_probe
    manager._health.tick()

    new = manager.connect()
    assert new is not old
    assert new.execute("SELECT 1 AS ok")[0].ok == 1
    with pytest.raises(HandleClosedError):
        old.execute("SELECT 1")


def test_self_heal_delay_is_absorbed_by_the_tick(make_settings, scripted_opener, managers, waiter):
    opener = scripted_opener(script=[True, False, True])
    manager = _manager(make_settings(initial_retry_delay=0.2, max_retry_delay=1.0), opener, managers)
    old = manager.connect()
    old.healthy = False
    tick = {}

    def run_tick():
        started = time.monotonic()
        manager._health.tick()
        tick["elapsed"] = time.monotonic() - started

    thread = threading.Thread(target=run_tick)
    thread.start()
    assert waiter(lambda: opener.calls >= 2)

    # an unrelated caller during the reconnect waits for it instead of failing
    handle = manager.connect()
    thread.join(3)

    assert handle is opener.handles[-1]
    assert handle is not old
    assert tick["elapsed"] >= 0.2
    assert opener.calls == 3
    assert manager.state is ConnectionState.CONNECTED


def test_exhausted_self_heal_leaves_manager_failed(make_settings, scripted_opener, managers):
    opener = scripted_opener(script=[True], default=False)
    manager = _manager(make_settings(max_retries=2, initial_retry_delay=0.001), opener, managers)
    old = manager.connect()
    old.healthy = False

    manager._health.tick()  # does not raise

    assert manager.state is ConnectionState.FAILED
    with pytest.raises(ConnectionExhausted):
        manager.connect()


def test_stale_failure_report_is_ignored(make_settings, scripted_opener, managers):
    opener = scripted_opener()
    manager = _manager(make_settings(), opener, managers)
    old = manager.connect()
    manager.disconnect()
    current = manager.connect()

    manager._on_unhealthy(old, OSError("late report"))

    assert manager.connect() is current
    assert opener.calls == 2


def test_background_loop_detects_dropped_connection(make_settings, scripted_opener, managers, waiter):
    opener = scripted_opener()
    manager = _manager(make_settings(health_check_interval=0.05, health_check_timeout=0.02), opener, managers)
    old = manager.connect()
    assert manager._health.is_running

    old.healthy = False

    assert waiter(lambda: opener.calls == 2 and manager.state is ConnectionState.CONNECTED)
    assert old.closed

    manager.disconnect()
    assert not manager._health.is_running


def test_connect_during_disconnect_keeps_health_checks(make_settings, scripted_opener, managers, waiter):
    opener = scripted_opener()
    delegate = opener.open
    release = threading.Event()

    def gated_open():
        # the health-triggered reconnect (second call) hangs until released
        if opener.calls == 1:
            opener.calls += 1
            release.wait(2)
        return delegate()

    opener.open = gated_open
    manager = _manager(make_settings(health_check_interval=0.1, health_check_timeout=0.05), opener, managers)
    old = manager.connect()
    old.healthy = False
    assert waiter(lambda: opener.calls == 2)

    stopper = threading.Thread(target=manager.disconnect)
    stopper.start()
    assert waiter(lambda: manager.state is ConnectionState.IDLE)

    current = manager.connect()
    release.set()
    stopper.join(3)

    assert not stopper.is_alive()
    assert manager.state is ConnectionState.CONNECTED
    assert manager.connect() is current
    assert manager._health.is_running
    assert waiter(lambda: current.probes > 0)
    assert all(h.closed for h in opener.handles if h is not current)


def test_restart_after_stop_runs_a_fresh_thread(checker):
    checker.start(lambda: None, lambda h, e: None)
    first = checker._thread
    checker.stop()
    checker.start(lambda: None, lambda h, e: None)

    assert not first.is_alive()
    assert checker.is_running
    assert checker._thread is not first
