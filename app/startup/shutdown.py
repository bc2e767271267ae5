"""Release the database connection on process shutdown."""
from __future__ import annotations

import atexit
import os
import signal
import threading
from typing import Any, Iterable

from app.db.manager import ConnectionManager
from app.utils.logging import get_logger

LOG = get_logger("app.shutdown")

DEFAULT_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_shutdown_hooks(manager: ConnectionManager, signals: Iterable[int] = DEFAULT_SIGNALS) -> bool:
    """Hook ``manager.disconnect`` to atexit and the given signals.

    Previously installed handlers keep running after the disconnect; a
    default disposition is re-delivered so the process still terminates.
    Signal handlers can only be set from the main thread; elsewhere only the
    atexit hook is registered and False is returned.
    """
    atexit.register(manager.disconnect)
    if threading.current_thread() is not threading.main_thread():
        LOG.debug("Not on main thread; signal hooks skipped (atexit only)")
        return False
    for signum in signals:
        previous = signal.getsignal(signum)
        signal.signal(signum, _make_handler(manager, previous))
    LOG.debug("Shutdown hooks installed")
    return True


def _make_handler(manager: ConnectionManager, previous: Any):
    def _handler(signum, frame):
        LOG.info("Received signal %s; releasing database connection", signum)
        try:
            manager.disconnect()
        except Exception:
            LOG.exception("Error releasing database connection during shutdown")
        if callable(previous):
            previous(signum, frame)
        elif previous == signal.SIG_DFL:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)

    return _handler


__all__ = ["install_shutdown_hooks"]
