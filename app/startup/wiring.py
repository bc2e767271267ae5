"""Application initialization / wiring.

Builds the process-wide connection manager, binds it to the Flask app and
registers the health route. The connection itself is opened lazily on the
first ``connect()``.
"""
from __future__ import annotations

from typing import Any, Optional

from app import config as app_config
from app.db import EXTENSION_KEY
from app.db.manager import ConnectionManager, build_manager
from app.routes.health import register_health
from app.startup.shutdown import install_shutdown_hooks
from app.utils.logging import get_logger

LOG = get_logger("app.startup")


def init_app(
    app: Any,
    manager: Optional[ConnectionManager] = None,
    *,
    shutdown_hooks: Optional[bool] = None,
) -> ConnectionManager:
    LOG.debug("init_app starting")
    if manager is None:
        manager = build_manager()
    app.extensions[EXTENSION_KEY] = manager
    register_health(app)
    if shutdown_hooks is None:
        shutdown_hooks = app_config.install_signal_hooks()
    if shutdown_hooks:
        install_shutdown_hooks(manager)
    LOG.info("App startup wiring complete (%s)", app_config.summarize_runtime_config())
    return manager


__all__ = ["init_app"]
