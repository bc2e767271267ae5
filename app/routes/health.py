"""Lightweight health probe endpoint.

Exposes /healthz for container / LB health checks. The probe goes through
the connection manager, so a caller-visible failure means the retry budget
is spent (or the target is not configured), not a transient blip.
"""
from __future__ import annotations

from typing import Any

from flask import Blueprint, jsonify

from app.db import current_manager
from app.db.errors import ConfigurationError, DatabaseError
from app.db.handle import PROBE_SQL
from app.utils.logging import get_logger

LOG = get_logger("health")

bp = Blueprint("health", __name__)


@bp.route("/healthz", methods=["GET"])
def healthz():
    db_ok = True
    try:
        current_manager().connect().execute(PROBE_SQL)
    except (DatabaseError, ConfigurationError) as exc:
        db_ok = False
        LOG.debug("Health DB probe failed: %s", exc)
    except Exception as exc:
        # driver errors from a handle dropped between health ticks
        db_ok = False
        LOG.debug("Health DB probe raised: %s", exc)
    status_code = 200 if db_ok else 500
    return jsonify({"status": "ok" if db_ok else "degraded", "db": db_ok}), status_code


def register_health(app: Any) -> None:
    if getattr(app, "_health_bp", None):  # idempotent
        return
    app.register_blueprint(bp)
    setattr(app, "_health_bp", bp)
    LOG.debug("health blueprint registered")


__all__ = ["register_health"]
