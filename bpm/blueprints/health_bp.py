"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  liveness probe for load balancers, no I/O
    GET /api/v1/health/live   database round trip, collaborator configuration
                              and the notification outbox backlog

`live` answers 503 only when the database is unreachable. An unconfigured
blob store or mail server is reported but does not make the engine
unhealthy: uploads and SMTP delivery degrade on their own.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select

from bpm.integrations.blob_store import get_blob_store
from bpm.models import db
from bpm.models.notification import (
    OUTBOX_FAILED,
    OUTBOX_PENDING,
    OUTBOX_SENDING,
    NotificationOutbox,
)

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _outbox_backlog() -> dict:
    rows = db.session.execute(
        select(NotificationOutbox.status, func.count())
        .where(NotificationOutbox.status.in_([OUTBOX_PENDING, OUTBOX_SENDING, OUTBOX_FAILED]))
        .group_by(NotificationOutbox.status)
    ).all()
    counts = {status: count for status, count in rows}
    return {
        "pending": counts.get(OUTBOX_PENDING, 0),
        "sending": counts.get(OUTBOX_SENDING, 0),
        "failed": counts.get(OUTBOX_FAILED, 0),
        "enabled": bool(current_app.config.get("NOTIFICATIONS_ENABLED", True)),
    }


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        checks["database"] = {
            "status": "ok",
            "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
        }
        checks["outbox"] = _outbox_backlog()
    except Exception as exc:
        db.session.rollback()
        logger.error("Health check: database unreachable: %s", exc)
        checks["database"] = {"status": "error", "detail": str(exc)}
        healthy = False

    checks["blob_store"] = {
        "status": "configured" if get_blob_store().is_configured() else "not_configured",
    }
    checks["mail"] = {
        "status": "smtp" if current_app.config.get("MAIL_SERVER") else "log_only",
    }

    return jsonify({"status": "ok" if healthy else "degraded", "checks": checks}), (200 if healthy else 503)
