# backend/erpcore/routes/system.py
"""
Health endpoint.

Two checks:
- database: reachable, document counts per family
- outbox:   approval backlog; claims older than OUTBOX_CLAIM_TIMEOUT_SECONDS
            mark the service as degraded (run `flask outbox reconcile`)

HTTP 503 only when the database is unreachable.
"""

import time
from datetime import timedelta

from flask import Blueprint, jsonify, current_app
from sqlalchemy import func

from ..extensions import db
from ..models import DocumentHeader, SubmissionOutbox
from ..services.submission_service import OUTBOX_IN_FLIGHT, OUTBOX_PENDING
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def check_database_health() -> dict:
    started = time.perf_counter()
    try:
        per_family = dict(
            db.session.query(DocumentHeader.family, func.count(DocumentHeader.id))
            .group_by(DocumentHeader.family)
            .all()
        )
    except Exception:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(started), "error": "Database error"}

    return {
        "status": "healthy",
        "latency_ms": _elapsed_ms(started),
        "details": {
            "documents": sum(per_family.values()),
            "by_family": per_family,
        },
    }


def check_outbox_health() -> dict:
    started = time.perf_counter()
    try:
        backlog = dict(
            db.session.query(SubmissionOutbox.status, func.count(SubmissionOutbox.id))
            .group_by(SubmissionOutbox.status)
            .all()
        )
        timeout = int(current_app.config.get("OUTBOX_CLAIM_TIMEOUT_SECONDS", 300))
        stale = (
            db.session.query(func.count(SubmissionOutbox.id))
            .filter(
                SubmissionOutbox.status == OUTBOX_IN_FLIGHT,
                SubmissionOutbox.claimed_at < utcnow() - timedelta(seconds=timeout),
            )
            .scalar()
        )
        oldest_pending = (
            db.session.query(func.min(SubmissionOutbox.enqueued_at))
            .filter(SubmissionOutbox.status == OUTBOX_PENDING)
            .scalar()
        )
    except Exception:
        current_app.logger.exception("Outbox health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(started), "error": "Database error"}

    return {
        "status": "degraded" if stale else "healthy",
        "latency_ms": _elapsed_ms(started),
        "details": {
            "backlog": backlog,
            "stale_claims": int(stale or 0),
            "oldest_pending": to_utc_z(oldest_pending),
        },
    }


@system_bp.get("/health")
def health():
    database = check_database_health()
    outbox = check_outbox_health()

    if database["status"] == "unhealthy":
        overall = "unhealthy"
    elif outbox["status"] != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    status = 503 if overall == "unhealthy" else 200
    return jsonify({"status": overall, "database": database, "outbox": outbox}), status
