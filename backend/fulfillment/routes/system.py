# backend/fulfillment/routes/system.py
"""
System health endpoint.

Checks the database and the two invariants that must always hold:
the movement ledger balances and no terminal session still holds orders.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Store, SessionReservation, WorkSession
from ..models.sessions import TERMINAL_SESSION_STATUSES
from ..services import inventory_service
from fulfillment.time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Check database connectivity with a trivial query."""
    start_time = time.time()
    try:
        store_count = db.session.query(Store).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"stores": store_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_ledger_health() -> dict:
    """
    Conservation over every product, plus stale reservations.
    Either one failing is reported as degraded: the API still serves requests.
    """
    start_time = time.time()
    try:
        unbalanced = [r["product_id"] for r in inventory_service.verify_ledger() if not r["balanced"]]
        stale = (
            db.session.query(SessionReservation.id)
            .join(WorkSession, WorkSession.id == SessionReservation.session_id)
            .filter(WorkSession.status.in_(TERMINAL_SESSION_STATUSES))
            .count()
        )
        elapsed_ms = (time.time() - start_time) * 1000
        status = "degraded" if unbalanced or stale else "healthy"
        return {
            "status": status,
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "unbalanced_product_ids": unbalanced,
                "stale_reservations": stale,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Ledger health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Ledger check error",
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: healthy or degraded
    - 503: database unreachable
    """
    start_time = time.time()

    database_health = check_database_health()
    ledger_health = check_ledger_health()

    all_checks = [database_health, ledger_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "ledger": ledger_health,
        },
    }
    return response, http_status
