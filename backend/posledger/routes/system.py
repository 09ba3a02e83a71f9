# backend/posledger/routes/system.py
"""
System health and version endpoints.

/health checks the dependencies the ledger needs to take writes:
database connectivity, the ledger schema, and the session table.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import LedgerTransaction, Product, SessionToken, User
from ..services import schema_service
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__)

API_VERSION = "1.0.0"


def _timed(check):
    started = time.perf_counter()
    result = check()
    result["latency_ms"] = round((time.perf_counter() - started) * 1000, 2)
    return result


def check_database_health() -> dict:
    try:
        return {
            "status": "healthy",
            "details": {
                "products": db.session.query(Product).count(),
                "transactions": db.session.query(LedgerTransaction).count(),
                "users": db.session.query(User).count(),
            },
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": "Database error"}


def check_ledger_schema_health() -> dict:
    try:
        missing = schema_service.missing_schema_objects()
    except Exception:
        current_app.logger.exception("Ledger schema check failed")
        return {"status": "unhealthy", "error": "Schema inspection failed"}
    if missing:
        return {"status": "unhealthy", "error": "Ledger schema incomplete", "missing": missing}
    return {"status": "healthy"}


def check_session_service_health() -> dict:
    now = utcnow()
    expired = db.case((SessionToken.expires_at < now, 1), else_=0)
    try:
        total, pending = db.session.query(
            db.func.count(SessionToken.id), db.func.coalesce(db.func.sum(expired), 0)
        ).filter(SessionToken.is_revoked.is_(False)).one()
    except Exception:
        current_app.logger.exception("Session service health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "error": "Session service error"}
    return {
        "status": "healthy",
        "details": {"active_sessions": total - pending, "expired_pending_cleanup": pending},
    }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: all checks healthy
    - 503: one or more checks unhealthy
    """
    started = time.perf_counter()

    checks = {
        "database": _timed(check_database_health),
        "ledger_schema": _timed(check_ledger_schema_health),
        "session_service": _timed(check_session_service_health),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())

    response = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "checks": checks,
    }
    return response, 200 if healthy else 503


@system_bp.get("/version")
def version():
    """Non-sensitive deployment information."""
    return {
        "api_version": API_VERSION,
        "environment": "production" if not current_app.debug else "development",
        "python_version": sys.version.split()[0],
        "server_time": to_utc_z(utcnow()),
    }
