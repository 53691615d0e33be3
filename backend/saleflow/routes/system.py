# backend/saleflow/routes/system.py
"""
System health endpoint.

Reports database connectivity and whether the M-Pesa gateway is configured,
for deployment debugging.
"""

import time
from flask import Blueprint, current_app
from sqlalchemy import text

from ..extensions import db

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_mpesa_config() -> dict:
    required = (
        "MPESA_CONSUMER_KEY",
        "MPESA_CONSUMER_SECRET",
        "MPESA_BUSINESS_SHORTCODE",
        "MPESA_PASSKEY",
        "MPESA_CALLBACK_URL",
    )
    missing = [key for key in required if not current_app.config.get(key)]
    return {
        "status": "configured" if not missing else "unconfigured",
        "environment": current_app.config.get("MPESA_ENVIRONMENT"),
        "missing": missing,
    }


@system_bp.get("/health")
def health():
    database = check_database_health()
    status = "ok" if database["status"] == "healthy" else "degraded"
    return {
        "status": status,
        "checks": {
            "database": database,
            "mpesa": check_mpesa_config(),
        },
    }, 200 if status == "ok" else 503
