# backend/commerce/routes/system.py
"""
System health endpoint.

Checks the database and reports whether the stock ledger is reachable, for
load balancer probes and deployment debugging.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import InventoryItem, Order
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Run cheap counts against the order and inventory tables."""
    start_time = time.time()
    try:
        order_count = db.session.query(Order).count()
        inventory_count = db.session.query(InventoryItem).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "orders": order_count,
                "inventory_items": inventory_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy
    - 503: database unavailable
    """
    database_health = check_database_health()
    healthy = database_health["status"] == "healthy"
    response = {
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": {"database": database_health},
    }
    return response, 200 if healthy else 503
