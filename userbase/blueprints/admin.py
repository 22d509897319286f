"""
Admin Blueprint - Health Checks and Metrics

Provides monitoring endpoints for infrastructure health.
"""

import logging
import time
from typing import Any, Dict

from flask import Blueprint, Response, current_app, jsonify
from prometheus_client import CONTENT_TYPE_LATEST

from userbase.database import check_redis_health, get_health_status
from userbase.metrics import render_latest
from userbase.security import limiter

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)


@admin_bp.route("/health")
@limiter.exempt
def health():
    """
    Health check endpoint.

    Returns:
        JSON health status with component details; 503 when storage is down
    """
    cfg = current_app.config["APP_CONFIG"]
    health_status: Dict[str, Any] = {
        "status": "healthy",
        "timestamp": time.time(),
        "service": cfg.get("APP_NAME"),
        "version": cfg.get("APP_VERSION"),
        "components": {},
    }

    if cfg.get("STORAGE_BACKEND") == "sql":
        components = get_health_status()
    else:
        components = {
            "database": {"status": "healthy", "database": "memory", "connected": True},
            "redis": check_redis_health(),
        }
    health_status["components"] = components

    if components["database"]["status"] != "healthy":
        logger.warning("Health check: database unavailable")
        health_status["status"] = "degraded"
    redis_configured = bool(cfg.get("REDIS_URL") or cfg.get("REDIS_HOST"))
    if redis_configured and components["redis"]["status"] != "healthy":
        logger.warning("Health check: redis unavailable")
        health_status["status"] = "degraded"

    return jsonify(health_status), 200 if health_status["status"] == "healthy" else 503


@admin_bp.route("/metrics")
@limiter.exempt
def metrics_prometheus():
    """Prometheus metrics in text exposition format."""
    return Response(render_latest(), content_type=CONTENT_TYPE_LATEST)
