"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Kubernetes liveness probe
- /health/ready: Kubernetes readiness probe
- /stats: engine statistics
"""

import time

from flask import Blueprint, Response, jsonify

from api.state import services
from api.utils import require_api_key
from monitoring import metrics

monitoring_bp = Blueprint('monitoring', __name__)


@monitoring_bp.route('/metrics', methods=['GET'])
def prometheus_metrics():
    """
    Prometheus-compatible metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype='text/plain; charset=utf-8')


@monitoring_bp.route('/metrics/json', methods=['GET'])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route('/health', methods=['GET'])
def health():
    """
    Basic health check endpoint.

    Returns service status and the state of each dependency.
    """
    return jsonify({
        "status": "healthy",
        "service": "RewardGuard API",
        "version": _get_version(),
        "uptime_seconds": time.time() - services.started_at,
        "checks": {
            "store": _check_store(),
            "services": services.describe(),
        },
    })


@monitoring_bp.route('/health/live', methods=['GET'])
def liveness():
    """
    Kubernetes liveness probe.

    Returns 200 if the application is running.
    """
    return jsonify({"status": "alive"})


@monitoring_bp.route('/health/ready', methods=['GET'])
def readiness():
    """
    Kubernetes readiness probe.

    Returns 200 if the state store is reachable.
    """
    issues = []
    store = _check_store()
    if not store["available"]:
        issues.append(f"store: {store.get('error', 'not available')}")
    if services.identity_oracle is None:
        issues.append("identity_oracle: not configured")
    if services.ledger is None:
        issues.append("ledger: not configured")

    if issues:
        return jsonify({"status": "not_ready", "issues": issues}), 503
    return jsonify({"status": "ready"})


@monitoring_bp.route('/stats', methods=['GET'])
@require_api_key
def stats():
    engine = services.require_engine()
    data = engine.get_stats()
    if services.sweeper is not None:
        data["sweeper"] = services.sweeper.get_status()
    return jsonify(data)


def _get_version() -> str:
    """Get application version."""
    try:
        from importlib.metadata import version
        return version("rewardguard")
    except Exception:
        return "0.1.0"


def _check_store() -> dict:
    """Check state store status."""
    if services.engine is None:
        return {"status": "error", "available": False, "error": "not initialized"}
    try:
        store = services.engine.store
        available = store.is_available()
        return {
            "status": "ok" if available else "degraded",
            "available": available,
            "backend": store.__class__.__name__,
        }
    except Exception as e:
        return {"status": "error", "available": False, "error": str(e)}


def _update_dynamic_metrics():
    """Update gauges before export."""
    if services.engine is None:
        return
    try:
        engine_stats = services.engine.get_stats()
        metrics.set_gauge("active_sessions", engine_stats["sessions"]["active_sessions"])
        metrics.set_gauge("active_challenges", engine_stats["active_challenges"])
        metrics.set_gauge("pending_reverifications", engine_stats["pending_reverifications"])
        metrics.set_gauge("store_available", 1 if engine_stats["store"]["available"] else 0)
    except Exception:
        metrics.set_gauge("store_available", 0)
