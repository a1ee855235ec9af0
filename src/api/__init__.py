"""
RewardGuard API Package.

This package contains the Flask blueprints for the RewardGuard API.

Blueprints:
- rewards: ad view sessions, quizzes, behavior signals, daily quota
- challenges: interactive challenges and re-verification
- monitoring: health checks, metrics and engine statistics
"""

import logging
import os

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from api.challenges import challenges_bp
from api.monitoring import monitoring_bp
from api.rewards import rewards_bp
from api.state import init_services, services
from external_services import IdentityOracle, LedgerService
from integrity_engine import IntegrityEngine
from integrity_errors import RewardGuardError
from monitoring import setup_request_logging

logger = logging.getLogger(__name__)

# List of all blueprints for registration
# Tuple format: (blueprint, url_prefix)
ALL_BLUEPRINTS = [
    (rewards_bp, ''),
    (challenges_bp, ''),
    (monitoring_bp, ''),
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"success": False, "error": e.name, "message": e.description}), e.code

    @app.errorhandler(RewardGuardError)
    def handle_fault(e: RewardGuardError):
        logger.error(f"Request failed: {e}")
        return jsonify({"success": False, "error": type(e).__name__, "message": e.message}), 503

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception("Unhandled error while processing request")
        return jsonify({"success": False, "error": "INTERNAL_ERROR"}), 500


def create_app(
    engine: IntegrityEngine | None = None,
    identity_oracle: IdentityOracle | None = None,
    ledger: LedgerService | None = None,
    start_sweeper: bool | None = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        engine: Engine to serve (default: built from the environment)
        identity_oracle: Oracle for re-verification (default: from environment)
        ledger: XP ledger (default: from environment)
        start_sweeper: Run background cleanups (default: SWEEPER_ENABLED, true)
    """
    app = Flask(__name__)
    app.config['JSON_SORT_KEYS'] = False

    init_services(engine, identity_oracle, ledger)
    register_blueprints(app)
    register_error_handlers(app)
    setup_request_logging(app)

    if start_sweeper is None:
        start_sweeper = os.getenv("SWEEPER_ENABLED", "true").lower() == "true"
    if start_sweeper:
        services.sweeper.start()

    return app


def run_server():
    """Run the Flask development server."""
    from monitoring import configure_logging

    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5000))

    app = create_app()
    logger.info(f"RewardGuard API listening on http://{host}:{port}")
    app.run(host=host, port=port, debug=os.getenv("FLASK_DEBUG", "").lower() == "true")
