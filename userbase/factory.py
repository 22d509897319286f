"""
Application Factory for Userbase

Implements the Flask application factory pattern with:
- Repository selection (SQL or in-memory)
- Service wiring for sessions, challenges, linking and profiles
- Security configuration (Talisman, rate limiting)
- JSON error handling
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Mapping, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from userbase.audit_logger import get_audit_logger, init_audit_logger
from userbase.challenges import ChallengeService
from userbase.config import get_config, validate_config
from userbase.database import init_all, remove_session
from userbase.errors import UserbaseError
from userbase.hive import DEFAULT_HIVE_NODES, HiveClient
from userbase.linker import IdentityLinker
from userbase.profiles import ProfileResolver, ProfileService
from userbase.repositories import Repositories
from userbase.security import init_security
from userbase.sessions import SessionValidator
from userbase.signatures import HiveSignatureVerifier, SignatureVerifier

logger = logging.getLogger(__name__)

EXTENSION_KEY = "userbase"


@dataclass
class Services:
    """Per-application service container stored in ``app.extensions``."""

    repositories: Repositories
    sessions: SessionValidator
    challenges: ChallengeService
    linker: IdentityLinker
    profiles: ProfileResolver
    profile_editor: ProfileService
    hive: HiveClient


def build_services(repositories: Repositories, cfg: Mapping[str, Any]) -> Services:
    challenges = ChallengeService(
        repositories.challenges,
        app_name=cfg.get("APP_NAME") or "Userbase",
        ttl=timedelta(minutes=cfg.get("CHALLENGE_TTL_MINUTES") or 10),
    )
    hive = HiveClient(
        nodes=cfg.get("HIVE_API_NODES") or DEFAULT_HIVE_NODES,
        timeout=cfg.get("HIVE_API_TIMEOUT") or 5,
    )
    linker = IdentityLinker(
        repositories.identities,
        challenges,
        SignatureVerifier(),
        hive=hive,
        hive_verifier=HiveSignatureVerifier(),
    )
    return Services(
        repositories=repositories,
        sessions=SessionValidator(repositories.sessions),
        challenges=challenges,
        linker=linker,
        profiles=ProfileResolver(repositories.users, repositories.identities),
        profile_editor=ProfileService(repositories.users),
        hive=hive,
    )


def _select_repositories(cfg: Mapping[str, Any]) -> Repositories:
    backend = cfg.get("STORAGE_BACKEND", "sql")
    if backend == "memory":
        from userbase.storage import build_memory_repositories

        logger.warning("Using in-memory storage; data is lost on restart")
        return build_memory_repositories()

    if backend != "sql":
        raise ValueError(f"Unknown STORAGE_BACKEND: {backend}")

    from userbase.db_storage import build_sql_repositories

    init_all(db_url=cfg.get("DATABASE_URL"))
    return build_sql_repositories()


def create_app(config_override: Optional[Mapping[str, Any]] = None, repositories: Optional[Repositories] = None) -> Flask:
    """
    Create and configure the Flask application using the factory pattern.

    Args:
        config_override: Configuration values layered over the environment
        repositories: Pre-built repositories (tests); skips backend selection

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    cfg = dict(get_config())
    if config_override:
        cfg.update(config_override)
    validate_config(cfg)
    app.config["APP_CONFIG"] = cfg

    app.secret_key = cfg.get("FLASK_SECRET_KEY")

    init_security(app, cfg)
    init_audit_logger()

    if repositories is None:
        try:
            repositories = _select_repositories(cfg)
        except Exception as e:
            logger.error(f"Storage initialization failed: {e}")
            raise

    app.extensions[EXTENSION_KEY] = build_services(repositories, cfg)

    register_blueprints(app)
    register_error_handlers(app)
    register_request_handlers(app)

    logger.info(f"Application factory completed | backend={cfg.get('STORAGE_BACKEND')}")
    return app


def register_blueprints(app: Flask) -> None:
    """Register all application blueprints."""

    from userbase.blueprints.identities import identities_bp
    app.register_blueprint(identities_bp)

    from userbase.blueprints.profile import profile_bp
    app.register_blueprint(profile_bp)

    from userbase.blueprints.session import session_bp
    app.register_blueprint(session_bp)

    # Admin/operations blueprint (health, metrics)
    from userbase.blueprints.admin import admin_bp
    app.register_blueprint(admin_bp)

    logger.debug("All blueprints registered")


def register_error_handlers(app: Flask) -> None:
    """Register global error handlers."""

    audit_logger = get_audit_logger()

    @app.errorhandler(UserbaseError)
    def userbase_error(e: UserbaseError):
        expose = bool(app.config["APP_CONFIG"].get("EXPOSE_ERROR_DETAILS"))
        if e.status_code >= 500:
            audit_logger.log_error(type(e).__name__, e.message, {"operation": e.details.get("operation")})
        return jsonify(e.to_dict(expose_details=expose)), e.status_code

    @app.errorhandler(400)
    def bad_request(e: HTTPException):
        return jsonify({"error": "bad_request", "message": e.description}), 400

    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "forbidden", "message": "Access denied"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "not_found", "message": "Resource not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "method_not_allowed", "message": "Method not allowed"}), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(e: HTTPException):
        return jsonify({"error": "rate_limit_exceeded", "message": e.description}), 429

    @app.errorhandler(500)
    def internal_error(e):
        logger.error(f"Internal server error: {e}", exc_info=True)
        return jsonify({"error": "internal_error", "message": "An unexpected error occurred"}), 500


def register_request_handlers(app: Flask) -> None:
    """Register request teardown handlers."""

    @app.teardown_appcontext
    def cleanup(error=None):
        """Release the thread-local database session."""
        if error:
            logger.error(f"Request cleanup with error: {type(error).__name__}")
        remove_session()
