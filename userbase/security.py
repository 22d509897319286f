"""Security helpers: proxy headers, security headers, rate limiting and logging."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from flask import Flask, current_app, g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from werkzeug.middleware.proxy_fix import ProxyFix

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = "100/hour"
DEFAULT_VERIFY_LIMIT = "10 per minute"


def client_identity_key() -> str:
    """Rate limit key: the resolved session when a view has one, else the client address.

    Unverified cookies and Bearer values never pick the bucket, so a caller
    cannot mint fresh buckets by sending random tokens.
    """
    session = g.get("session")
    if session is not None:
        return f"session:{session.id}"
    return get_remote_address()


def verify_limit() -> str:
    return current_app.config.get("VERIFY_RATE_LIMIT") or DEFAULT_VERIFY_LIMIT


limiter = Limiter(key_func=client_identity_key)


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in {"1", "true", "yes", "on"}


def _build_redis_uri(cfg: Mapping[str, Any]) -> str:
    if cfg.get("REDIS_URL"):
        return str(cfg["REDIS_URL"])

    host = cfg.get("REDIS_HOST", "127.0.0.1")
    port = cfg.get("REDIS_PORT", 6379)
    db = cfg.get("REDIS_DB", 0)
    password = cfg.get("REDIS_PASSWORD")
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


def _configure_logging(cfg: Mapping[str, Any]) -> None:
    log_level = str(cfg.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, log_level, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(handler, logging.StreamHandler) for handler in root_logger.handlers):
        handler = logging.StreamHandler()
        fmt = (
            "{\"level\":\"%(levelname)s\",\"msg\":\"%(message)s\",\"name\":\"%(name)s\",\"path\":\"%(pathname)s\","
            "\"lineno\":%(lineno)d}"
        )
        handler.setFormatter(logging.Formatter(fmt))
        root_logger.addHandler(handler)


def init_security(app: Flask, cfg: Mapping[str, Any]) -> Optional[Limiter]:
    """Initialise security middleware, rate limiting and logging."""

    # Respect reverse proxy headers for TLS detection and client IP extraction.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)  # type: ignore[assignment]

    production = str(cfg.get("FLASK_ENV", "development")).strip().lower() == "production"
    force_https = _as_bool(cfg.get("FORCE_HTTPS"), production)
    if not force_https and production:
        logger.warning(
            "FORCE_HTTPS disabled while FLASK_ENV=production – ensure this is intentional before deploying."
        )
    elif force_https:
        logger.debug("HTTPS enforcement enabled")

    # JSON API only: nothing is rendered, so nothing needs to load.
    csp = {"default-src": "'none'", "frame-ancestors": "'none'"}
    Talisman(
        app,
        force_https=force_https,
        force_file_save=False,
        content_security_policy=csp,
        session_cookie_secure=force_https,
        session_cookie_samesite="Lax",
        frame_options="DENY",
        referrer_policy="no-referrer",
    )

    app.config["SESSION_COOKIE_NAME_USERBASE"] = cfg.get("SESSION_COOKIE_NAME") or "userbase_refresh"
    app.config["VERIFY_RATE_LIMIT"] = cfg.get("VERIFY_RATE_LIMIT") or DEFAULT_VERIFY_LIMIT

    enabled = _as_bool(cfg.get("RATE_LIMIT_ENABLED"), True)
    storage_uri = _build_redis_uri(cfg) if cfg.get("REDIS_URL") or cfg.get("REDIS_HOST") else "memory://"
    app.config["RATELIMIT_ENABLED"] = enabled
    app.config["RATELIMIT_DEFAULT"] = cfg.get("RATE_LIMIT_DEFAULT") or DEFAULT_LIMIT
    app.config["RATELIMIT_STORAGE_URI"] = storage_uri
    app.config["RATELIMIT_STRATEGY"] = "fixed-window"
    app.config["RATELIMIT_HEADERS_ENABLED"] = True
    limiter.init_app(app)

    if enabled:
        logger.info(f"Rate limiting enabled | storage={storage_uri.split('://', 1)[0]}")
    else:
        logger.warning("Rate limiting disabled")

    _configure_logging(cfg)
    return limiter if enabled else None
