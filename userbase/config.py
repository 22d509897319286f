"""Configuration management for Userbase.

Centralises environment variable loading and validation logic while keeping the
public API intentionally simple.
"""

from __future__ import annotations

import os
import warnings
from typing import Any, List, Mapping, Optional, TypedDict

_TRUTHY_VALUES = {"1", "true", "yes", "on"}
_DEFAULT_HIVE_NODES = "https://api.hive.blog,https://anyx.io,https://api.openhive.network"


class AppConfig(TypedDict):
    """Typed representation of the application's configuration."""

    APP_NAME: str
    APP_VERSION: str
    FLASK_SECRET_KEY: Optional[str]
    FLASK_ENV: str
    FLASK_DEBUG: bool
    STORAGE_BACKEND: str
    DATABASE_URL: Optional[str]
    DB_HOST: str
    DB_PORT: int
    DB_USER: str
    DB_PASSWORD: Optional[str]
    DB_NAME: str
    DB_CONNECT_TIMEOUT: int
    DB_STATEMENT_TIMEOUT_MS: int
    REDIS_HOST: Optional[str]
    REDIS_PORT: int
    REDIS_PASSWORD: Optional[str]
    REDIS_DB: int
    REDIS_URL: Optional[str]
    SESSION_COOKIE_NAME: str
    CHALLENGE_TTL_MINUTES: int
    RATE_LIMIT_ENABLED: bool
    RATE_LIMIT_DEFAULT: str
    VERIFY_RATE_LIMIT: str
    FORCE_HTTPS: bool
    HIVE_API_NODES: List[str]
    HIVE_API_TIMEOUT: int
    LOG_LEVEL: str
    EXPOSE_ERROR_DETAILS: bool


def _get_env_bool(name: str, default: bool) -> bool:
    """Return an environment variable as a boolean."""

    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in _TRUTHY_VALUES


def _get_env_int(name: str, default: int) -> int:
    """Return an environment variable as an integer, raising on invalid input."""

    raw_value = os.getenv(name)
    if raw_value is None or raw_value == "":
        return default

    try:
        return int(raw_value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer (got {raw_value!r})") from exc


def _get_env_list(name: str, default: str) -> List[str]:
    """Return a comma-separated environment variable as a list of non-empty items."""

    raw_value = os.getenv(name) or default
    return [item.strip() for item in raw_value.split(",") if item.strip()]


def get_config() -> AppConfig:
    """Load application configuration from environment variables."""

    flask_env = os.getenv("FLASK_ENV", "development")
    is_production = flask_env.lower() == "production"

    return {
        # Application Settings
        "APP_NAME": os.getenv("APP_NAME", "Userbase"),
        "APP_VERSION": os.getenv("APP_VERSION", "1.0.0"),
        # Flask Configuration
        "FLASK_SECRET_KEY": os.getenv("FLASK_SECRET_KEY"),
        "FLASK_ENV": flask_env,
        "FLASK_DEBUG": _get_env_bool("FLASK_DEBUG", False),
        # Storage backend: "sql" for PostgreSQL/SQLite, "memory" for local development
        "STORAGE_BACKEND": os.getenv("STORAGE_BACKEND", "sql").strip().lower(),
        # Database Configuration (REQUIRED for production)
        "DATABASE_URL": os.getenv("DATABASE_URL"),
        "DB_HOST": os.getenv("DB_HOST", "localhost"),
        "DB_PORT": _get_env_int("DB_PORT", 5432),
        "DB_USER": os.getenv("DB_USER", "userbase"),
        "DB_PASSWORD": os.getenv("DB_PASSWORD"),
        "DB_NAME": os.getenv("DB_NAME", "userbase"),
        "DB_CONNECT_TIMEOUT": _get_env_int("DB_CONNECT_TIMEOUT", 5),
        "DB_STATEMENT_TIMEOUT_MS": _get_env_int("DB_STATEMENT_TIMEOUT_MS", 3000),
        # Redis Configuration (rate limit storage)
        "REDIS_HOST": os.getenv("REDIS_HOST"),
        "REDIS_PORT": _get_env_int("REDIS_PORT", 6379),
        "REDIS_PASSWORD": os.getenv("REDIS_PASSWORD"),
        "REDIS_DB": _get_env_int("REDIS_DB", 0),
        "REDIS_URL": os.getenv("REDIS_URL") or os.getenv("REDIS_DSN"),
        # Session and challenge settings
        "SESSION_COOKIE_NAME": os.getenv("SESSION_COOKIE_NAME", "userbase_refresh"),
        "CHALLENGE_TTL_MINUTES": _get_env_int("CHALLENGE_TTL_MINUTES", 10),
        # Rate Limiting
        "RATE_LIMIT_ENABLED": _get_env_bool("RATE_LIMIT_ENABLED", True),
        "RATE_LIMIT_DEFAULT": os.getenv("RATE_LIMIT_DEFAULT", "100/hour"),
        "VERIFY_RATE_LIMIT": os.getenv("VERIFY_RATE_LIMIT", "10 per minute"),
        "FORCE_HTTPS": _get_env_bool("FORCE_HTTPS", is_production),
        # Hive JSON-RPC nodes, tried in order
        "HIVE_API_NODES": _get_env_list("HIVE_API_NODES", _DEFAULT_HIVE_NODES),
        "HIVE_API_TIMEOUT": _get_env_int("HIVE_API_TIMEOUT", 5),
        # Logging and error reporting
        "LOG_LEVEL": os.getenv("LOG_LEVEL", "INFO"),
        "EXPOSE_ERROR_DETAILS": _get_env_bool("EXPOSE_ERROR_DETAILS", not is_production),
    }


def validate_config(config: Mapping[str, Any]) -> bool:
    """Validate critical configuration values.

    Args:
        config: Configuration mapping to validate.

    Returns:
        True if configuration is valid, raises ValueError otherwise.
    """

    if config.get("FLASK_ENV") != "production":
        return True

    if not config.get("FLASK_SECRET_KEY"):
        raise ValueError("FLASK_SECRET_KEY must be set for production!")

    if config.get("STORAGE_BACKEND") == "memory":
        raise ValueError("STORAGE_BACKEND=memory is not allowed in production!")

    if config.get("EXPOSE_ERROR_DETAILS"):
        raise ValueError("EXPOSE_ERROR_DETAILS must be disabled in production!")

    if not config.get("DATABASE_URL") and not config.get("DB_PASSWORD"):
        warnings.warn(
            "DATABASE_URL or DB_PASSWORD not set - database connectivity may fail!",
            stacklevel=2,
        )

    return True
