"""
Database connection and session management for Userbase.

PostgreSQL (or SQLite for tests) through SQLAlchemy, plus the optional Redis
connection used for rate limit storage and health reporting.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

import redis
from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

from userbase.config import get_config
from userbase.models import Base

logger = logging.getLogger(__name__)

# Global database engine and session factory
_engine = None
_SessionFactory = None
_redis_client = None


def get_database_url() -> str:
    """
    Get database URL from configuration.

    Returns:
        Database connection URL
    """
    config = get_config()
    db_url = config.get("DATABASE_URL")

    if not db_url:
        # Build from components if DATABASE_URL not provided
        db_host = config.get("DB_HOST", "localhost")
        db_port = config.get("DB_PORT", 5432)
        db_user = config.get("DB_USER", "userbase")
        db_password = config.get("DB_PASSWORD") or ""
        db_name = config.get("DB_NAME", "userbase")

        db_url = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"

    return db_url


def init_database(db_url: Optional[str] = None, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize database engine and session factory.

    Args:
        db_url: Connection URL; read from configuration when omitted
        echo: If True, log all SQL statements
        create_tables: If True, create all tables (use migrations in production)
    """
    global _engine, _SessionFactory

    if _engine is not None:
        logger.warning("Database already initialized")
        return

    config = get_config()
    db_url = db_url or get_database_url()
    connect_timeout = config.get("DB_CONNECT_TIMEOUT", 5)
    statement_timeout_ms = config.get("DB_STATEMENT_TIMEOUT_MS", 3000)

    engine_kwargs = {
        "echo": echo,
        "pool_pre_ping": True,
    }

    if db_url.startswith("sqlite"):
        # SQLite waits at most connect_timeout seconds on a locked database.
        engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": connect_timeout}
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            # Every connection to an in-memory database is a new database.
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(
            {
                "pool_size": 10,
                "max_overflow": 20,
                "pool_recycle": 3600,
                "pool_timeout": connect_timeout,
                "connect_args": {
                    "connect_timeout": connect_timeout,
                    "options": f"-c timezone=utc -c statement_timeout={statement_timeout_ms}",
                },
            }
        )

    _engine = create_engine(db_url, **engine_kwargs)

    @event.listens_for(_engine, "connect")
    def receive_connect(dbapi_conn, connection_record):
        """Handle new database connections."""
        if db_url.startswith("sqlite"):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
        logger.debug("New database connection established")

    # Create session factory with scoped sessions (thread-safe)
    session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    _SessionFactory = scoped_session(session_factory)

    if create_tables:
        logger.warning("Creating database tables - use migrations in production!")
        Base.metadata.create_all(_engine)

    logger.info(f"Database initialized: {db_url.split('@')[1] if '@' in db_url else db_url.split(':')[0]}")


def get_session() -> Session:
    """
    Get a database session.

    Returns:
        SQLAlchemy session instance

    Raises:
        RuntimeError: If database not initialized
    """
    if _SessionFactory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")

    return _SessionFactory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Provide a transactional scope for database operations.

    Usage:
        with session_scope() as session:
            identity = session.query(Identity).filter_by(id=identity_id).first()
            session.add(new_object)
            # Automatically commits on success, rolls back on error

    Yields:
        Database session
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.debug(f"Database transaction rolled back: {type(e).__name__}")
        raise
    finally:
        session.close()


def remove_session() -> None:
    """Discard the thread-local session at the end of a request."""
    if _SessionFactory is not None:
        _SessionFactory.remove()


def close_database() -> None:
    """
    Close database connections and clean up.
    """
    global _engine, _SessionFactory

    if _SessionFactory:
        _SessionFactory.remove()
        _SessionFactory = None

    if _engine:
        _engine.dispose()
        _engine = None

    logger.info("Database connections closed")


def check_database_health() -> dict:
    """
    Check database connection health.

    Returns:
        Dictionary with health status
    """
    if _engine is None:
        return {"status": "unavailable", "database": "sql", "connected": False, "error": "Database not initialized"}

    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))

        return {"status": "healthy", "database": _engine.dialect.name, "connected": True}
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {type(e).__name__}")
        return {"status": "unhealthy", "database": _engine.dialect.name, "connected": False, "error": str(e)}


# ============================================================================
# Redis Connection Management
# ============================================================================


def init_redis() -> None:
    """
    Initialize Redis connection used for rate limit storage.
    """
    global _redis_client

    if _redis_client is not None:
        logger.warning("Redis already initialized")
        return

    config = get_config()

    if not (config.get("REDIS_URL") or config.get("REDIS_HOST")):
        logger.info("Redis not configured; rate limits use in-process storage")
        return

    try:
        if config.get("REDIS_URL"):
            _redis_client = redis.Redis.from_url(
                config["REDIS_URL"],
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
        else:
            _redis_client = redis.Redis(
                host=config["REDIS_HOST"],
                port=config.get("REDIS_PORT", 6379),
                password=config.get("REDIS_PASSWORD"),
                db=config.get("REDIS_DB", 0),
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
            )

        _redis_client.ping()

        logger.info("Redis initialized")
    except redis.RedisError as e:
        logger.error(f"Failed to initialize Redis: {e}")
        _redis_client = None


def close_redis() -> None:
    """
    Close Redis connection.
    """
    global _redis_client

    if _redis_client:
        _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


def check_redis_health() -> dict:
    """
    Check Redis connection health.

    Returns:
        Dictionary with health status
    """
    if _redis_client is None:
        return {"status": "unavailable", "cache": "redis", "connected": False, "error": "Redis not initialized"}

    try:
        _redis_client.ping()
        info = _redis_client.info()

        return {
            "status": "healthy",
            "cache": "redis",
            "connected": True,
            "version": info.get("redis_version"),
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
    except redis.RedisError as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "cache": "redis", "connected": False, "error": str(e)}


# ============================================================================
# Initialization Helper
# ============================================================================


def init_all(db_url: Optional[str] = None, echo: bool = False, create_tables: bool = False) -> None:
    """
    Initialize both database and Redis.

    Args:
        db_url: Connection URL; read from configuration when omitted
        echo: If True, log all SQL statements
        create_tables: If True, create database tables
    """
    db_url = db_url or get_database_url()
    if not create_tables and db_url.startswith("sqlite"):
        create_tables = True

    init_database(db_url=db_url, echo=echo, create_tables=create_tables)
    init_redis()

    logger.info("All database connections initialized")


def close_all() -> None:
    """
    Close all database connections.
    """
    close_database()
    close_redis()

    logger.info("All database connections closed")


def get_health_status() -> dict:
    """
    Get health status of all database connections.

    Returns:
        Dictionary with health status
    """
    return {"database": check_database_health(), "redis": check_redis_health()}
