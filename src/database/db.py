"""Database connection layer and status-record CRUD with SQLAlchemy."""

import time
from contextlib import contextmanager
from datetime import datetime
from functools import wraps
from typing import Generator

from sqlalchemy import create_engine, exc, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.database.models import AnalysisResult, Base, ResultStatus
from src.utils.config import get_settings
from src.utils.logging_config import get_logger

# Global engine and session factory
_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


class DatabaseError(Exception):
    """Base exception for database errors."""


class DatabaseConnectionError(DatabaseError):
    """Exception raised when database connection fails."""


class DatabaseRetryError(DatabaseError):
    """Exception raised when all retry attempts are exhausted."""


def _get_logger():
    """Get logger instance lazily to avoid import-time config loading."""
    return get_logger(__name__)


def _is_transient_error(error: Exception) -> bool:
    """
    Check if the error is transient and should be retried.

    Args:
        error: The exception to check

    Returns:
        True if the error is transient, False otherwise
    """
    if isinstance(error, exc.OperationalError):
        return True

    error_str = str(error).lower()
    transient_keywords = [
        "connection refused",
        "connection reset",
        "connection timed out",
        "server closed the connection",
        "could not connect",
        "connection lost",
        "deadlock",
        "lock timeout",
        "database is locked",
        "connection pool exhausted",
    ]

    return any(keyword in error_str for keyword in transient_keywords)


def retry_on_transient_error(max_retries: int | None = None, delay: float | None = None):
    """
    Decorator to retry database operations on transient errors.

    The wrapped callable must open its own session so that every attempt
    runs in a fresh transaction.

    Args:
        max_retries: Maximum number of retry attempts (uses config default if None)
        delay: Initial delay between retries in seconds (uses config default if None)

    Returns:
        Decorated function with retry logic
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            settings = get_settings()
            retries = max_retries if max_retries is not None else settings.DB_MAX_RETRIES
            retry_delay = delay if delay is not None else settings.DB_RETRY_DELAY

            last_error = None
            for attempt in range(retries + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    last_error = e

                    if not _is_transient_error(e):
                        _get_logger().error("Non-transient database error: %s", e)
                        raise

                    if attempt < retries:
                        wait_time = retry_delay * (2**attempt)
                        _get_logger().warning(
                            "Transient database error (attempt %d/%d): %s. Retrying in %.2fs...",
                            attempt + 1,
                            retries + 1,
                            e,
                            wait_time,
                        )
                        time.sleep(wait_time)
                    else:
                        _get_logger().error(
                            "All %d retry attempts exhausted for database operation", retries + 1
                        )

            raise DatabaseRetryError(
                f"Failed after {retries + 1} attempts. Last error: {last_error}"
            ) from last_error

        return wrapper

    return decorator


def init_db(database_url: str | None = None) -> None:
    """
    Initialize database engine and session factory.

    SQLite URLs share a single connection across threads so that an
    in-memory database stays visible to every session; other backends get
    a sized connection pool.

    Args:
        database_url: Override for DATABASE_URL

    Raises:
        DatabaseConnectionError: If no database URL is configured
        DatabaseError: If engine creation fails
    """
    global _engine, _session_factory

    settings = get_settings()
    database_url = database_url or settings.get_database_url()

    if not database_url:
        raise DatabaseConnectionError(
            "DATABASE_URL is not configured. Please set it in environment variables."
        )

    try:
        _get_logger().info("Initializing database connection...")

        if database_url.startswith("sqlite"):
            _engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=settings.DEBUG,
            )
        else:
            _engine = create_engine(
                database_url,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_pre_ping=True,  # Verify connections before using them
                echo=settings.DEBUG,  # Log SQL queries in debug mode
            )

        _session_factory = sessionmaker(
            bind=_engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )

        _get_logger().info("Database initialized successfully")

    except Exception as e:
        _get_logger().error("Failed to initialize database: %s", e)
        raise DatabaseError(f"Database initialization failed: {e}") from e


def get_engine() -> Engine:
    """
    Get the SQLAlchemy engine instance.

    Raises:
        DatabaseError: If engine is not initialized
    """
    if _engine is None:
        raise DatabaseError("Database engine not initialized. Call init_db() first.")
    return _engine


def create_tables() -> None:
    """Create any missing tables for all models."""
    Base.metadata.create_all(get_engine())
    _get_logger().info("Database schema is up to date")


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Commits on success, rolls back on error and always closes the session.

    Usage:
        with get_session() as session:
            result = session.execute(...)

    Raises:
        DatabaseError: If session factory is not initialized
    """
    if _session_factory is None:
        raise DatabaseError("Database session factory not initialized. Call init_db() first.")

    session = _session_factory()
    try:
        yield session
        session.commit()
        _get_logger().debug("Database session committed successfully")
    except Exception as e:
        session.rollback()
        _get_logger().error("Database session rolled back due to error: %s", e)
        raise
    finally:
        session.close()


@retry_on_transient_error()
def health_check() -> bool:
    """
    Check database connectivity with a trivial query.

    Raises:
        DatabaseError: If engine is not initialized
        DatabaseRetryError: If all retry attempts fail
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            _get_logger().info("Database health check passed")
            return True
    except Exception as e:
        _get_logger().error("Database health check failed: %s", e)
        raise


def close_db() -> None:
    """
    Close database connections and cleanup resources.

    Disposes of the engine and clears global state.
    """
    global _engine, _session_factory

    if _engine is not None:
        _get_logger().info("Closing database connections...")
        _engine.dispose()
        _engine = None
        _session_factory = None
        _get_logger().info("Database connections closed")


# ============================================================================
# Status record CRUD
# ============================================================================


def create_result(
    session: Session,
    *,
    simulation_id: str,
    org_name: str,
    status: ResultStatus = ResultStatus.PENDING,
) -> AnalysisResult:
    """
    Create a new status record.

    Args:
        session: SQLAlchemy session (caller must commit)
        simulation_id: Unique simulation identifier
        org_name: Organization the analysis runs for
        status: Initial status

    Returns:
        Created AnalysisResult instance

    Raises:
        IntegrityError: If simulation_id already exists
    """
    result = AnalysisResult(simulation_id=simulation_id, org_name=org_name, status=status)
    session.add(result)
    session.flush()
    session.refresh(result)
    return result


def get_result_by_id(session: Session, result_id: int) -> AnalysisResult | None:
    """Get a status record by its primary key."""
    return session.get(AnalysisResult, result_id)


def get_result_by_simulation_id(session: Session, simulation_id: str) -> AnalysisResult | None:
    """Get a status record by simulation ID."""
    return session.scalars(
        select(AnalysisResult).where(AnalysisResult.simulation_id == simulation_id)
    ).first()


def get_results_by_org_name(session: Session, org_name: str) -> list[AnalysisResult]:
    """List an organization's records, newest first."""
    return list(
        session.scalars(
            select(AnalysisResult)
            .where(AnalysisResult.org_name == org_name)
            .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc())
        )
    )


def get_results_by_status(session: Session, status: ResultStatus) -> list[AnalysisResult]:
    """List records in a given status, newest first."""
    return list(
        session.scalars(
            select(AnalysisResult)
            .where(AnalysisResult.status == status)
            .order_by(AnalysisResult.created_at.desc(), AnalysisResult.id.desc())
        )
    )


def _require_result(session: Session, result_id: int) -> AnalysisResult:
    result = session.get(AnalysisResult, result_id)
    if result is None:
        raise ValueError(f"Result with id {result_id} not found")
    return result


def attach_task_id(session: Session, result_id: int, task_id: str) -> AnalysisResult:
    """
    Record the broker-assigned task ID on a status record.

    Raises:
        ValueError: If the record does not exist
    """
    result = _require_result(session, result_id)
    result.task_id = task_id
    session.flush()
    return result


def update_result_status(session: Session, result_id: int, status: ResultStatus) -> AnalysisResult:
    """Set the status of a record (no timestamp handling)."""
    result = _require_result(session, result_id)
    result.status = status
    session.flush()
    return result


def update_result_start_time(session: Session, result_id: int, start_time: datetime) -> AnalysisResult:
    """Set the start time of a record."""
    result = _require_result(session, result_id)
    result.start_time = start_time
    session.flush()
    return result


def update_result_end_time(session: Session, result_id: int, end_time: datetime) -> AnalysisResult:
    """Set the end time of a record."""
    result = _require_result(session, result_id)
    result.end_time = end_time
    session.flush()
    return result


def update_result_status_with_times(
    session: Session,
    result_id: int,
    status: ResultStatus,
    *,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
) -> AnalysisResult:
    """
    Set status and optionally the timestamps in one flush.

    Timestamps passed as None are left untouched.
    """
    result = _require_result(session, result_id)
    result.status = status
    if start_time is not None:
        result.start_time = start_time
    if end_time is not None:
        result.end_time = end_time
    session.flush()
    return result


def delete_result(session: Session, result_id: int) -> bool:
    """
    Delete a record.

    Returns:
        True if a record was deleted, False if none existed
    """
    result = session.get(AnalysisResult, result_id)
    if result is None:
        return False
    session.delete(result)
    session.flush()
    return True
