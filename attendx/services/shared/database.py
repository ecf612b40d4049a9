"""
SQLAlchemy engine and session factory for the AttendX access core.
Every service module imports from here.

DATABASE_URL defaults to the docker-compose PostgreSQL instance.
Override via environment variable for local dev (sqlite:///./attendx.db) or tests.
Every connection is created with a bounded timeout so storage calls fail
instead of hanging.
"""

import time
from datetime import datetime, timezone
from typing import Callable, TypeVar

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base

from attendx.services.shared.settings import (
    DATABASE_URL,
    STORAGE_TIMEOUT_SECONDS,
    STORAGE_MAX_RETRIES,
    STORAGE_RETRY_BACKOFF_SECONDS,
)

logger = structlog.get_logger()

T = TypeVar("T")

Base = declarative_base()


def make_engine(url: str = DATABASE_URL, timeout_seconds: float = STORAGE_TIMEOUT_SECONDS) -> Engine:
    """Create an engine whose connections give up after `timeout_seconds`."""
    if url.startswith("sqlite"):
        # sqlite: `timeout` bounds the wait on a locked database file
        return create_engine(
            url,
            connect_args={"timeout": timeout_seconds, "check_same_thread": False},
        )
    timeout_ms = int(timeout_seconds * 1000)
    # pool_pre_ping=True drops dead connections automatically
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_timeout=timeout_seconds,
        connect_args={
            "connect_timeout": max(1, int(timeout_seconds)),
            "options": f"-c statement_timeout={timeout_ms} -c lock_timeout={timeout_ms}",
        },
    )


engine = make_engine()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency: yields a DB session and closes it when done."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_all_tables(bind: Engine | None = None) -> None:
    """Create all ORM tables. Called at service startup."""
    from attendx.services.shared import models  # noqa: F401 - ensures models are registered
    Base.metadata.create_all(bind=bind or engine)


def utc(dt: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from backends without tz support (sqlite)."""
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def with_storage_retry(
    fn: Callable[[], T],
    operation: str,
    attempts: int = STORAGE_MAX_RETRIES,
    backoff_seconds: float = STORAGE_RETRY_BACKOFF_SECONDS,
) -> T:
    """
    Run a storage call, retrying transient I/O failures with exponential backoff.
    Policy denials are never retried here - only OperationalError / TimeoutError.
    The last failure is re-raised so the caller can fail closed.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except (OperationalError, TimeoutError) as exc:
            if attempt > attempts:
                logger.error("storage_retries_exhausted", operation=operation, attempts=attempt, error=str(exc))
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.warning("storage_retry", operation=operation, attempt=attempt, delay=delay, error=str(exc))
            time.sleep(delay)
