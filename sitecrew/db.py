from typing import Callable, TypeVar

import structlog
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings
from .errors import StorageUnavailableError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory databases live on a single connection shared across threads
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    # Configure connection pool for better performance
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 3600,  # Recycle connections after 1 hour
    }


engine = create_engine(
    settings.database_url,
    future=True,
    pool_pre_ping=True,
    **_engine_kwargs(settings.database_url),
)

# IMPORTANT: do not use scoped_session with async frameworks; create a fresh Session per request
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True, expire_on_commit=False)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class RetryableConflict(Exception):
    """Raised inside a unit of work when a fresh transaction may succeed."""


def run_transaction(db: Session, work: Callable[[Session], T], attempts: int = None) -> T:
    """
    Run ``work`` in its own transaction and commit it.

    Lock waits, deadlocks and serialization failures (``OperationalError``)
    and units of work that raise ``RetryableConflict`` are retried with a
    fresh transaction. Domain errors roll back and propagate untouched.
    """
    attempts = attempts or settings.txn_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            result = work(db)
            db.commit()
            return result
        except (OperationalError, RetryableConflict) as exc:
            db.rollback()
            logger.warning("transaction_retry", attempt=attempt, attempts=attempts, error=str(exc))
        except Exception:
            db.rollback()
            raise
    raise StorageUnavailableError("The request could not be completed, please retry")
