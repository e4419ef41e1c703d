"""
Database connection management with connection pooling.

Provides the engine, the session factory, the declarative Base, and the
small set of storage primitives the engagement components build on:
an "insert, ignore on conflict" helper and a UTC-normalizing timestamp type.
"""
import logging
import time
from datetime import timezone
from typing import Any, Dict, List

from sqlalchemy import DateTime, create_engine, event, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.types import TypeDecorator

from core.config import settings
from core.exceptions import EngagementError

logger = logging.getLogger(__name__)


def _build_database_url() -> str:
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql://{settings.POSTGRES_USER}:"
        f"{settings.POSTGRES_PASSWORD}@"
        f"{settings.POSTGRES_HOST}:"
        f"{settings.POSTGRES_PORT}/"
        f"{settings.POSTGRES_DB}"
    )


DATABASE_URL = _build_database_url()

if DATABASE_URL.startswith("sqlite"):
    # Single shared connection so an in-memory database survives across sessions.
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=settings.DEBUG,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        pool_pre_ping=True,
        echo=settings.DEBUG,
    )

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Prevent lazy loading issues
)

Base = declarative_base()


@event.listens_for(engine, "checkout")
def receive_checkout(dbapi_conn, connection_record, connection_proxy):
    """Log when connection is checked out from pool."""
    logger.debug("Connection checked out from pool")


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp that always round-trips as UTC.

    PostgreSQL stores timestamptz natively. SQLite has no timezone support,
    so values are stored as naive UTC and re-tagged on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


def insert_ignore_conflict(
    db: Session,
    model,
    values: Dict[str, Any],
    constraint: str,
) -> bool:
    """
    Insert a row guarded by a named unique constraint, treating a conflict as a no-op.

    Returns True when a new row was written and False when an equal key
    already existed. Any other database error propagates.

    Does not commit; the caller owns the transaction.
    """
    dialect = db.get_bind().dialect.name

    if dialect == "postgresql":
        stmt = pg_insert(model.__table__).values(**values).on_conflict_do_nothing(
            constraint=constraint
        )
    elif dialect == "sqlite":
        # SQLite only accepts the conflict target as a column list
        stmt = sqlite_insert(model.__table__).values(**values).on_conflict_do_nothing(
            index_elements=_constraint_columns(model, constraint)
        )
    else:
        raise EngagementError(f"insert_ignore_conflict does not support the {dialect} dialect")

    result = db.execute(stmt)
    return bool(result.rowcount)


def _constraint_columns(model, name: str) -> List[str]:
    for constraint in model.__table__.constraints:
        if constraint.name == name:
            return [column.name for column in constraint.columns]
    raise EngagementError(f"{model.__tablename__} has no constraint named {name}")


def get_db() -> Session:
    """
    Dependency for FastAPI to get database session.

    The session is committed on success, rolled back on error and always
    returned to the pool.
    """
    db = None
    max_retries = 3
    retry_delay = 0.1  # 100ms initial delay

    for attempt in range(max_retries):
        try:
            db = SessionLocal()
            db.execute(text("SELECT 1"))
            break
        except Exception as e:
            if db:
                db.close()
            if attempt == max_retries - 1:
                logger.error(f"Failed to establish database connection after {max_retries} attempts: {e}")
                raise
            logger.warning(f"Database connection attempt {attempt + 1} failed, retrying...")
            time.sleep(retry_delay * (2 ** attempt))

    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        from fastapi import HTTPException
        if not isinstance(e, (HTTPException, EngagementError)):
            logger.error(f"Database transaction error: {e}")
        raise
    finally:
        if db:
            db.close()


def get_db_sync() -> Session:
    """
    Synchronous database session getter for use in scripts and background tasks.

    Note: This does NOT auto-commit or auto-rollback.
    Caller must manage transactions explicitly.
    """
    return SessionLocal()


def check_db_connection() -> bool:
    """
    Check if database connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
