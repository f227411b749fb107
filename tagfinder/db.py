"""Database connection and session management."""
from datetime import datetime, timedelta, timezone
from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from tagfinder.settings import settings
import os

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_database_url(url: str) -> str:
    """Convert postgres:// style URLs to the asyncpg driver URL."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://") and "+asyncpg" not in url:
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def create_engine_for_url(url: str, **kwargs) -> AsyncEngine:
    """Create an async engine; SQLite connections get foreign keys enabled."""
    async_engine = create_async_engine(normalize_database_url(url), echo=False, future=True, **kwargs)
    if async_engine.dialect.name == "sqlite":
        # Without this, ON DELETE CASCADE is silently ignored by SQLite
        event.listen(async_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return async_engine


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_session_factory(async_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Get database URL from environment or use default
database_url = os.getenv("DATABASE_URL") or settings.DATABASE_URL

engine = create_engine_for_url(database_url)

# Create async session factory
AsyncSessionLocal = create_session_factory(engine)

# Base class for models
Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time truncated to milliseconds.

    Row timestamps are written with millisecond precision so that the
    search cursor's epoch-millisecond value maps back to exactly one
    stored timestamp.
    """
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def to_epoch_ms(value: datetime) -> int:
    """Epoch milliseconds for a stored timestamp (naive values are UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // timedelta(milliseconds=1)


def from_epoch_ms(ms: int) -> datetime:
    return EPOCH + timedelta(milliseconds=ms)


def dialect_insert(session: AsyncSession, table):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect."""
    dialect_name = session.bind.dialect.name
    if dialect_name == "postgresql":
        return postgresql.insert(table)
    if dialect_name == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Unsupported database dialect: {dialect_name}")
