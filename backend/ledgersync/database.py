"""Database setup with SQLAlchemy async."""

from collections.abc import AsyncGenerator
from datetime import UTC, datetime

from sqlalchemy import DateTime, event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from ledgersync.config import get_settings

settings = get_settings()


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetimes on every backend.

    SQLite drops tzinfo on the way back; values are normalised to UTC on
    write and re-tagged as UTC on read so comparisons never mix naive and
    aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINTs behave.

    The sqlite3 driver otherwise defers BEGIN until the first DML statement,
    which breaks nested transactions used by the staging writer.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(database_url, echo=echo)
        enable_sqlite_savepoints(engine)
        return engine

    return create_async_engine(
        database_url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10,
    )


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


engine = build_engine(settings.database_url, echo=settings.debug)
async_session_maker = build_session_maker(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(target: AsyncEngine | None = None) -> None:
    """Create all tables that do not exist yet."""
    # Models must be imported so their tables are registered on Base.metadata
    import ledgersync.models  # noqa: F401

    async with (target or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_ready() -> None:
    """
    Verify database connectivity and expected schema.

    Checks that the checkpoint, session and log tables exist.
    """
    import ledgersync.models  # noqa: F401

    required = ("sync_checkpoints", "sync_sessions", "sync_logs")

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

        existing = await conn.run_sync(
            lambda sync_conn: set(inspect(sync_conn).get_table_names())
        )
        missing = [name for name in required if name not in existing]
        if missing:
            raise RuntimeError(
                f"Database schema is missing tables: {', '.join(missing)} "
                "(run database init or check migrations)."
            )
