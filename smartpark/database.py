"""
Database handle: async SQLAlchemy engine + session factory
Created in the application lifespan and injected into every component
"""
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar
from contextlib import asynccontextmanager
from datetime import datetime
import logging

from sqlalchemy import DateTime, event
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from .exceptions import DatabaseError
from .utils import ensure_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    """Base class for models"""


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp

    PostgreSQL stores timestamptz; SQLite has no timezone support and hands
    back naive values, which are re-labelled as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        return ensure_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect):
        return ensure_utc(value)


def is_transient_error(exc: BaseException) -> bool:
    """Connection loss and similar failures worth one retry"""
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return isinstance(exc, (OperationalError, InterfaceError))


class Database:
    """
    Async database handle with explicit lifecycle

    Usage:
        db = Database(settings.database_url)
        await db.initialize()
        async with db.transaction() as session:
            ...
        await db.close()
    """

    def __init__(
        self,
        url: str,
        pool_size: int = 20,
        max_overflow: int = 10,
        echo: bool = False,
    ):
        self.url = url
        self.engine: AsyncEngine = self._create_engine(url, pool_size, max_overflow, echo)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        self._initialized = False

    @staticmethod
    def _create_engine(url: str, pool_size: int, max_overflow: int, echo: bool) -> AsyncEngine:
        if url.startswith("sqlite"):
            engine = create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )

            @event.listens_for(engine.sync_engine, "connect")
            def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
                cursor = dbapi_conn.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_async_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
        )

    async def initialize(self, create_schema: bool = False):
        """Verify connectivity and optionally create missing tables"""
        if self._initialized:
            return

        # Models must be imported so their tables are registered on Base.metadata
        from . import models  # noqa: F401

        try:
            async with self.engine.begin() as conn:
                if create_schema:
                    await conn.run_sync(Base.metadata.create_all)
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise DatabaseError(f"Cannot connect to database: {e}")

        self._initialized = True
        logger.info(f"Database ready ({self.engine.dialect.name})")

    async def close(self):
        """Dispose connection pool"""
        await self.engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Plain session for read-only work"""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session inside a single transaction

        Commits when the block exits normally, rolls back on any exception.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def ping(self) -> bool:
        from sqlalchemy import text

        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True


async def retry_transient_once(operation: Callable[[], Awaitable[T]], name: str) -> T:
    """
    Run an idempotent database operation, retrying once on a transient failure

    Only for operations that are safe to repeat; user-initiated writes
    surface errors immediately.
    """
    try:
        return await operation()
    except Exception as e:
        if not is_transient_error(e):
            raise
        logger.warning(f"Transient database error in {name}, retrying once: {e}")
        return await operation()
