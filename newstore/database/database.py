from contextlib import asynccontextmanager
import logging
import os

from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on sqlite drivers."""

    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


class Database:
    def __init__(self, url: Optional[str] = None, **engine_options: Any) -> None:
        self._url = url or os.getenv("DATABASE_URL")
        self._engine_options = engine_options
        self._engine: Optional[AsyncEngine] = None
        self._SessionFactory: Optional[async_sessionmaker[AsyncSession]] = None
        self._initialized = False

    def _initialize(self) -> None:
        """Lazy initialization of database connection."""
        if self._initialized:
            return

        if not self._url:
            raise RuntimeError("DATABASE_URL must be set")

        logger.info("Initializing database connection")

        options = {"echo": False, "pool_pre_ping": True}
        options.update(self._engine_options)
        self._engine = create_async_engine(self._url, **options)
        if self._engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(self._engine)

        self._SessionFactory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

        self._initialized = True
        logger.info("Database connection initialized successfully")

    @property
    def engine(self) -> AsyncEngine:
        self._initialize()
        assert self._engine
        return self._engine

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that is rolled back if anything escapes the block.

        Nothing is committed implicitly: services commit once their checks
        pass, so a raised domain error leaves no partial writes behind.
        """
        self._initialize()
        if self._SessionFactory is None:
            raise RuntimeError("Database not properly initialized")
        async with self._SessionFactory() as session:
            try:
                logger.debug("Database session started")
                yield session
                logger.debug("Database session completed successfully")
            except Exception as e:
                logger.debug(f"Database session rolled back: {e}")
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create every table from model metadata. Used by tests and local dev;
        deployed databases are migrated with alembic."""
        import newstore.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database ping failed: {e}")
            return False

    async def dispose(self) -> None:
        """Close pooled connections; called from the app cleanup hook."""
        if self._engine is not None:
            logger.info("Disposing database connections")
            await self._engine.dispose()
            logger.info("Database connections disposed")


db = Database()
