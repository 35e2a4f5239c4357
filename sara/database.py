"""
SQLite durable store for SARA's state records.

``DatabaseEngine`` satisfies the ``DurableStore`` protocol on top of a single
``state_record`` table (see ``sara.models``), using SQLModel over the async
SQLAlchemy engine and aiosqlite.
"""

import logging
import threading
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, text

from sara.errors import StorageError
from sara.models import StateRecord, utcnow

logger = logging.getLogger(__name__)

SQLITE_URL_PREFIX = "sqlite+aiosqlite:///"


def get_database_url(database_path: str | None = None) -> str:
    """
    Build the aiosqlite URL for a state file.

    Relative paths resolve against the project directory so the file does
    not move with the process working directory. ``None`` falls back to
    ``settings.database_path``.
    """
    if database_path is None:
        from sara.config import settings
        database_path = settings.database_path

    path = Path(database_path)
    if not path.is_absolute():
        path = Path(__file__).parent.parent / path
    return f"{SQLITE_URL_PREFIX}{path}"


class DatabaseEngine:
    """
    Durable record store backed by SQLite.

    The async engine is built on first use. Any SQLAlchemy failure surfaces
    as ``StorageError``, so components stay unaware of the backend.
    """

    def __init__(self, database_url: str | None = None, echo: bool = False):
        self._database_url = database_url
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._lock = threading.Lock()

    @property
    def database_url(self) -> str:
        if self._database_url is None:
            self._database_url = get_database_url()
        return self._database_url

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            with self._lock:
                if self._engine is None:
                    # NullPool: every session opens its own aiosqlite connection
                    self._engine = create_async_engine(
                        self.database_url,
                        echo=self._echo,
                        connect_args={"check_same_thread": False},
                        poolclass=NullPool,
                    )
                    logger.info(f"SQLite state store at {self.database_url}")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        return self._session_factory

    async def init_db(self) -> None:
        """Create the ``state_record`` table if it does not exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to initialize database: {e}") from e
        logger.info("State tables ready")

    async def close(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("SQLite state store closed")

    async def read(self, key: str) -> bytes | None:
        """Return the payload stored under ``key``, or None if never written."""
        try:
            async with self.session_factory() as session:
                record = await session.get(StateRecord, key)
        except SQLAlchemyError as e:
            raise StorageError(f"Database read failed: {e}", key=key) from e
        return None if record is None else record.payload

    async def write(self, key: str, data: bytes) -> None:
        """Insert or replace the record under ``key``."""
        try:
            async with self.session_factory() as session:
                record = await session.get(StateRecord, key)
                if record is None:
                    session.add(StateRecord(key=key, payload=data))
                else:
                    record.payload = data
                    record.updated_at = utcnow()
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Database write failed: {e}", key=key) from e

    async def health_check(self) -> dict[str, str]:
        try:
            async with self.session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"SQLite health check failed: {e}")
            return {"status": "unhealthy", "backend": "sqlite", "error": str(e)}
        return {"status": "healthy", "backend": "sqlite"}


class DatabaseLifecycle:
    """
    Startup and shutdown hooks for the SQLite store.

    Expired cache entries are swept lazily by ``ResultCache``, so there is
    no periodic cleanup task.
    """

    def __init__(self, engine: DatabaseEngine):
        self._engine = engine

    async def startup(self) -> None:
        await self._engine.init_db()
        logger.info("SQLite state store started")

    async def shutdown(self) -> None:
        await self._engine.close()
        logger.info("SQLite state store stopped")
