"""
Database engine and session management.

All call sites obtain sessions through a ``StorageHandleProvider`` and ask it
for the *current* session factory at call time. When the engine hits a fatal
fault it is torn down and rebuilt via ``recreate()``; callers that closed
over an older factory would otherwise keep using a disposed pool.
"""
import asyncio
import logging
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from schooladmin.services.logging import security_logger

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


def is_transient_storage_fault(exc: BaseException) -> bool:
    """Return True for engine crashes/restarts that a fresh connection may fix."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class StorageHandleProvider:
    """Owns the async engine and hands out the current session factory."""

    def __init__(self, url: str, *, echo: bool = False, **engine_kwargs: Any):
        self.url = url
        self._echo = echo
        self._engine_kwargs = engine_kwargs
        self._engine: Optional[AsyncEngine] = None
        self._session_maker: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()
        self.generation = 0
        self._build()

    def _build(self) -> None:
        self._engine = create_async_engine(
            self.url,
            echo=self._echo,
            future=True,
            **self._engine_kwargs,
        )
        self._session_maker = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    def current(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.current()() as session:
            yield session

    async def recreate(self, observed: Optional[int] = None) -> None:
        """Dispose the current engine and build a new one.

        ``observed`` is the generation the caller was using when it failed;
        concurrent callers that observed the same generation only trigger a
        single rebuild.
        """
        if observed is None:
            observed = self.generation
        async with self._lock:
            if self.generation != observed:
                return
            old_engine = self._engine
            self._build()
            self.generation += 1
            security_logger.storage_recreated("database", self.generation)
            if old_engine is not None:
                try:
                    await old_engine.dispose()
                except Exception as e:
                    logger.warning(f"Failed to dispose previous engine: {e}")

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()


def get_storage(request: Request) -> StorageHandleProvider:
    return request.app.state.storage


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with get_storage(request).session() as session:
        try:
            yield session
        finally:
            await session.close()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
