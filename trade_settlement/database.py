"""
Trade Settlement - Database Engine.

============================================================
PURPOSE
============================================================
Async SQLAlchemy engine and session management for the
settlement store.

- One engine per process, built from DatabaseConfig
- Sessions never expire attributes on commit
- create_all() builds the schema for development and tests

============================================================
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from .config import DatabaseConfig
from .models import Base


logger = logging.getLogger(__name__)


# =============================================================
# DATABASE ENGINE
# =============================================================

def create_settlement_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Create the async engine.

    In-memory SQLite shares one connection so every session sees
    the same database. SettlementDatabase serializes sessions on
    such an engine.
    """
    url = config.url
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        kwargs = {"echo": config.echo}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        return create_async_engine(url, **kwargs)

    return create_async_engine(
        url,
        echo=config.echo,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_pre_ping=True,
    )


class SettlementDatabase:
    """
    Engine plus session factory.

    Usage:
        database = SettlementDatabase(config.database)
        await database.create_all()
        async with database.session_scope() as session:
            ...
    """

    def __init__(self, config: DatabaseConfig, engine: Optional[AsyncEngine] = None):
        self._config = config
        self._engine = engine or create_settlement_engine(config)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            autoflush=False,
            expire_on_commit=False,
        )
        # One shared connection means one shared transaction:
        # sessions on it must not interleave.
        self._shared_connection_lock: Optional[asyncio.Lock] = None
        if isinstance(self._engine.pool, StaticPool):
            self._shared_connection_lock = asyncio.Lock()

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        return self._session_factory

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """
        Session with explicit transaction boundaries.

        Commits only if no exception occurs.
        Rolls back on ANY exception.

        On a single shared connection (in-memory SQLite) sessions
        run one at a time, so one session's rollback never undoes
        another session's commit.
        """
        if self._shared_connection_lock is None:
            async with self._open_session() as session:
                yield session
            return

        async with self._shared_connection_lock:
            async with self._open_session() as session:
                yield session

    @property
    def serializes_sessions(self) -> bool:
        return self._shared_connection_lock is not None

    @asynccontextmanager
    async def _open_session(self) -> AsyncIterator[AsyncSession]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            await session.rollback()
            raise
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create all settlement tables."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Settlement tables created")

    async def verify_connection(self) -> bool:
        """Run a trivial query against the database."""
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def dispose(self) -> None:
        await self._engine.dispose()
