"""
Async database engine and session factory.

The engine is created once at module import time.  Dispatch operations
receive an ``AsyncSession`` from their caller; background tasks (expiry
sweep, socket handlers) open their own through ``async_session_factory``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from towline.core.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=settings.sql_echo,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session that is closed once the caller is done.

    Dispatch operations commit their own unit of work; the trailing commit
    here only flushes whatever a caller left pending on success.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
