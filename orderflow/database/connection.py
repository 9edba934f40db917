"""
Async engine and sessions for the orders database (SQLAlchemy 2.0 + asyncpg).

The engine is created on first use from settings and disposed by
``close_database_connections`` at shutdown.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from orderflow.core.config import Settings, get_settings
from orderflow.core.logging import get_logger

logger = get_logger(__name__)

ASYNC_DRIVER_PREFIX = "postgresql+asyncpg://"

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None


def async_database_url(url: str) -> str:
    """Select the asyncpg driver for a plain ``postgresql://`` URL."""
    if url.startswith("postgresql://"):
        return ASYNC_DRIVER_PREFIX + url[len("postgresql://"):]
    return url


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an engine for ``settings.database_url``.

    Tests run without a pool so every test opens its own connections.
    """
    if settings.environment == "test":
        pooling: dict = {"poolclass": NullPool}
    else:
        pooling = {
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_recycle": 3600,
        }

    engine = create_async_engine(
        async_database_url(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        connect_args={
            "server_settings": {"application_name": settings.app_name},
            "command_timeout": 60,
            "timeout": 10,
        },
        **pooling,
    )
    logger.info(
        "Order database engine ready",
        environment=settings.environment,
        pool=pooling.get("pool_size", "none"),
    )
    return engine


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False, autoflush=False)
    return _sessions


@asynccontextmanager
async def get_session(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Unit of work: commit when the block completes, roll back when it raises.

    Args:
        session_factory: Factory to use instead of the process-wide one
    """
    async with (session_factory or get_session_factory())() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(
                "Order database transaction rolled back",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise


async def create_tables() -> None:
    """Create the order tables if they do not exist yet."""
    from orderflow.database.models import Base

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Order tables ensured")


async def check_database_health() -> bool:
    """True when ``SELECT 1`` succeeds against the orders database."""
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        logger.warning(
            "Order database unreachable",
            error=str(e),
            error_type=type(e).__name__,
        )
        return False
    return True


async def close_database_connections() -> None:
    global _engine, _sessions
    engine, _engine, _sessions = _engine, None, None
    if engine is not None:
        await engine.dispose()
        logger.info("Order database engine disposed")
