"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from sqlalchemy.pool import NullPool
from core.config import Settings, settings
import logging

logger = logging.getLogger(__name__)


def build_engine(config: Settings = settings) -> AsyncEngine:
    """Create the async engine for the configured database"""
    return create_async_engine(
        config.DATABASE_URL,
        echo=False,
        poolclass=NullPool,  # workers open short-lived sessions
        future=True
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create a session factory bound to ``engine``"""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables known to the ORM metadata"""
    from models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")
