"""
Database Configuration Module
Async SQLAlchemy engine, session factory and declarative Base
"""
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

import config

# Base for models
Base = declarative_base()


def create_engine_for(url: str) -> AsyncEngine:
    """
    Create async engine.

    PostgreSQL (asyncpg) in production, SQLite (aiosqlite) in tests.
    """
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=False,
            connect_args={"timeout": 30},
        )
    return create_async_engine(
        url,
        echo=False,
        pool_pre_ping=True,              # Verify connections before use
        pool_recycle=3600,               # Recycle connections after 1 hour
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False
    )


engine = create_engine_for(config.DATABASE_URL)

# Async session factory
AsyncSessionLocal = create_session_factory(engine)


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create all tables (idempotent)."""
    import models  # noqa: F401  register tables on Base.metadata

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
