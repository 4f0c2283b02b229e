"""Database module with async SQLAlchemy engine and session management."""

from functools import lru_cache
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

# SQLAlchemy base for models
Base = declarative_base()


def build_engine(db_url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    settings = get_settings()
    db_url = db_url or settings.db_url

    if not db_url.startswith("sqlite"):
        kwargs.setdefault("pool_size", 10)
        kwargs.setdefault("max_overflow", 20)

    return create_async_engine(db_url, echo=settings.db_echo, **kwargs)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to ``engine``."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@lru_cache()
def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings."""
    return build_engine()


@lru_cache()
def get_sessionmaker() -> async_sessionmaker:
    """Process-wide session factory."""
    return build_sessionmaker(get_engine())


async def create_all(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables in the database."""
    from . import models  # noqa: F401  (register tables on Base.metadata)

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
