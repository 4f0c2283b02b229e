"""Shared fixtures: a throwaway SQLite database per test and evidence builders."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from trendbot.core import models  # noqa: F401  (register tables)
from trendbot.core.db import Base, build_sessionmaker

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
async def engine(tmp_path):
    # one connection per session so concurrent tasks never share a transaction
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'trendbot.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)


def make_evidence(
    external_id: str,
    title: str,
    discovered_at: datetime,
    source_type: str = "news",
    source_name: Optional[str] = None,
    body: Optional[str] = None,
    entities: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """Raw evidence record as a collaborator would send it."""
    return {
        "source_type": source_type,
        "external_id": external_id,
        "source_name": source_name,
        "discovered_at": discovered_at.isoformat(),
        "title": title,
        "body": body or f"Coverage: {title}",
        "entities": entities or [],
    }


def burst(
    title: str,
    now: datetime,
    count: int,
    prefix: str,
    minutes_apart: int = 5,
    sources: int = 1,
    source_type: str = "news",
) -> List[Dict[str, Any]]:
    """``count`` evidence items for one title spread over the last few minutes/hours."""
    return [
        make_evidence(
            external_id=f"{prefix}-{i}",
            title=title,
            discovered_at=now - timedelta(minutes=minutes_apart * i),
            source_type=source_type,
            source_name=f"outlet-{i % sources}",
        )
        for i in range(count)
    ]
