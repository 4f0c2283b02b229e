"""Trend pipeline orchestrator.

Wires the evidence store, aggregator, deduplicator, relevance provider and
ranker together and exposes the named stages the scheduler and the HTTP API
invoke:

1. ``refresh_trends``: recompute statistics of active events
2. ``reconcile_duplicates``: collapse near-duplicate events
3. read time: fetch relevance and rank the surviving events
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import yaml
from sqlalchemy.ext.asyncio import async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.db import get_sessionmaker
from trendbot.core.logging import get_logger
from trendbot.core.settings import get_settings
from trendbot.core.text import EntityMatcher
from trendbot.core.time import ensure_utc, get_current_utc_time
from trendbot.trends.aggregator import IngestStats, TrendAggregator
from trendbot.trends.dedup import Deduplicator
from trendbot.trends.ranker import RankPolicy, RankedTrend, rank
from trendbot.trends.relevance import (
    HttpRelevanceProvider,
    RelevanceProvider,
    fetch_relevance_safe,
)

logger = get_logger(__name__)

STAGE_REFRESH = "refresh_trends"
STAGE_RECONCILE = "reconcile_duplicates"

STATUS_OK = "ok"
STATUS_NOTHING_ACTIONABLE = "nothing_actionable"

DEFAULT_LIMIT = 20

StageFn = Callable[[datetime], Awaitable[Dict[str, Any]]]


@dataclass
class TrendsResult:
    """Ranked trends at read time; an empty list is an explicit state."""
    status: str
    trends: List[RankedTrend]
    candidates: int
    generated_at: datetime
    relevance_available: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "generated_at": self.generated_at.isoformat(),
            "candidates": self.candidates,
            "relevance_available": self.relevance_available,
            "count": len(self.trends),
            "trends": [t.to_dict() for t in self.trends],
        }


def load_entity_matcher(path: Optional[str] = None) -> Optional[EntityMatcher]:
    """
    Build an EntityMatcher from a YAML file with an ``entities`` list.

    Returns:
        EntityMatcher, or None when the file is missing or lists nothing
    """
    path = path or get_settings().entities_config_path
    config_file = Path(path)
    if not config_file.exists():
        logger.debug(f"No entity list at {path}")
        return None

    with config_file.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    entities = data.get("entities", []) if isinstance(data, dict) else []
    if not entities:
        return None
    logger.info(f"Loaded {len(entities)} known entities from {path}")
    return EntityMatcher(entities)


class TrendPipeline:
    """Entry point for ingestion, the periodic stages and ranked reads."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        aggregator: Optional[TrendAggregator] = None,
        deduplicator: Optional[Deduplicator] = None,
        relevance: Optional[RelevanceProvider] = None,
        rank_policy: Optional[RankPolicy] = None,
        active_window_hours: Optional[int] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.aggregator = aggregator or TrendAggregator(session_factory)
        # ingestion and reconcile take the same per-key locks
        self.deduplicator = deduplicator or Deduplicator(session_factory, locks=self.aggregator.locks)
        self.relevance = relevance
        self.rank_policy = rank_policy or RankPolicy()
        self.active_window_hours = active_window_hours or settings.active_window_hours

    async def ingest(self, items: Iterable[Any], now: Optional[datetime] = None) -> IngestStats:
        return await self.aggregator.ingest(items, now)

    async def refresh_trends(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Stage: advance windows and recency of active events."""
        start = time.time()
        stats = await self.aggregator.refresh_active(now)
        result = stats.to_dict()
        result["duration_seconds"] = round(time.time() - start, 3)
        return result

    async def reconcile_duplicates(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Stage: collapse duplicates within the dedup window."""
        start = time.time()
        report = await self.deduplicator.reconcile(now=now)
        result = report.to_dict()
        result["duration_seconds"] = round(time.time() - start, 3)
        return result

    def stages(self) -> Dict[str, StageFn]:
        """Named stages invokable by the scheduler and the stage endpoint."""
        return {
            STAGE_REFRESH: self.refresh_trends,
            STAGE_RECONCILE: self.reconcile_duplicates,
        }

    async def ranked_trends(
        self,
        limit: int = DEFAULT_LIMIT,
        now: Optional[datetime] = None,
        relevance: Optional[RelevanceProvider] = None,
    ) -> TrendsResult:
        """
        Rank active events for display.

        Args:
            limit: Maximum number of trends
            now: Reference time (defaults to current UTC time)
            relevance: Provider overriding the pipeline's own

        Returns:
            TrendsResult with status ``ok`` or ``nothing_actionable``
        """
        now = ensure_utc(now) or get_current_utc_time()
        since = now - timedelta(hours=self.active_window_hours)

        async with self.session_factory() as session:
            events = await repo.events_seen_since(session, since)

        provider = relevance or self.relevance
        scores = await fetch_relevance_safe(provider, [e.event_key for e in events if e.is_trending])
        ranked = rank(events, scores, limit, self.rank_policy)

        status = STATUS_OK if ranked else STATUS_NOTHING_ACTIONABLE
        logger.info(
            f"Ranked {len(ranked)} of {len(events)} active events ({status})",
            extra={"status": status, "candidates": len(events)},
        )
        return TrendsResult(
            status=status,
            trends=ranked,
            candidates=len(events),
            generated_at=now,
            relevance_available=bool(scores),
        )


def build_pipeline(session_factory: Optional[async_sessionmaker] = None) -> TrendPipeline:
    """Pipeline wired from settings."""
    settings = get_settings()
    session_factory = session_factory or get_sessionmaker()

    relevance = None
    if settings.relevance_url:
        relevance = HttpRelevanceProvider(settings.relevance_url, timeout=settings.relevance_timeout_seconds)

    aggregator = TrendAggregator(session_factory, entity_matcher=load_entity_matcher())
    return TrendPipeline(session_factory, aggregator=aggregator, relevance=relevance)
