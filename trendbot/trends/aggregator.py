"""Trend aggregation engine.

Folds evidence into per-topic trend events and keeps their rolling
statistics current. Items are partitioned by event key; partitions run
concurrently, each under its own key lock, and commit independently.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.errors import EvidenceValidationError
from trendbot.core.locks import KeyedLock
from trendbot.core.logging import get_logger
from trendbot.core.models import LABEL_ENTITY_ONLY, LABEL_EVENT_PHRASE, TrendEvent
from trendbot.core.settings import get_settings
from trendbot.core.text import (
    EntityMatcher,
    derive_event_key,
    is_event_phrase,
    normalize_label,
    primary_entity_for,
)
from trendbot.core.time import ensure_utc, get_current_utc_time
from trendbot.evidence.store import EvidenceIn, EvidenceStore, parse_evidence
from trendbot.trends.metrics import (
    HISTORY_DAYS,
    ConfidenceWeights,
    TrendThresholds,
    compute_metrics,
)

logger = get_logger(__name__)

# Attempts per partition; a unique-key race with a concurrent batch is retried once
PARTITION_ATTEMPTS = 2


@dataclass
class IngestStats:
    """Counters of one ingest call."""
    received: int = 0
    accepted: int = 0
    duplicates: int = 0
    rejected: int = 0
    events_created: int = 0
    events_updated: int = 0
    failed_events: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RefreshStats:
    """Counters of one refresh pass."""
    refreshed: int = 0
    failed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def label_quality_for(label: str) -> str:
    return LABEL_EVENT_PHRASE if is_event_phrase(label) else LABEL_ENTITY_ONLY


class TrendAggregator:
    """Maintains trend events and their statistics from stored evidence."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        store: Optional[EvidenceStore] = None,
        thresholds: Optional[TrendThresholds] = None,
        weights: Optional[ConfidenceWeights] = None,
        concurrency: Optional[int] = None,
        entity_matcher: Optional[EntityMatcher] = None,
        active_window_hours: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.store = store or EvidenceStore()
        self.thresholds = thresholds or TrendThresholds()
        self.weights = weights or ConfidenceWeights()
        self.concurrency = concurrency or settings.ingest_concurrency
        self.entity_matcher = entity_matcher
        self.active_window_hours = active_window_hours or settings.active_window_hours
        self.locks = locks or KeyedLock()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def _prepare(self, raw_items: Iterable[Any], stats: IngestStats) -> "OrderedDict[str, List[EvidenceIn]]":
        """Validate items and group them by event key, keeping arrival order."""
        partitions: "OrderedDict[str, List[EvidenceIn]]" = OrderedDict()
        seen = set()

        for raw in raw_items:
            stats.received += 1
            try:
                evidence = parse_evidence(raw)
            except EvidenceValidationError as e:
                stats.rejected += 1
                logger.warning(f"Rejected evidence: {e}")
                continue

            if not evidence.entities and self.entity_matcher is not None:
                found = self.entity_matcher.find(f"{evidence.title} {evidence.body}")
                if found:
                    evidence = evidence.model_copy(update={"entities": found})

            key = derive_event_key(evidence.title, evidence.entities)
            if not key:
                stats.rejected += 1
                logger.warning(f"Rejected evidence without a usable topic: {evidence.external_id}")
                continue

            identity = (evidence.source_type, evidence.external_id)
            if identity in seen:
                stats.duplicates += 1
                continue
            seen.add(identity)

            partitions.setdefault(key, []).append(evidence)

        return partitions

    async def ingest(self, items: Iterable[Any], now: Optional[datetime] = None) -> IngestStats:
        """
        Ingest a batch of evidence.

        Args:
            items: Raw dicts or EvidenceIn records
            now: Reference time for statistics (defaults to current UTC time)

        Returns:
            IngestStats
        """
        now = ensure_utc(now) or get_current_utc_time()
        stats = IngestStats()
        partitions = self._prepare(items, stats)

        if not partitions:
            logger.info("No valid evidence in batch", extra=stats.to_dict())
            return stats

        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(key: str, group: List[EvidenceIn]) -> None:
            async with semaphore:
                async with self.locks.hold(key):
                    await self._ingest_partition(key, group, now, stats)

        await asyncio.gather(*(run(key, group) for key, group in partitions.items()))

        logger.info(
            f"Ingested {stats.accepted}/{stats.received} evidence items "
            f"({stats.duplicates} duplicates, {stats.rejected} rejected, {stats.failed_events} failed events)",
            extra=stats.to_dict(),
        )
        return stats

    async def _ingest_partition(
        self,
        key: str,
        group: List[EvidenceIn],
        now: datetime,
        stats: IngestStats,
    ) -> None:
        for attempt in range(1, PARTITION_ATTEMPTS + 1):
            try:
                async with self.session_factory() as session:
                    accepted, duplicates, created = await self._apply_partition(session, key, group, now)
                    await session.commit()
            except IntegrityError as e:
                if attempt < PARTITION_ATTEMPTS:
                    logger.warning(f"Concurrent write on event {key}, retrying partition")
                    continue
                self._record_failure(key, e, stats)
                return
            except Exception as e:
                self._record_failure(key, e, stats)
                return

            stats.accepted += accepted
            stats.duplicates += duplicates
            if created:
                stats.events_created += 1
            elif accepted:
                stats.events_updated += 1
            return

    def _record_failure(self, key: str, error: Exception, stats: IngestStats) -> None:
        stats.failed_events += 1
        stats.errors.append(f"{key}: {type(error).__name__}: {error}")
        logger.error(f"Failed to aggregate event {key}: {error}", extra={"event_key": key})

    async def _apply_partition(
        self,
        session: AsyncSession,
        key: str,
        group: List[EvidenceIn],
        now: datetime,
    ) -> Tuple[int, int, bool]:
        """
        Append evidence of one key and update its event.

        Returns:
            Tuple of (accepted, duplicates, event_created)
        """
        fresh: List[EvidenceIn] = []
        duplicates = 0
        for evidence in group:
            created, _ = await self.store.append(session, evidence, key)
            if created:
                fresh.append(evidence)
            else:
                duplicates += 1

        if not fresh:
            return 0, duplicates, False

        # future-dated evidence is stored but never moves the event past now
        earliest = min(min(e.discovered_at for e in fresh), now)
        latest = min(max(e.discovered_at for e in fresh), now)

        event = await repo.get_event_by_key(session, key)
        created_event = event is None
        if created_event:
            first = fresh[0]
            label = first.title if derive_event_key(first.title) == key else (first.entities[0] if first.entities else first.title)
            event = await repo.create_event(session, {
                "event_key": key,
                "canonical_label": label,
                "normalized_label": normalize_label(label),
                "primary_entity": primary_entity_for(label, first.entities),
                "label_quality": label_quality_for(label),
                "first_seen_at": earliest,
                "last_seen_at": latest,
                "updated_at": now,
            })
            own_before = (0, 0)
        else:
            event.first_seen_at = min(ensure_utc(event.first_seen_at), earliest)
            event.last_seen_at = max(ensure_utc(event.last_seen_at), latest)
            own_before = (
                event.evidence_count - event.merged_evidence_count,
                event.source_count - event.merged_source_count,
            )

        own_after = await self._recompute(session, event, now, created=created_event)

        if event.cluster_id is not None:
            await self._credit_canonical(session, event, own_before, own_after, now)

        return len(fresh), duplicates, created_event

    async def _credit_canonical(
        self,
        session: AsyncSession,
        member: TrendEvent,
        own_before: Tuple[int, int],
        own_after: Tuple[int, int],
        now: datetime,
    ) -> None:
        """Fold new evidence of a clustered event into its canonical."""
        canonical = await repo.get_event(session, member.cluster_id)
        if canonical is None:
            logger.warning(f"Event {member.id} points at missing canonical {member.cluster_id}")
            return

        await repo.add_merged_counts(
            session,
            canonical.id,
            max(0, own_after[0] - own_before[0]),
            max(0, own_after[1] - own_before[1]),
        )
        await session.refresh(canonical)
        canonical.last_seen_at = max(ensure_utc(canonical.last_seen_at), ensure_utc(member.last_seen_at))
        await self._recompute(session, canonical, now)

    async def _recompute(
        self,
        session: AsyncSession,
        event: TrendEvent,
        now: datetime,
        created: bool = False,
    ) -> Tuple[int, int]:
        """
        Re-scan stored evidence and rewrite the event's statistics.

        Returns:
            The event's own (evidence count, distinct source count)
        """
        keys = [event.event_key]
        if event.id is not None:
            keys.extend(await repo.member_event_keys(session, event.id))

        since = now - timedelta(days=HISTORY_DAYS + 1)
        rows = await self.store.window(session, keys, since)
        own_evidence, own_sources = await self.store.totals(session, event.event_key)

        # counts only grow: own evidence is append-only, merged counters only increase
        event.evidence_count = max(event.evidence_count or 0, own_evidence + (event.merged_evidence_count or 0))
        event.source_count = max(event.source_count or 0, own_sources + (event.merged_source_count or 0))

        timestamps = [r[0] for r in rows if r[0] <= now]
        if timestamps:
            event.last_seen_at = max(ensure_utc(event.last_seen_at), max(timestamps))

        metrics = compute_metrics(
            timestamps=timestamps,
            source_types=[r[1] for r in rows],
            source_count=event.source_count,
            first_seen_at=ensure_utc(event.first_seen_at),
            last_seen_at=ensure_utc(event.last_seen_at),
            label_quality=event.label_quality,
            previous_velocity=None if created else event.velocity,
            now=now,
            thresholds=self.thresholds,
            weights=self.weights,
        )
        for name, value in metrics.to_dict().items():
            setattr(event, name, value)
        event.updated_at = now

        return own_evidence, own_sources

    # ------------------------------------------------------------------
    # Periodic refresh
    # ------------------------------------------------------------------

    async def refresh_active(self, now: Optional[datetime] = None) -> RefreshStats:
        """
        Recompute statistics of every active event.

        Windows and recency decay move with time even when no new evidence
        arrives; this is the ``refresh_trends`` stage.

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            RefreshStats
        """
        now = ensure_utc(now) or get_current_utc_time()
        since = now - timedelta(hours=self.active_window_hours)

        async with self.session_factory() as session:
            events = await repo.events_seen_since(session, since)
            targets = [(e.id, e.event_key) for e in events]

        stats = RefreshStats()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def refresh_one(event_id: int, key: str) -> None:
            async with semaphore:
                async with self.locks.hold(key):
                    try:
                        async with self.session_factory() as session:
                            event = await repo.get_event(session, event_id)
                            if event is None or event.cluster_id is not None:
                                return
                            await self._recompute(session, event, now)
                            await session.commit()
                        stats.refreshed += 1
                    except Exception as e:
                        stats.failed += 1
                        logger.error(f"Failed to refresh event {key}: {e}", extra={"event_key": key})

        await asyncio.gather(*(refresh_one(event_id, key) for event_id, key in targets))

        logger.info(f"Refreshed {stats.refreshed} active events ({stats.failed} failed)", extra=stats.to_dict())
        return stats
