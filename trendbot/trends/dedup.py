"""Duplicate trend event reconciliation.

Planning is pure: it takes event snapshots and returns the clusters, review
pairs and logged candidates. Applying a plan uses compare-and-set updates so
concurrent reconcilers never double-assign an event, and folds counts with
SQL-side increments under the per-key locks the aggregator also takes.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from itertools import combinations
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.locks import KeyedLock
from trendbot.core.logging import get_logger
from trendbot.core.models import TrendEvent
from trendbot.core.settings import get_settings
from trendbot.core.simhash import band_keys, label_simhash
from trendbot.core.text import label_similarity, stemmed_token_set
from trendbot.core.time import ensure_utc, get_current_utc_time

logger = get_logger(__name__)

DECISION_MERGE = "merge"
DECISION_REVIEW = "review"
DECISION_CANDIDATE = "candidate"

SimilarityFn = Callable[[str, str], float]


@dataclass
class DedupThresholds:
    auto_merge: float = 0.85
    review: float = 0.70
    candidate: float = 0.60
    max_bucket_size: int = 200


@dataclass
class TimeRange:
    """Half-open ``(start, end]`` window on ``last_seen_at``."""
    start: datetime
    end: datetime


@dataclass
class EventSnapshot:
    """Fields of a trend event the planner looks at."""
    id: int
    label: str
    normalized_label: str
    primary_entity: Optional[str]
    is_event_phrase: bool
    confidence: float
    source_count: int

    @classmethod
    def from_event(cls, event: TrendEvent) -> "EventSnapshot":
        return cls(
            id=event.id,
            label=event.canonical_label,
            normalized_label=event.normalized_label,
            primary_entity=event.primary_entity,
            is_event_phrase=event.is_event_phrase,
            confidence=event.confidence_score or 0.0,
            source_count=event.source_count or 0,
        )


@dataclass
class PlannedCluster:
    canonical_id: int
    member_ids: List[int]
    similarity_scores: Dict[int, float]


@dataclass
class DedupPlan:
    clusters: List[PlannedCluster] = field(default_factory=list)
    reviews: List[Tuple[int, int, float]] = field(default_factory=list)
    candidates: List[Tuple[int, int, float]] = field(default_factory=list)
    events_considered: int = 0
    labels: Dict[int, str] = field(default_factory=dict)


@dataclass
class ReconcileReport:
    """Outcome of one reconcile pass."""
    events_considered: int = 0
    clusters_created: int = 0
    clusters_extended: int = 0
    events_merged: int = 0
    conflicts_skipped: int = 0
    reviews_created: int = 0
    candidates_logged: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def classify_similarity(score: float, thresholds: Optional[DedupThresholds] = None) -> Optional[str]:
    """
    Map a similarity score to a dedup decision.

    Returns:
        ``merge`` at or above the auto-merge threshold, ``review`` in the
        review band, ``candidate`` in the candidate band, None below
    """
    thresholds = thresholds or DedupThresholds()
    if score >= thresholds.auto_merge:
        return DECISION_MERGE
    if score >= thresholds.review:
        return DECISION_REVIEW
    if score >= thresholds.candidate:
        return DECISION_CANDIDATE
    return None


class UnionFind:
    """Disjoint sets over event ids with path compression."""

    def __init__(self, ids: Iterable[int]):
        self.parent: Dict[int, int] = {i: i for i in ids}

    def find(self, x: int) -> int:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, x: int, y: int) -> None:
        rx, ry = self.find(x), self.find(y)
        if rx != ry:
            # lower id becomes the root
            if rx < ry:
                self.parent[ry] = rx
            else:
                self.parent[rx] = ry

    def components(self) -> List[List[int]]:
        groups: Dict[int, List[int]] = defaultdict(list)
        for x in self.parent:
            groups[self.find(x)].append(x)
        return [sorted(members) for _, members in sorted(groups.items())]


def canonical_sort_key(event: EventSnapshot) -> Tuple[bool, float, int, int]:
    """Best canonical sorts highest: event phrase, confidence, sources, then lower id."""
    return (event.is_event_phrase, event.confidence, event.source_count, -event.id)


def candidate_pairs(events: Sequence[EventSnapshot], max_bucket_size: int) -> Set[Tuple[int, int]]:
    """
    Pairs of events sharing a stemmed token or a SimHash band.

    Buckets larger than ``max_bucket_size`` are skipped so a common token
    cannot make the pass quadratic.
    """
    buckets: Dict[str, List[int]] = defaultdict(list)
    for event in events:
        for token in stemmed_token_set(event.label):
            buckets[f"t:{token}"].append(event.id)
        fingerprint = label_simhash(event.label)
        if fingerprint:
            for band in band_keys(fingerprint):
                buckets[f"b:{band}"].append(event.id)

    pairs: Set[Tuple[int, int]] = set()
    for key, ids in buckets.items():
        if len(ids) > max_bucket_size:
            logger.debug(f"Skipping oversized dedup bucket {key} ({len(ids)} events)")
            continue
        for a, b in combinations(sorted(set(ids)), 2):
            pairs.add((a, b))
    return pairs


def plan_clusters(
    events: Sequence[EventSnapshot],
    similarity: SimilarityFn = label_similarity,
    thresholds: Optional[DedupThresholds] = None,
) -> DedupPlan:
    """
    Decide which events collapse into which canonical.

    Args:
        events: Active, non-clustered events
        similarity: Label similarity function in [0, 1]
        thresholds: Merge / review / candidate thresholds

    Returns:
        DedupPlan with clusters ordered by canonical id
    """
    thresholds = thresholds or DedupThresholds()
    by_id = {e.id: e for e in events}
    uf = UnionFind(by_id)

    # exact normalized label
    by_label: Dict[str, List[int]] = defaultdict(list)
    for event in events:
        if event.normalized_label:
            by_label[event.normalized_label].append(event.id)
    for ids in by_label.values():
        for other in ids[1:]:
            uf.union(ids[0], other)

    # near duplicates
    reviews: List[Tuple[int, int, float]] = []
    candidates: List[Tuple[int, int, float]] = []
    for a, b in sorted(candidate_pairs(events, thresholds.max_bucket_size)):
        ea, eb = by_id[a], by_id[b]
        if ea.normalized_label and ea.normalized_label == eb.normalized_label:
            continue
        score = similarity(ea.label, eb.label)
        decision = classify_similarity(score, thresholds)
        if decision == DECISION_MERGE:
            uf.union(a, b)
        elif decision == DECISION_REVIEW:
            reviews.append((a, b, score))
        elif decision == DECISION_CANDIDATE:
            candidates.append((a, b, score))

    # entity groups
    by_entity: Dict[str, List[EventSnapshot]] = defaultdict(list)
    for event in events:
        if event.primary_entity:
            by_entity[event.primary_entity].append(event)
    for members in by_entity.values():
        if len(members) < 2:
            continue
        phrases = [e for e in members if e.is_event_phrase]
        entity_only = [e for e in members if not e.is_event_phrase]
        if phrases:
            best = max(phrases, key=canonical_sort_key)
            for e in entity_only:
                uf.union(best.id, e.id)
        else:
            for e in entity_only[1:]:
                uf.union(entity_only[0].id, e.id)

    plan = DedupPlan(events_considered=len(events), labels={e.id: e.label for e in events})
    for component in uf.components():
        if len(component) < 2:
            continue
        canonical = max((by_id[i] for i in component), key=canonical_sort_key)
        members = [i for i in component if i != canonical.id]
        plan.clusters.append(PlannedCluster(
            canonical_id=canonical.id,
            member_ids=members,
            similarity_scores={
                i: 1.0 if by_id[i].normalized_label == canonical.normalized_label
                else round(similarity(by_id[i].label, canonical.label), 4)
                for i in members
            },
        ))

    # review pairs already collapsed into one cluster need no review
    plan.reviews = [(a, b, s) for a, b, s in reviews if uf.find(a) != uf.find(b)]
    plan.candidates = [(a, b, s) for a, b, s in candidates if uf.find(a) != uf.find(b)]
    plan.clusters.sort(key=lambda c: c.canonical_id)
    return plan


class Deduplicator:
    """
    Applies dedup plans to stored trend events.

    Each cluster is merged in its own transaction while holding the event
    keys of the canonical and every member, the same keys the aggregator
    takes when it ingests evidence. Pass the aggregator's ``locks`` so the
    two never interleave on one event.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        thresholds: Optional[DedupThresholds] = None,
        similarity: SimilarityFn = label_similarity,
        window_hours: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.session_factory = session_factory
        self.thresholds = thresholds or DedupThresholds()
        self.similarity = similarity
        self.window_hours = window_hours or get_settings().dedup_window_hours
        self.locks = locks or KeyedLock()
        self._lock = asyncio.Lock()

    async def reconcile(
        self,
        window: Optional[TimeRange] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileReport:
        """
        Collapse near-duplicate active events seen within ``window``.

        Args:
            window: ``last_seen_at`` range (defaults to the trailing dedup window)
            now: Reference time (defaults to current UTC time)

        Returns:
            ReconcileReport
        """
        now = ensure_utc(now) or get_current_utc_time()

        async with self._lock:
            plan = await self.plan(window, now)
            report = await self.apply(plan, now)

        logger.info(
            f"Reconciled {report.events_considered} events: {report.events_merged} merged "
            f"into {report.clusters_created + report.clusters_extended} clusters, "
            f"{report.reviews_created} queued for review",
            extra=report.to_dict(),
        )
        return report

    async def plan(self, window: Optional[TimeRange] = None, now: Optional[datetime] = None) -> DedupPlan:
        """Plan clusters over the unclustered events last seen within ``window``."""
        now = ensure_utc(now) or get_current_utc_time()
        if window is None:
            window = TimeRange(start=now - timedelta(hours=self.window_hours), end=now)

        async with self.session_factory() as session:
            events = await repo.events_seen_since(session, ensure_utc(window.start), ensure_utc(window.end))
            snapshots = [EventSnapshot.from_event(e) for e in events]

        if len(snapshots) < 2:
            return DedupPlan(events_considered=len(snapshots))
        return plan_clusters(snapshots, self.similarity, self.thresholds)

    async def apply(self, plan: DedupPlan, now: Optional[datetime] = None) -> ReconcileReport:
        """
        Apply a plan. Counts are read when each cluster is merged, not when
        the plan was made, so evidence ingested in between is folded too.
        """
        now = ensure_utc(now) or get_current_utc_time()
        report = ReconcileReport(events_considered=plan.events_considered)

        for planned in plan.clusters:
            await self._apply_cluster(planned, now, report)

        async with self.session_factory() as session:
            for a, b, score in plan.reviews:
                if await repo.insert_review_if_new(session, a, b, score, now):
                    report.reviews_created += 1
            await session.commit()

        for a, b, score in plan.candidates:
            report.candidates_logged += 1
            logger.info(
                f"Possible duplicate: '{plan.labels.get(a)}' ~ '{plan.labels.get(b)}' ({score:.2f})",
                extra={"event_id_a": a, "event_id_b": b, "similarity": score},
            )

        return report

    async def _cluster_keys(self, planned: PlannedCluster) -> List[str]:
        """Keys of the canonical, the members and any members a member already holds."""
        async with self.session_factory() as session:
            keys = list((await repo.event_keys_by_id(session, [planned.canonical_id, *planned.member_ids])).values())
            for member_id in planned.member_ids:
                keys.extend(await repo.member_event_keys(session, member_id))
        return keys

    async def _apply_cluster(self, planned: PlannedCluster, now: datetime, report: ReconcileReport) -> None:
        keys = await self._cluster_keys(planned)
        async with self.locks.hold_many(keys):
            async with self.session_factory() as session:
                await self._merge(session, planned, now, report)
                await session.commit()

    def _score(self, member: TrendEvent, canonical: TrendEvent) -> float:
        if member.normalized_label and member.normalized_label == canonical.normalized_label:
            return 1.0
        return round(self.similarity(member.canonical_label, canonical.canonical_label), 4)

    async def _merge(
        self,
        session: AsyncSession,
        planned: PlannedCluster,
        now: datetime,
        report: ReconcileReport,
    ) -> None:
        canonical = await repo.get_event(session, planned.canonical_id)
        if canonical is None or canonical.cluster_id is not None:
            # merged elsewhere since the plan was made
            report.conflicts_skipped += len(planned.member_ids)
            return

        merged_ids: List[int] = []
        scores: Dict[str, float] = {}
        last_seen = ensure_utc(canonical.last_seen_at)
        direct = 0

        for member_id in planned.member_ids:
            if not await repo.assign_cluster_if_unassigned(session, member_id, canonical.id):
                report.conflicts_skipped += 1
                logger.debug(f"Event {member_id} already clustered, skipping")
                continue

            # counts as of now, not as of planning
            member = await repo.get_event(session, member_id)
            await session.refresh(member)
            merged_ids.append(member_id)
            direct += 1
            score = planned.similarity_scores.get(member_id)
            scores[str(member_id)] = score if score is not None else self._score(member, canonical)

            await repo.add_merged_counts(
                session,
                canonical.id,
                member.evidence_count or 0,
                member.source_count or 0,
                include_totals=True,
            )
            last_seen = max(last_seen, ensure_utc(member.last_seen_at))

            # a former canonical brings its own members along
            former_members = await repo.cluster_members(session, member_id)
            moved = await repo.repoint_cluster_members(session, member_id, canonical.id)
            for former in former_members:
                merged_ids.append(former.id)
                scores[str(former.id)] = self._score(former, canonical)
            previous = await repo.get_cluster_for_canonical(session, member_id)
            if previous is not None:
                await repo.delete_cluster(session, previous)
            if moved:
                logger.info(f"Repointed {moved} members of former canonical {member_id} to {canonical.id}")

        if not merged_ids:
            return

        existing = await repo.get_cluster_for_canonical(session, canonical.id)
        await repo.upsert_cluster(session, canonical.id, merged_ids, scores, now)

        # pick up the SQL-side increments before touching the canonical again
        await session.refresh(canonical)
        canonical.last_seen_at = max(ensure_utc(canonical.last_seen_at), last_seen)
        canonical.updated_at = now

        if existing is None:
            report.clusters_created += 1
        else:
            report.clusters_extended += 1
        report.events_merged += direct
