"""Actionability ranking of trend events.

Decides which events are surfaced at read time. Pure and deterministic:
the same events and relevance map always give the same list.

Two suppression rules sit in front of the actionability rules:

- quality gates drop blocklisted topics outright and make single-word
  entity topics clear a much higher volume bar
- the evergreen penalty scales down the rank score of always-on topics
  ("Trump", "NATO", a steady 30-day baseline) unless they are spiking
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple

from trendbot.core.logging import get_logger
from trendbot.core.models import LABEL_ENTITY_ONLY, TrendEvent
from trendbot.core.text import normalize_label

logger = get_logger(__name__)

REASON_BREAKING = "breaking"
REASON_HIGH_CONFIDENCE = "high_confidence"
REASON_Z_SCORE = "z_score"
REASON_RELEVANT = "relevant"
REASON_CORROBORATED = "corroborated"

GATE_BLOCKLISTED = "blocklisted_term"
GATE_ALL_WORDS_BLOCKLISTED = "all_words_blocklisted"
GATE_SINGLE_WORD_LOW_VOLUME = "single_word_low_volume"
GATE_SINGLE_WORD_LOW_SOURCES = "single_word_low_sources"

# Generic terms that never trend on their own
TOPIC_BLOCKLIST = frozenset({
    "politics", "political", "government", "democracy", "freedom", "liberty",
    "america", "american", "united states", "usa", "congress", "senate", "house",
    "republican", "democrat", "conservative", "liberal", "progressive",
    "breaking", "news", "update", "report", "latest", "today", "new",
    "says", "said", "announces", "announced", "confirms", "confirmed",
    "claims", "calls", "called", "asks", "asked",
    "people", "time", "year", "years", "day", "days", "week", "weeks",
    "first", "last", "next", "more", "most", "many", "some", "other",
    "thread", "post", "tweet", "retweet", "share", "like", "comment",
    "watch", "video", "photo", "image", "live", "opinion", "editorial",
    "us", "uk", "eu", "un", "mlk", "ice",
})

# Unambiguous single-word names that may trend alone on lower volume
ALLOWED_SINGLE_WORD_ENTITIES = frozenset({
    "nato", "fbi", "cia", "doj", "dhs", "epa", "fda", "cdc",
    "nsa", "irs", "sec", "ftc", "fcc", "fec", "osha", "scotus", "potus",
    "hamas", "hezbollah", "isis",
})

# Topics that are always in the news
EVERGREEN_ENTITIES = frozenset({
    "trump", "biden", "harris", "obama", "pelosi", "mcconnell", "schumer",
    "musk", "putin", "netanyahu", "zelensky", "xi jinping", "vance", "walz",
    "white house", "pentagon", "state department", "justice department",
    "congress", "senate", "house", "supreme court", "capitol",
    "gaza", "israel", "ukraine", "russia", "china", "taiwan", "iran",
    "greenland", "nato", "eu", "european union", "middle east", "west bank",
    "immigration", "border", "economy", "inflation", "healthcare", "climate",
    "taxes", "election", "campaign", "poll", "polls", "voter", "voting",
    "tariffs", "trade", "democracy", "freedom", "abortion", "gun", "guns",
})


@dataclass
class QualityGates:
    """Topics that may not trend, and the bar single-word entity topics must clear."""
    blocklist: FrozenSet[str] = TOPIC_BLOCKLIST
    allowed_single_word: FrozenSet[str] = ALLOWED_SINGLE_WORD_ENTITIES
    min_mentions_single_word: int = 20
    min_sources_single_word: int = 3


@dataclass
class EvergreenPolicy:
    """
    Rank-score multipliers for always-on topics.

    A topic is evergreen when it is listed in ``entities`` or its 7-day and
    30-day baselines are both high and close together. Evergreen topics keep
    a larger share of their score the higher their z-score spike; single-word
    entity labels are scaled by ``single_word_entity_penalty`` on top.
    """
    entities: FrozenSet[str] = EVERGREEN_ENTITIES
    stable_min_30d: float = 2.0
    stable_min_7d: float = 1.5
    stable_max_drift: float = 0.3
    single_word_min_30d: float = 1.0
    single_word_min_7d: float = 0.8
    single_word_max_drift: float = 0.5
    # (z-score above, multiplier), highest first
    spike_steps: Tuple[Tuple[float, float], ...] = ((8.0, 0.80), (6.0, 0.55), (5.0, 0.35), (4.0, 0.20))
    quiet_penalty: float = 0.05
    quiet_penalty_without_history: float = 0.08
    single_word_entity_penalty: float = 0.15


@dataclass
class RankPolicy:
    """Eligibility and actionability thresholds."""
    min_confidence: float = 30.0
    actionable_confidence: float = 70.0
    actionable_z: float = 2.0
    actionable_relevance: float = 25.0
    actionable_sources: int = 3
    breaking_bonus: float = 50.0
    z_weight: float = 10.0
    gates: QualityGates = field(default_factory=QualityGates)
    evergreen: EvergreenPolicy = field(default_factory=EvergreenPolicy)


@dataclass
class RankedTrend:
    """A surfaced trend event with its ranking outcome."""
    event: TrendEvent
    rank_score: float
    actionable: bool
    reasons: List[str] = field(default_factory=list)
    relevance: float = 0.0
    evergreen_penalty: float = 1.0
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        event = self.event
        return {
            "rank": self.rank,
            "event_id": event.id,
            "event_key": event.event_key,
            "label": event.canonical_label,
            "rank_score": round(self.rank_score, 3),
            "actionable": self.actionable,
            "reasons": list(self.reasons),
            "relevance": self.relevance,
            "evergreen_penalty": round(self.evergreen_penalty, 3),
            "confidence_score": event.confidence_score,
            "z_score_velocity": event.z_score_velocity,
            "velocity": event.velocity,
            "is_breaking": event.is_breaking,
            "trend_stage": event.trend_stage,
            "source_count": event.source_count,
            "evidence_count": event.evidence_count,
            "last_seen_at": event.last_seen_at.isoformat() if event.last_seen_at else None,
        }


def quality_gate_failure(event: TrendEvent, gates: QualityGates) -> Optional[str]:
    """
    Reason ``event`` may not trend, or None when it passes.

    Single-word topics only face the volume bar when their label is an
    entity name; an event phrase is never a single word.
    """
    topic = normalize_label(event.canonical_label)
    if not topic or topic in gates.blocklist or event.event_key.replace("_", " ") in gates.blocklist:
        return GATE_BLOCKLISTED

    words = topic.split()
    if len(words) > 1 and all(w in gates.blocklist for w in words):
        return GATE_ALL_WORDS_BLOCKLISTED

    if len(words) == 1 and event.label_quality == LABEL_ENTITY_ONLY and topic not in gates.allowed_single_word:
        if (event.evidence_count or 0) < gates.min_mentions_single_word:
            return GATE_SINGLE_WORD_LOW_VOLUME
        if (event.source_count or 0) < gates.min_sources_single_word:
            return GATE_SINGLE_WORD_LOW_SOURCES
    return None


def is_evergreen(topic: str, baseline_7d: float, baseline_30d: float, policy: EvergreenPolicy) -> bool:
    if topic in policy.entities:
        return True

    drift = abs(baseline_7d - baseline_30d) / max(baseline_30d, 0.1)
    if baseline_30d >= policy.stable_min_30d and baseline_7d >= policy.stable_min_7d:
        if drift < policy.stable_max_drift:
            return True
    if len(topic.split()) == 1 and baseline_30d >= policy.single_word_min_30d:
        if baseline_7d >= policy.single_word_min_7d and drift < policy.single_word_max_drift:
            return True
    return False


def evergreen_penalty(event: TrendEvent, policy: EvergreenPolicy) -> float:
    """Multiplier in (0, 1] applied to the rank score of ``event``."""
    topic = normalize_label(event.canonical_label)
    baseline_7d = event.baseline_7d or 0.0
    baseline_30d = event.baseline_30d or 0.0

    base = 1.0
    if len(topic.split()) == 1 and event.label_quality == LABEL_ENTITY_ONLY:
        base = policy.single_word_entity_penalty

    if not is_evergreen(topic, baseline_7d, baseline_30d, policy):
        return base

    z = event.z_score_velocity or 0.0
    for threshold, multiplier in policy.spike_steps:
        if z > threshold:
            return multiplier * base
    if baseline_30d > 0:
        return policy.quiet_penalty * base
    return policy.quiet_penalty_without_history * base


def actionability_reasons(event: TrendEvent, relevance: float, policy: RankPolicy) -> List[str]:
    """Every rule that makes ``event`` actionable, in a fixed order."""
    reasons = []
    if event.is_breaking:
        reasons.append(REASON_BREAKING)
    if event.confidence_score >= policy.actionable_confidence:
        reasons.append(REASON_HIGH_CONFIDENCE)
    if event.z_score_velocity >= policy.actionable_z:
        reasons.append(REASON_Z_SCORE)
    if relevance >= policy.actionable_relevance:
        reasons.append(REASON_RELEVANT)
    if event.source_count >= policy.actionable_sources:
        reasons.append(REASON_CORROBORATED)
    return reasons


def rank(
    events: Sequence[TrendEvent],
    relevance: Optional[Mapping[str, float]],
    limit: int,
    policy: Optional[RankPolicy] = None,
) -> List[RankedTrend]:
    """
    Rank trend events for display.

    Args:
        events: Candidate trend events
        relevance: Relevance score per event key; missing keys count as 0
        limit: Maximum number of results
        policy: Ranking thresholds

    Returns:
        Up to ``limit`` ranked trends, actionable ones first. Empty when
        no candidate is actionable.
    """
    policy = policy or RankPolicy()
    relevance = relevance or {}

    ranked: List[RankedTrend] = []
    for event in events:
        if not event.is_trending or event.cluster_id is not None:
            continue
        if event.confidence_score < policy.min_confidence:
            continue
        failure = quality_gate_failure(event, policy.gates)
        if failure:
            logger.debug(f"Quality gate filtered '{event.canonical_label}' ({failure})")
            continue

        score = relevance.get(event.event_key, 0.0) or 0.0
        reasons = actionability_reasons(event, score, policy)
        penalty = evergreen_penalty(event, policy.evergreen)
        rank_score = (
            event.confidence_score
            + (policy.breaking_bonus if event.is_breaking else 0.0)
            + event.z_score_velocity * policy.z_weight
        ) * penalty
        ranked.append(RankedTrend(
            event=event,
            rank_score=rank_score,
            actionable=bool(reasons),
            reasons=reasons,
            relevance=score,
            evergreen_penalty=penalty,
        ))

    if not any(r.actionable for r in ranked):
        logger.debug(f"No actionable trends among {len(ranked)} eligible events")
        return []

    ranked.sort(key=lambda r: (not r.actionable, -r.rank_score, -r.event.confidence_score, r.event.event_key))
    top = ranked[:max(0, limit)]
    for position, item in enumerate(top, start=1):
        item.rank = position
    return top
