"""Tests for actionability ranking."""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from trendbot.trends.ranker import (
    EvergreenPolicy,
    QualityGates,
    RankPolicy,
    actionability_reasons,
    evergreen_penalty,
    quality_gate_failure,
    rank,
)


def event(key, confidence=50.0, z=0.0, breaking=False, trending=True, sources=1, cluster_id=None, event_id=None,
          quality="event_phrase", evidence=None, baseline_7d=0.0, baseline_30d=0.0):
    return SimpleNamespace(
        id=event_id or abs(hash(key)) % 10_000,
        event_key=key,
        canonical_label=key.replace("_", " "),
        label_quality=quality,
        baseline_7d=baseline_7d,
        baseline_30d=baseline_30d,
        confidence_score=confidence,
        z_score_velocity=z,
        velocity=1.0,
        is_breaking=breaking,
        is_trending=trending,
        trend_stage="surging",
        source_count=sources,
        evidence_count=sources if evidence is None else evidence,
        cluster_id=cluster_id,
        last_seen_at=datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
    )


class TestActionability:

    def test_reasons_in_fixed_order(self):
        e = event("storm_hits_coast", confidence=80, z=3.0, breaking=True, sources=4)
        assert actionability_reasons(e, 30.0, RankPolicy()) == [
            "breaking", "high_confidence", "z_score", "relevant", "corroborated",
        ]

    def test_no_reasons(self):
        assert actionability_reasons(event("quiet_story"), 0.0, RankPolicy()) == []

    def test_relevance_alone_is_enough(self):
        assert actionability_reasons(event("quiet_story"), 25.0, RankPolicy()) == ["relevant"]


class TestRank:

    def test_filters_ineligible_events(self):
        events = [
            event("not_trending", confidence=90, trending=False),
            event("low_confidence", confidence=10, breaking=True),
            event("clustered", confidence=90, cluster_id=1),
            event("kept", confidence=80),
        ]
        assert [r.event.event_key for r in rank(events, {}, limit=10)] == ["kept"]

    def test_empty_when_nothing_actionable(self):
        events = [event("a_story", confidence=40), event("b_story", confidence=50)]
        assert rank(events, {}, limit=10) == []

    def test_empty_input(self):
        assert rank([], None, limit=10) == []

    def test_actionable_before_higher_scored_rest(self):
        events = [
            event("loud_but_unactionable", confidence=69, z=1.9),
            event("actionable_by_relevance", confidence=31),
        ]
        ranked = rank(events, {"actionable_by_relevance": 40.0}, limit=10)

        assert [r.event.event_key for r in ranked] == ["actionable_by_relevance", "loud_but_unactionable"]
        assert [r.rank for r in ranked] == [1, 2]
        assert ranked[0].relevance == 40.0
        assert not ranked[1].actionable

    def test_rank_score_orders_actionable_events(self):
        events = [
            event("high_confidence", confidence=95),
            event("breaking_story", confidence=60, breaking=True),
            event("z_story", confidence=75, z=4.0),
        ]
        ranked = rank(events, {}, limit=10)

        # 60 + 50 bonus, 75 + 4 * 10, 95
        assert [r.event.event_key for r in ranked] == ["z_story", "breaking_story", "high_confidence"]
        assert ranked[0].rank_score == pytest.approx(115.0)

    def test_ties_break_on_event_key(self):
        events = [event("b_story", confidence=80), event("a_story", confidence=80)]
        assert [r.event.event_key for r in rank(events, {}, limit=10)] == ["a_story", "b_story"]

    def test_deterministic(self):
        events = [event(f"story_{i}", confidence=70 + i % 3, z=i % 4) for i in range(12)]
        first = [r.event.event_key for r in rank(events, {}, limit=12)]
        second = [r.event.event_key for r in rank(list(reversed(events)), {}, limit=12)]
        assert first == second

    def test_limit(self):
        events = [event(f"story_{i}", confidence=80 + i) for i in range(5)]
        ranked = rank(events, {}, limit=2)
        assert [r.event.event_key for r in ranked] == ["story_4", "story_3"]

    def test_custom_policy(self):
        policy = RankPolicy(min_confidence=50.0, actionable_confidence=90.0)
        events = [event("below_min", confidence=45, breaking=True), event("above", confidence=85)]
        assert rank(events, {}, limit=10, policy=policy) == []

    def test_to_dict(self):
        ranked = rank([event("storm_hits_coast", confidence=80, event_id=7)], {}, limit=5)
        data = ranked[0].to_dict()
        assert data["rank"] == 1
        assert data["event_id"] == 7
        assert data["reasons"] == ["high_confidence"]
        assert data["last_seen_at"] == "2025-03-10T12:00:00+00:00"


class TestQualityGates:

    @pytest.mark.parametrize("key", ["breaking", "ice", "us"])
    def test_blocklisted_topics(self, key):
        e = event(key, confidence=90, quality="entity_only", sources=5, evidence=50)
        assert quality_gate_failure(e, QualityGates()) == "blocklisted_term"

    def test_all_words_blocklisted(self):
        assert quality_gate_failure(event("breaking_news_update"), QualityGates()) == "all_words_blocklisted"

    def test_one_real_word_passes(self):
        assert quality_gate_failure(event("senate_passes_border_bill"), QualityGates()) is None

    @pytest.mark.parametrize("evidence,sources,expected", [
        (5, 5, "single_word_low_volume"),
        (25, 2, "single_word_low_sources"),
        (25, 3, None),
    ])
    def test_single_word_entities_need_volume(self, evidence, sources, expected):
        e = event("wray", quality="entity_only", evidence=evidence, sources=sources)
        assert quality_gate_failure(e, QualityGates()) == expected

    def test_known_acronyms_skip_volume_bar(self):
        assert quality_gate_failure(event("fbi", quality="entity_only"), QualityGates()) is None

    def test_custom_gates(self):
        gates = QualityGates(min_mentions_single_word=2, min_sources_single_word=1)
        assert quality_gate_failure(event("wray", quality="entity_only", evidence=2), gates) is None

    def test_rank_drops_gated_events(self):
        events = [event("ice", confidence=90), event("storm_hits_coast", confidence=80)]
        assert [r.event.event_key for r in rank(events, {}, limit=10)] == ["storm_hits_coast"]


class TestEvergreen:

    def test_ordinary_topic_has_no_penalty(self):
        assert evergreen_penalty(event("storm_hits_coast"), EvergreenPolicy()) == 1.0

    def test_listed_topic_without_history(self):
        assert evergreen_penalty(event("supreme_court"), EvergreenPolicy()) == pytest.approx(0.08)

    def test_listed_topic_with_history(self):
        e = event("supreme_court", baseline_7d=0.5, baseline_30d=1.0)
        assert evergreen_penalty(e, EvergreenPolicy()) == pytest.approx(0.05)

    @pytest.mark.parametrize("z,expected", [
        (8.5, 0.80),
        (6.5, 0.55),
        (5.5, 0.35),
        (4.5, 0.20),
        (4.0, 0.08),
    ])
    def test_spikes_keep_more_of_the_score(self, z, expected):
        assert evergreen_penalty(event("supreme_court", z=z), EvergreenPolicy()) == pytest.approx(expected)

    def test_stable_high_baseline_is_evergreen(self):
        steady = event("border_talks_stall", baseline_7d=2.0, baseline_30d=2.2)
        rising = event("border_talks_stall", baseline_7d=4.0, baseline_30d=2.0)
        assert evergreen_penalty(steady, EvergreenPolicy()) == pytest.approx(0.05)
        assert evergreen_penalty(rising, EvergreenPolicy()) == 1.0

    def test_single_word_topics_use_lower_baseline_bar(self):
        e = event("wray", baseline_7d=0.9, baseline_30d=1.0)
        assert evergreen_penalty(e, EvergreenPolicy()) == pytest.approx(0.05)

    def test_single_word_entity_label_penalty(self):
        assert evergreen_penalty(event("wray", quality="entity_only"), EvergreenPolicy()) == pytest.approx(0.15)

    def test_evergreen_topic_ranks_below_fresh_story(self):
        events = [
            event("supreme_court", confidence=90, baseline_7d=3.0, baseline_30d=3.0),
            event("storm_hits_coast", confidence=75),
        ]
        ranked = rank(events, {}, limit=10)

        assert [r.event.event_key for r in ranked] == ["storm_hits_coast", "supreme_court"]
        assert ranked[1].rank_score == pytest.approx(4.5)
        assert ranked[1].to_dict()["evergreen_penalty"] == 0.05
        assert ranked[1].actionable

    def test_custom_policy(self):
        policy = RankPolicy(evergreen=EvergreenPolicy(entities=frozenset()))
        [trend] = rank([event("supreme_court", confidence=90)], {}, limit=10, policy=policy)
        assert trend.rank_score == pytest.approx(90.0)
