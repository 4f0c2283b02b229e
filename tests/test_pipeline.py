"""End-to-end tests of the trend pipeline and relevance providers."""

from datetime import timedelta

import httpx
import pytest

from trendbot.core import repositories as repo
from trendbot.trends.aggregator import TrendAggregator
from trendbot.trends.pipeline import (
    STATUS_NOTHING_ACTIONABLE,
    STATUS_OK,
    TrendPipeline,
    load_entity_matcher,
)
from trendbot.trends.relevance import (
    HttpRelevanceProvider,
    RelevanceProvider,
    StaticRelevanceProvider,
    fetch_relevance_safe,
)

from conftest import burst, make_evidence


class FailingRelevance(RelevanceProvider):

    async def fetch(self, event_keys):
        raise httpx.ConnectError("relevance service down")


@pytest.fixture
def pipeline(session_factory):
    return TrendPipeline(session_factory)


class TestStages:

    def test_stage_names(self, pipeline):
        assert set(pipeline.stages()) == {"refresh_trends", "reconcile_duplicates"}

    async def test_full_cycle(self, pipeline, session_factory, now):
        await pipeline.ingest(burst("Trump fires Wray", now, 3, "a", sources=3), now=now)
        await pipeline.ingest(burst("Wray fired by Trump", now, 2, "b", sources=2), now=now)

        reconcile = await pipeline.reconcile_duplicates(now)
        refresh = await pipeline.refresh_trends(now + timedelta(minutes=5))
        result = await pipeline.ranked_trends(limit=10, now=now + timedelta(minutes=5))

        assert reconcile["events_merged"] == 1
        assert "duration_seconds" in refresh
        assert refresh["refreshed"] == 1  # the clustered member is skipped
        assert result.status == STATUS_OK
        [trend] = result.trends
        assert trend.event.event_key == "trump_fires_wray"
        assert trend.event.evidence_count == 5
        assert trend.event.current_1h == 5

    async def test_ranked_trends_empty(self, pipeline, now):
        result = await pipeline.ranked_trends(now=now)
        assert result.status == STATUS_NOTHING_ACTIONABLE
        assert result.to_dict()["trends"] == []

    async def test_old_events_are_not_ranked(self, pipeline, now):
        old = now - timedelta(hours=72)
        await pipeline.ingest(burst("Trump fires Wray", old, 3, "a", sources=3), now=old)

        result = await pipeline.ranked_trends(now=now)

        assert result.candidates == 0
        assert result.status == STATUS_NOTHING_ACTIONABLE


class TestRelevance:

    async def test_relevance_makes_event_actionable(self, session_factory, now):
        pipeline = TrendPipeline(session_factory, relevance=StaticRelevanceProvider({"senate_passes_bill": 50}))
        await pipeline.ingest([make_evidence("s-1", "Senate passes bill", now)], now=now)

        result = await pipeline.ranked_trends(now=now)

        assert result.status == STATUS_OK
        assert result.relevance_available
        assert result.trends[0].relevance == 50

    async def test_failing_provider_degrades_to_no_relevance(self, session_factory, now):
        pipeline = TrendPipeline(session_factory, relevance=FailingRelevance())
        await pipeline.ingest(burst("Trump fires Wray", now, 3, "a", sources=3), now=now)

        result = await pipeline.ranked_trends(now=now)

        assert result.status == STATUS_OK
        assert not result.relevance_available

    async def test_fetch_without_provider(self):
        assert await fetch_relevance_safe(None, ["a"]) == {}

    async def test_http_provider(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"scores": {"trump_fires_wray": 42, "other": None}})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = HttpRelevanceProvider("http://relevance.local/score", client=client)
            scores = await provider.fetch(["trump_fires_wray", "other"])

        assert scores == {"trump_fires_wray": 42.0}
        assert requests[0].method == "POST"

    async def test_http_provider_empty_keys_skips_call(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = HttpRelevanceProvider("http://relevance.local/score", client=client)
            assert await provider.fetch([]) == {}

    async def test_http_client_errors_are_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            provider = HttpRelevanceProvider("http://relevance.local/score", client=client)
            assert await fetch_relevance_safe(provider, ["a"]) == {}

        assert len(calls) == 1


class TestEntityConfig:

    def test_load_entity_matcher(self, tmp_path):
        path = tmp_path / "entities.yaml"
        path.write_text("entities:\n  - Christopher Wray\n  - FBI\n", encoding="utf-8")

        matcher = load_entity_matcher(str(path))

        assert matcher.find("FBI director Christopher Wray") == ["Christopher Wray", "FBI"]

    def test_missing_or_empty_file(self, tmp_path):
        assert load_entity_matcher(str(tmp_path / "absent.yaml")) is None
        empty = tmp_path / "empty.yaml"
        empty.write_text("entities: []\n", encoding="utf-8")
        assert load_entity_matcher(str(empty)) is None

    async def test_matcher_used_for_keys(self, session_factory, tmp_path, now):
        path = tmp_path / "entities.yaml"
        path.write_text("entities:\n  - Federal Reserve\n", encoding="utf-8")

        aggregator = TrendAggregator(session_factory, entity_matcher=load_entity_matcher(str(path)))
        pipeline = TrendPipeline(session_factory, aggregator=aggregator)
        await pipeline.ingest(
            [make_evidence("f-1", "Live updates", now, body="The Federal Reserve meets today")], now=now
        )

        async with session_factory() as session:
            assert await repo.get_event_by_key(session, "federal_reserve") is not None
