"""Tests for the evidence contract, the evidence store and key locks."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from trendbot.core.errors import EvidenceValidationError
from trendbot.core.locks import KeyedLock
from trendbot.evidence.store import EvidenceStore, parse_evidence

from conftest import make_evidence


class TestParseEvidence:

    def test_valid_record(self, now):
        evidence = parse_evidence(make_evidence("x-1", "  Trump   fires Wray ", now, source_name="  "))
        assert evidence.title == "Trump fires Wray"
        assert evidence.source_name is None
        assert evidence.source_key == "news"

    def test_offset_timestamps_become_utc(self):
        raw = make_evidence("x-1", "Storm hits coast", datetime(2025, 3, 10, 8, 0, tzinfo=timezone(timedelta(hours=-4))))
        assert parse_evidence(raw).discovered_at == datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    def test_naive_timestamps_are_utc(self):
        raw = make_evidence("x-1", "Storm hits coast", datetime(2025, 3, 10, 12, 0))
        assert parse_evidence(raw).discovered_at.tzinfo == timezone.utc

    def test_entities_are_cleaned(self, now):
        raw = make_evidence("x-1", "Storm hits coast", now)
        raw["entities"] = ["  Federal   Reserve ", "", None, "NATO"]
        assert parse_evidence(raw).entities == ["Federal Reserve", "NATO"]

    @pytest.mark.parametrize("field,value", [
        ("title", ""),
        ("body", "   "),
        ("external_id", ""),
        ("source_type", "fax"),
        ("discovered_at", "yesterday-ish"),
    ])
    def test_invalid_records(self, now, field, value):
        raw = make_evidence("x-1", "Storm hits coast", now)
        raw[field] = value
        with pytest.raises(EvidenceValidationError) as exc_info:
            parse_evidence(raw)
        assert field in str(exc_info.value)


class TestEvidenceStore:

    async def test_append_is_idempotent(self, session_factory, now):
        store = EvidenceStore()
        evidence = parse_evidence(make_evidence("x-1", "Storm hits coast", now, source_name="wire"))

        async with session_factory() as session:
            created, item = await store.append(session, evidence)
            again, same = await store.append(session, evidence)
            await session.commit()

        assert created and not again
        assert same.id == item.id
        assert item.event_key == "storm_hits_coast"

    async def test_window_and_totals(self, session_factory, now):
        store = EvidenceStore()
        async with session_factory() as session:
            for i, hours in enumerate([1, 30, 800]):
                evidence = parse_evidence(make_evidence(f"x-{i}", "Storm hits coast", now - timedelta(hours=hours),
                                                        source_name=f"outlet-{i % 2}"))
                await store.append(session, evidence)
            await session.commit()

            rows = await store.window(session, ["storm_hits_coast"], now - timedelta(days=31))
            totals = await store.totals(session, "storm_hits_coast")

        assert len(rows) == 2
        assert {r[1] for r in rows} == {"news"}
        assert totals == (3, 2)


class TestKeyedLock:

    async def test_same_key_is_serialized(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("event"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        inside = asyncio.Event()

        async def first():
            async with locks.hold("a"):
                await asyncio.wait_for(inside.wait(), timeout=1)

        async def second():
            async with locks.hold("b"):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_hold_many_blocks_every_key(self):
        locks = KeyedLock()
        order = []

        async def merger():
            async with locks.hold_many(["b", "a", "a"]):
                order.append("merge-in")
                await asyncio.sleep(0.01)
                order.append("merge-out")

        async def writer():
            await asyncio.sleep(0)
            async with locks.hold("b"):
                order.append("write")

        await asyncio.gather(merger(), writer())

        assert order == ["merge-in", "merge-out", "write"]
        assert len(locks) == 0
