"""Tests for the retry wrapper."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from trendbot.core.errors import TransientIOError
from trendbot.core.retry import is_transient, with_retry


def status_error(code):
    request = httpx.Request("POST", "http://relevance.local/score")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def sleep(delay):
        sleeps.append(delay)
    return sleep


class TestIsTransient:

    @pytest.mark.parametrize("exc", [
        TransientIOError("flaky"),
        httpx.ConnectError("refused"),
        httpx.ReadTimeout("slow"),
        asyncio.TimeoutError(),
        ConnectionResetError(),
        status_error(503),
        status_error(429),
    ])
    def test_retryable(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize("exc", [
        ValueError("bad input"),
        status_error(400),
        status_error(404),
        KeyError("missing"),
    ])
    def test_not_retryable(self, exc):
        assert not is_transient(exc)


class TestWithRetry:

    async def test_success_first_try(self, fake_sleep, sleeps):
        fn = AsyncMock(return_value="ok")
        assert await with_retry(fn, sleep=fake_sleep) == "ok"
        assert fn.await_count == 1
        assert sleeps == []

    async def test_transient_then_success(self, fake_sleep, sleeps):
        fn = AsyncMock(side_effect=[TransientIOError("one"), httpx.ConnectError("two"), "ok"])

        result = await with_retry(fn, max_retries=3, initial_delay=1.0, max_jitter=0.0, sleep=fake_sleep)

        assert result == "ok"
        assert fn.await_count == 3
        assert sleeps == [1.0, 2.0]

    async def test_non_retryable_fails_immediately(self, fake_sleep, sleeps):
        fn = AsyncMock(side_effect=ValueError("bad"))
        with pytest.raises(ValueError):
            await with_retry(fn, sleep=fake_sleep)
        assert fn.await_count == 1
        assert sleeps == []

    async def test_exhausted_retries_reraise_last_error(self, fake_sleep):
        fn = AsyncMock(side_effect=[TransientIOError("a"), TransientIOError("b"), TransientIOError("last")])
        with pytest.raises(TransientIOError, match="last"):
            await with_retry(fn, max_retries=2, sleep=fake_sleep)
        assert fn.await_count == 3

    async def test_delay_is_capped(self, fake_sleep, sleeps):
        fn = AsyncMock(side_effect=[TransientIOError("x")] * 4 + ["ok"])
        await with_retry(fn, max_retries=4, initial_delay=2.0, max_delay=5.0, max_jitter=0.0, sleep=fake_sleep)
        assert sleeps == [2.0, 4.0, 5.0, 5.0]

    async def test_jitter_is_bounded(self, fake_sleep, sleeps):
        fn = AsyncMock(side_effect=[TransientIOError("x"), "ok"])
        await with_retry(fn, initial_delay=1.0, max_jitter=0.5, sleep=fake_sleep)
        assert 1.0 <= sleeps[0] <= 1.5

    async def test_custom_predicate(self, fake_sleep):
        fn = AsyncMock(side_effect=[KeyError("k"), "ok"])
        result = await with_retry(fn, retry_predicate=lambda e: isinstance(e, KeyError), sleep=fake_sleep)
        assert result == "ok"

    async def test_server_errors_are_retried(self, fake_sleep):
        fn = AsyncMock(side_effect=[status_error(502), "ok"])
        assert await with_retry(fn, sleep=fake_sleep) == "ok"
