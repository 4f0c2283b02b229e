"""Retry wrapper for flaky collaborator calls."""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from .errors import TransientIOError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def is_transient(exc: BaseException) -> bool:
    """Default retry predicate: network failures, timeouts and 5xx/429 responses."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(
        exc,
        (TransientIOError, httpx.TransportError, asyncio.TimeoutError, ConnectionError),
    )


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Attempt {retry_state.attempt_number} failed ({type(exc).__name__}: {exc}), "
        f"retrying in {delay:.2f}s",
        extra={"attempt": retry_state.attempt_number, "delay": delay},
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retry_predicate: Callable[[BaseException], bool] = is_transient,
    max_jitter: float = 1.0,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Call ``fn`` and retry transient failures with exponential backoff.

    The delay starts at ``initial_delay``, doubles per attempt, gets up to
    ``max_jitter`` seconds of random jitter and is capped at ``max_delay``.
    Errors rejected by ``retry_predicate`` propagate immediately; once
    retries are exhausted the last error propagates.

    Args:
        fn: Zero-argument coroutine factory
        max_retries: Retries after the first attempt
        initial_delay: First backoff delay in seconds
        max_delay: Upper bound for any delay
        retry_predicate: Decides whether an exception is retryable
        max_jitter: Upper bound of the random jitter added to each delay
        sleep: Sleep coroutine (defaults to ``asyncio.sleep``)

    Returns:
        Result of the first successful call
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential_jitter(initial=initial_delay, max=max_delay, jitter=max_jitter),
        retry=retry_if_exception(retry_predicate),
        before_sleep=_log_retry,
        sleep=sleep or asyncio.sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
