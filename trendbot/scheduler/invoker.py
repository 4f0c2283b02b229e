"""Job target invocation: in-process stages and HTTP endpoints."""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from trendbot.core.errors import TrendbotError
from trendbot.core.logging import get_logger

logger = get_logger(__name__)

SECRET_HEADER = "X-Cron-Secret"

StageFn = Callable[[datetime], Awaitable[Any]]


class TargetInvoker:
    """
    Dispatches a job target descriptor.

    ``{"kind": "stage", "stage": name}`` calls a registered coroutine with the
    tick time. ``{"kind": "http", "url": url}`` POSTs to the URL with the
    shared secret in ``X-Cron-Secret``.
    """

    def __init__(
        self,
        stages: Optional[Mapping[str, StageFn]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.stages: Dict[str, StageFn] = dict(stages or {})
        self.client = client

    def register(self, name: str, fn: StageFn) -> None:
        self.stages[name] = fn

    async def invoke(self, target: Mapping[str, Any], secret: str, now: datetime) -> Any:
        kind = target.get("kind")
        if kind == "stage":
            return await self._invoke_stage(target.get("stage"), now)
        if kind == "http":
            return await self._invoke_http(target.get("url"), secret)
        raise TrendbotError(f"Unknown target kind: {kind!r}")

    async def _invoke_stage(self, name: Optional[str], now: datetime) -> Any:
        fn = self.stages.get(name or "")
        if fn is None:
            raise TrendbotError(f"Unknown stage: {name!r}")
        logger.debug(f"Invoking stage {name}")
        return await fn(now)

    async def _invoke_http(self, url: Optional[str], secret: str) -> Any:
        if not url:
            raise TrendbotError("HTTP target without url")
        headers = {SECRET_HEADER: secret}
        if self.client is not None:
            response = await self.client.post(url, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(url, headers=headers)
        response.raise_for_status()
        logger.debug(f"HTTP target {url} returned {response.status_code}")
        try:
            return response.json()
        except ValueError:
            return response.text
