"""Relevance collaborator clients.

Relevance scoring lives outside this service. Providers return a score per
event key; anything missing counts as zero in the ranker.
"""

from typing import Dict, Mapping, Optional, Sequence

import httpx

from trendbot.core.logging import get_logger
from trendbot.core.retry import with_retry

logger = get_logger(__name__)


class RelevanceProvider:
    """Base class for relevance lookups."""

    async def fetch(self, event_keys: Sequence[str]) -> Dict[str, float]:
        raise NotImplementedError


class StaticRelevanceProvider(RelevanceProvider):
    """Fixed scores, for tests and deployments without a relevance service."""

    def __init__(self, scores: Optional[Mapping[str, float]] = None):
        self.scores = dict(scores or {})

    async def fetch(self, event_keys: Sequence[str]) -> Dict[str, float]:
        return {key: self.scores[key] for key in event_keys if key in self.scores}


class HttpRelevanceProvider(RelevanceProvider):
    """POSTs event keys to a relevance service and reads back ``{"scores": {...}}``."""

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        max_retries: int = 2,
    ):
        self.url = url
        self.timeout = timeout
        self.client = client
        self.max_retries = max_retries

    async def _post(self, client: httpx.AsyncClient, event_keys: Sequence[str]) -> Dict[str, float]:
        response = await client.post(self.url, json={"event_keys": list(event_keys)}, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        scores = payload.get("scores", {}) if isinstance(payload, dict) else {}
        return {str(k): float(v) for k, v in scores.items() if v is not None}

    async def fetch(self, event_keys: Sequence[str]) -> Dict[str, float]:
        if not event_keys:
            return {}
        if self.client is not None:
            return await with_retry(lambda: self._post(self.client, event_keys), max_retries=self.max_retries)
        async with httpx.AsyncClient() as client:
            return await with_retry(lambda: self._post(client, event_keys), max_retries=self.max_retries)


async def fetch_relevance_safe(
    provider: Optional[RelevanceProvider],
    event_keys: Sequence[str],
) -> Dict[str, float]:
    """Relevance scores, or an empty map when the provider is absent or fails."""
    if provider is None or not event_keys:
        return {}
    try:
        return await provider.fetch(event_keys)
    except Exception as e:
        logger.warning(f"Relevance lookup failed, ranking without it: {e}")
        return {}
