"""Evidence ingestion contract and append-only store."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from trendbot.core import repositories as repo
from trendbot.core.errors import EvidenceValidationError
from trendbot.core.logging import get_logger
from trendbot.core.models import EvidenceItem
from trendbot.core.text import collapse_whitespace, derive_event_key
from trendbot.core.time import normalize_timezone

logger = get_logger(__name__)

SourceType = Literal["news", "rss", "social", "other"]


class EvidenceIn(BaseModel):
    """Normalized evidence record pushed by ingestion collaborators."""
    source_type: SourceType
    external_id: str = Field(min_length=1, max_length=255)
    source_name: Optional[str] = Field(default=None, max_length=255)
    discovered_at: datetime
    title: str = Field(min_length=1, max_length=800)
    body: str = Field(min_length=1)
    entities: List[str] = Field(default_factory=list)

    @field_validator("title", "body", "external_id", mode="before")
    @classmethod
    def _strip_required(cls, value: Any) -> Any:
        if isinstance(value, str):
            return collapse_whitespace(value)
        return value

    @field_validator("source_name", mode="before")
    @classmethod
    def _blank_source_name(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("entities", mode="before")
    @classmethod
    def _clean_entities(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [collapse_whitespace(str(e)) for e in value if e and str(e).strip()]
        return value

    @field_validator("discovered_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return normalize_timezone(value)

    @property
    def source_key(self) -> str:
        """Identity used for corroboration counting."""
        return self.source_name or self.source_type


def parse_evidence(raw: Any) -> EvidenceIn:
    """
    Validate one raw evidence record.

    Raises:
        EvidenceValidationError: If the record is malformed
    """
    if isinstance(raw, EvidenceIn):
        return raw
    try:
        return EvidenceIn.model_validate(raw)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise EvidenceValidationError(f"Invalid evidence ({fields})") from e


class EvidenceStore:
    """Append-only evidence persistence keyed by ``(source_type, external_id)``."""

    async def append(
        self,
        session: AsyncSession,
        evidence: EvidenceIn,
        event_key: Optional[str] = None,
    ) -> Tuple[bool, EvidenceItem]:
        """
        Store evidence unless it was seen before.

        Args:
            session: Database session (flushed, not committed)
            evidence: Validated evidence
            event_key: Precomputed key; derived from title and entities when omitted

        Returns:
            Tuple of (was_created, stored item). Re-ingestion returns the
            existing row untouched.
        """
        key = event_key or derive_event_key(evidence.title, evidence.entities)
        data: Dict[str, Any] = {
            "source_type": evidence.source_type,
            "external_id": evidence.external_id,
            "source_name": evidence.source_name,
            "discovered_at": evidence.discovered_at,
            "title": evidence.title,
            "body": evidence.body,
            "entities": list(evidence.entities),
            "event_key": key,
        }
        return await repo.insert_evidence_if_new(session, data)

    async def window(
        self,
        session: AsyncSession,
        event_keys: Sequence[str],
        since: datetime,
    ) -> List[Tuple[datetime, str, Optional[str]]]:
        """Evidence rows for ``event_keys`` discovered after ``since``."""
        return await repo.evidence_since(session, event_keys, since)

    async def totals(self, session: AsyncSession, event_key: str) -> Tuple[int, int]:
        """All-time (evidence count, distinct source count) of one key."""
        return await repo.evidence_totals(session, event_key)
