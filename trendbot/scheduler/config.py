"""Job definitions loaded from YAML and synced into ``scheduled_jobs``."""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy.ext.asyncio import async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.errors import ConfigMissingError
from trendbot.core.logging import get_logger
from trendbot.scheduler.cadence import parse_cadence

logger = get_logger(__name__)

DEFAULT_SECRET_ENV = "CRON_SECRET"


class TargetConfig(BaseModel):
    """What a job invokes: an in-process stage or an HTTP endpoint."""
    model_config = ConfigDict(extra="forbid")

    kind: Literal["stage", "http"]
    stage: Optional[str] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def _check_kind(self) -> "TargetConfig":
        if self.kind == "stage" and not self.stage:
            raise ValueError("stage targets need a 'stage' name")
        if self.kind == "http" and not self.url:
            raise ValueError("http targets need a 'url'")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JobConfig(BaseModel):
    """One scheduled job."""
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    cadence: str
    target: TargetConfig
    enabled: bool = True
    timeout_seconds: float = Field(default=120.0, gt=0)
    secret_env: str = Field(default=DEFAULT_SECRET_ENV, min_length=1)

    @field_validator("cadence")
    @classmethod
    def _valid_cadence(cls, value: str) -> str:
        parse_cadence(value)
        return value.strip()

    def to_record(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "cadence": self.cadence,
            "target": self.target.to_dict(),
            "enabled": self.enabled,
            "timeout_seconds": self.timeout_seconds,
            "secret_env": self.secret_env,
        }


class JobsFile(BaseModel):
    """Top-level ``jobs.yaml`` document."""
    model_config = ConfigDict(extra="forbid")

    jobs: List[JobConfig] = Field(default_factory=list)

    @field_validator("jobs")
    @classmethod
    def _unique_names(cls, jobs: List[JobConfig]) -> List[JobConfig]:
        names = [j.name for j in jobs]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate job names: {', '.join(duplicates)}")
        return jobs


def load_jobs_config(path: str) -> JobsFile:
    """
    Load and validate job definitions.

    Args:
        path: Path to the YAML file

    Returns:
        JobsFile

    Raises:
        ConfigMissingError: If the file does not exist
        pydantic.ValidationError: On unknown fields, bad cadences or duplicates
    """
    config_file = Path(path)
    if not config_file.exists():
        raise ConfigMissingError(f"Jobs config not found: {path}")

    with config_file.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    jobs_file = JobsFile.model_validate(data)
    logger.info(f"Loaded {len(jobs_file.jobs)} job definitions from {path}")
    return jobs_file


async def sync_jobs(
    session_factory: async_sessionmaker,
    jobs_file: JobsFile,
    known_stages: Optional[Iterable[str]] = None,
    disable_missing: bool = True,
) -> List[str]:
    """
    Upsert job definitions into ``scheduled_jobs``.

    Args:
        session_factory: Session factory
        jobs_file: Validated job definitions
        known_stages: Registered stage names; stage targets must be among them
        disable_missing: Disable stored jobs absent from ``jobs_file``

    Returns:
        Names of the synced jobs
    """
    if known_stages is not None:
        stages = set(known_stages)
        unknown = [
            j.name for j in jobs_file.jobs
            if j.target.kind == "stage" and j.target.stage not in stages
        ]
        if unknown:
            raise ValueError(f"Jobs target unknown stages: {', '.join(unknown)}")

    names = []
    async with session_factory() as session:
        for job in jobs_file.jobs:
            await repo.upsert_job(session, job.to_record())
            names.append(job.name)

        if disable_missing:
            for stored in await repo.list_jobs(session):
                if stored.name not in names and stored.enabled:
                    await repo.upsert_job(session, {"name": stored.name, "enabled": False})
                    logger.info(f"Disabled job missing from config: {stored.name}")

    logger.info(f"Synced {len(names)} scheduled jobs", extra={"jobs": names})
    return names
