"""TrendBot FastAPI application: evidence intake, stage triggers and read API."""

import secrets
from functools import lru_cache
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from trendbot.core import repositories as repo
from trendbot.core.db import get_sessionmaker
from trendbot.core.logging import get_logger, setup_logging
from trendbot.core.models import TrendEvent
from trendbot.core.settings import get_settings
from trendbot.core.time import ensure_utc
from trendbot.scheduler.health import job_health
from trendbot.trends.pipeline import DEFAULT_LIMIT, TrendPipeline, build_pipeline
from trendbot.trends.relevance import RelevanceProvider

SERVICE_NAME = "trendbot"
VERSION = "0.1.0"
MAX_LIMIT = 100

setup_logging(SERVICE_NAME)
logger = get_logger(__name__)

app = FastAPI(title="TrendBot", version=VERSION, description="Trend detection, deduplication and ranking API")


class EvidenceBatch(BaseModel):
    """Batch of raw evidence records; each one is validated individually."""
    items: List[Dict[str, Any]] = Field(default_factory=list)


def get_session_factory() -> async_sessionmaker:
    return get_sessionmaker()


@lru_cache()
def _pipeline_for(session_factory: async_sessionmaker) -> TrendPipeline:
    return build_pipeline(session_factory)


def get_pipeline(session_factory: async_sessionmaker = Depends(get_session_factory)) -> TrendPipeline:
    """One pipeline per session factory so key locks are shared across requests."""
    return _pipeline_for(session_factory)


def get_relevance_provider() -> Optional[RelevanceProvider]:
    """Relevance override; None uses the pipeline's configured provider."""
    return None


def get_cron_secret() -> str:
    return get_settings().cron_secret


def verify_cron_secret(
    x_cron_secret: Optional[str] = Header(default=None, alias="X-Cron-Secret"),
    expected: str = Depends(get_cron_secret),
) -> bool:
    """
    Shared-secret check for write endpoints.

    Fails closed: an unset server secret rejects every request, as does a
    missing or mismatched header.
    """
    expected = (expected or "").strip()
    if not expected:
        logger.error("CRON_SECRET is not configured; rejecting request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    provided = (x_cron_secret or "").strip()
    if not provided or not secrets.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    return True


def event_to_dict(event: TrendEvent) -> Dict[str, Any]:
    def iso(value):
        value = ensure_utc(value)
        return value.isoformat() if value else None

    return {
        "id": event.id,
        "event_key": event.event_key,
        "canonical_label": event.canonical_label,
        "normalized_label": event.normalized_label,
        "primary_entity": event.primary_entity,
        "label_quality": event.label_quality,
        "first_seen_at": iso(event.first_seen_at),
        "last_seen_at": iso(event.last_seen_at),
        "baseline_7d": event.baseline_7d,
        "baseline_30d": event.baseline_30d,
        "baseline_stddev": event.baseline_stddev,
        "baseline_sample_days": event.baseline_sample_days,
        "current_1h": event.current_1h,
        "current_6h": event.current_6h,
        "current_24h": event.current_24h,
        "velocity": event.velocity,
        "acceleration": event.acceleration,
        "z_score_velocity": event.z_score_velocity,
        "confidence_score": event.confidence_score,
        "is_trending": event.is_trending,
        "is_breaking": event.is_breaking,
        "trend_stage": event.trend_stage,
        "source_count": event.source_count,
        "evidence_count": event.evidence_count,
        "merged_source_count": event.merged_source_count,
        "merged_evidence_count": event.merged_evidence_count,
        "cluster_id": event.cluster_id,
    }


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": SERVICE_NAME,
        "version": VERSION,
        "endpoints": {
            "health": "/healthz",
            "evidence": "/evidence (POST, X-Cron-Secret)",
            "stages": "/stages/{stage} (POST, X-Cron-Secret)",
            "trends": "/trends",
            "event": "/trends/events/{event_id}",
            "jobs_health": "/jobs/health",
        },
    }


@app.post("/evidence")
async def ingest_evidence(
    batch: EvidenceBatch,
    _: bool = Depends(verify_cron_secret),
    pipeline: TrendPipeline = Depends(get_pipeline),
):
    """Ingest a batch of normalized evidence; malformed items are counted, not fatal."""
    stats = await pipeline.ingest(batch.items)
    return {"status": "ok", "stats": stats.to_dict()}


@app.post("/stages/{stage}")
async def run_stage(
    stage: str,
    _: bool = Depends(verify_cron_secret),
    pipeline: TrendPipeline = Depends(get_pipeline),
):
    """Run one pipeline stage now."""
    stages = pipeline.stages()
    if stage not in stages:
        raise HTTPException(status_code=404, detail=f"Unknown stage: {stage}")

    logger.info(f"Running stage {stage} via API", extra={"stage": stage, "endpoint": "/stages"})
    try:
        result = await stages[stage](None)
    except Exception as e:
        logger.error(f"Stage {stage} failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Stage {stage} failed: {e}")
    return {"stage": stage, "status": "ok", "result": result}


@app.get("/trends")
async def list_trends(
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    pipeline: TrendPipeline = Depends(get_pipeline),
    relevance: Optional[RelevanceProvider] = Depends(get_relevance_provider),
):
    """Ranked actionable trends; ``status`` is ``nothing_actionable`` when the list is empty."""
    result = await pipeline.ranked_trends(limit=limit, relevance=relevance)
    return result.to_dict()


@app.get("/trends/events/{event_id}")
async def get_trend_event(
    event_id: int,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """One trend event with its duplicate cluster, if it is a canonical."""
    async with session_factory() as session:
        event = await repo.get_event(session, event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="Trend event not found")
        cluster = await repo.get_cluster_for_canonical(session, event.id)

    data = event_to_dict(event)
    data["cluster"] = None
    if cluster is not None:
        data["cluster"] = {
            "member_event_ids": list(cluster.member_event_ids or []),
            "similarity_scores": dict(cluster.similarity_scores or {}),
            "merged_at": ensure_utc(cluster.merged_at).isoformat(),
        }
    return data


@app.get("/jobs/health")
async def jobs_health(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Scheduler health: last outcome and failures per job."""
    async with session_factory() as session:
        return await job_health(session)


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    logger.info(
        "Starting trendbot service",
        extra={"service": SERVICE_NAME, "version": VERSION, "secret_configured": bool(get_settings().cron_secret)},
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    logger.info("Shutting down trendbot service")


if __name__ == "__main__":
    settings = get_settings()
    logger.info("Starting trendbot service via uvicorn")
    uvicorn.run(
        "trendbot.api.app:app",
        host=settings.service_host,
        port=settings.service_port or 8000,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
