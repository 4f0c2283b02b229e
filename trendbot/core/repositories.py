"""Repository layer for database operations.

Job and execution helpers commit their own changes. Evidence, event and
cluster helpers only flush; the aggregator and deduplicator commit once per
unit of work.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, desc, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .logging import get_logger
from .models import (
    DuplicateCluster,
    DuplicateReview,
    EvidenceItem,
    JobExecution,
    ScheduledJob,
    TrendEvent,
    JOB_STATUS_FAILED,
    JOB_STATUS_RUNNING,
    JOB_STATUS_SUCCEEDED,
)
from .time import ensure_utc

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Scheduled jobs
# ---------------------------------------------------------------------------

JOB_FIELDS = ("cadence", "target", "enabled", "timeout_seconds", "secret_env")


async def upsert_job(session: AsyncSession, job_rec: Dict[str, Any]) -> ScheduledJob:
    """
    Upsert a scheduled job from a config record by name.

    Scheduling state (``last_run_at`` / ``next_run_at``) is left alone.

    Args:
        session: Database session
        job_rec: Job definition with ``name`` and any of the job fields

    Returns:
        ScheduledJob (existing or newly created)
    """
    name = job_rec.get("name")
    if not name:
        raise ValueError("Job record missing required 'name' field")

    result = await session.execute(select(ScheduledJob).where(ScheduledJob.name == name))
    job = result.scalar_one_or_none()

    if job is None:
        job = ScheduledJob(name=name, **{k: job_rec[k] for k in JOB_FIELDS if k in job_rec})
        session.add(job)
        await session.commit()
        await session.refresh(job)
        logger.info(f"Created scheduled job: {name}", extra={"job": name})
        return job

    update_data = {k: job_rec[k] for k in JOB_FIELDS if k in job_rec}
    if update_data:
        await session.execute(
            update(ScheduledJob).where(ScheduledJob.id == job.id).values(**update_data)
        )
        await session.commit()
        await session.refresh(job)
    logger.debug(f"Updated scheduled job: {name}")
    return job


async def get_job(session: AsyncSession, name: str) -> Optional[ScheduledJob]:
    result = await session.execute(select(ScheduledJob).where(ScheduledJob.name == name))
    return result.scalar_one_or_none()


async def list_jobs(session: AsyncSession) -> List[ScheduledJob]:
    result = await session.execute(select(ScheduledJob).order_by(ScheduledJob.name))
    return list(result.scalars().all())


async def list_enabled_jobs(session: AsyncSession) -> List[ScheduledJob]:
    """Get all enabled jobs; disabled jobs are never scheduled."""
    result = await session.execute(
        select(ScheduledJob).where(ScheduledJob.enabled.is_(True)).order_by(ScheduledJob.name)
    )
    return list(result.scalars().all())


async def mark_job_run(
    session: AsyncSession,
    name: str,
    last_run_at: datetime,
    next_run_at: Optional[datetime],
) -> None:
    """Record a successful run and the next due time."""
    await session.execute(
        update(ScheduledJob)
        .where(ScheduledJob.name == name)
        .values(last_run_at=last_run_at, next_run_at=next_run_at)
    )
    await session.commit()


# ---------------------------------------------------------------------------
# Job executions
# ---------------------------------------------------------------------------

async def has_running_execution(session: AsyncSession, job_name: str) -> bool:
    result = await session.execute(
        select(func.count(JobExecution.id)).where(
            and_(JobExecution.job_name == job_name, JobExecution.status == JOB_STATUS_RUNNING)
        )
    )
    return (result.scalar() or 0) > 0


async def count_running_executions(session: AsyncSession, job_name: Optional[str] = None) -> int:
    stmt = select(func.count(JobExecution.id)).where(JobExecution.status == JOB_STATUS_RUNNING)
    if job_name is not None:
        stmt = stmt.where(JobExecution.job_name == job_name)
    result = await session.execute(stmt)
    return result.scalar() or 0


async def create_execution(
    session: AsyncSession,
    job_name: str,
    started_at: datetime,
) -> Optional[JobExecution]:
    """
    Insert a running execution row.

    Returns:
        The new execution, or None when another running row exists for the job
    """
    execution = JobExecution(job_name=job_name, status=JOB_STATUS_RUNNING, started_at=started_at)
    session.add(execution)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Job {job_name} already has a running execution", extra={"job": job_name})
        return None
    await session.refresh(execution)
    return execution


async def finalize_execution(
    session: AsyncSession,
    execution_id: int,
    status: str,
    completed_at: datetime,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> bool:
    """
    Finalize a running execution exactly once.

    Returns:
        True if the row moved out of ``running``; False if it was already final
    """
    if status not in (JOB_STATUS_SUCCEEDED, JOB_STATUS_FAILED):
        raise ValueError(f"Invalid final status: {status}")

    result = await session.execute(
        update(JobExecution)
        .where(and_(JobExecution.id == execution_id, JobExecution.status == JOB_STATUS_RUNNING))
        .values(
            status=status,
            completed_at=completed_at,
            error_code=error_code,
            error_message=error_message,
        )
    )
    await session.commit()
    return result.rowcount == 1


async def running_executions_with_timeouts(
    session: AsyncSession,
) -> List[Tuple[JobExecution, Optional[float]]]:
    """Running executions paired with their job's timeout (None for unknown jobs)."""
    stmt = (
        select(JobExecution, ScheduledJob.timeout_seconds)
        .outerjoin(ScheduledJob, ScheduledJob.name == JobExecution.job_name)
        .where(JobExecution.status == JOB_STATUS_RUNNING)
    )
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]


async def recent_executions(
    session: AsyncSession,
    job_name: Optional[str] = None,
    limit: int = 20,
) -> List[JobExecution]:
    stmt = select(JobExecution)
    if job_name is not None:
        stmt = stmt.where(JobExecution.job_name == job_name)
    stmt = stmt.order_by(desc(JobExecution.started_at), desc(JobExecution.id)).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

async def get_evidence(
    session: AsyncSession,
    source_type: str,
    external_id: str,
) -> Optional[EvidenceItem]:
    result = await session.execute(
        select(EvidenceItem).where(
            and_(EvidenceItem.source_type == source_type, EvidenceItem.external_id == external_id)
        )
    )
    return result.scalar_one_or_none()


async def insert_evidence_if_new(
    session: AsyncSession,
    data: Dict[str, Any],
) -> Tuple[bool, EvidenceItem]:
    """
    Append an evidence item unless ``(source_type, external_id)`` already exists.

    Args:
        session: Database session
        data: Normalized evidence fields including ``event_key``

    Returns:
        Tuple of (was_created, evidence_item)
    """
    existing = await get_evidence(session, data["source_type"], data["external_id"])
    if existing is not None:
        logger.debug(f"Evidence already stored: {data['source_type']}:{data['external_id']}")
        return False, existing

    item = EvidenceItem(**data)
    session.add(item)
    await session.flush()
    return True, item


async def evidence_since(
    session: AsyncSession,
    event_keys: Sequence[str],
    since: datetime,
) -> List[Tuple[datetime, str, Optional[str]]]:
    """``(discovered_at, source_type, source_name)`` rows for the keys since ``since``."""
    if not event_keys:
        return []
    stmt = (
        select(EvidenceItem.discovered_at, EvidenceItem.source_type, EvidenceItem.source_name)
        .where(and_(EvidenceItem.event_key.in_(list(event_keys)), EvidenceItem.discovered_at > since))
        .order_by(EvidenceItem.discovered_at)
    )
    result = await session.execute(stmt)
    return [(ensure_utc(row[0]), row[1], row[2]) for row in result.all()]


async def evidence_totals(session: AsyncSession, event_key: str) -> Tuple[int, int]:
    """
    All-time evidence count and distinct source count for a key.

    A source is its ``source_name``, or its ``source_type`` when unnamed.
    """
    source_expr = func.coalesce(EvidenceItem.source_name, EvidenceItem.source_type)
    stmt = select(
        func.count(EvidenceItem.id),
        func.count(func.distinct(source_expr)),
    ).where(EvidenceItem.event_key == event_key)
    result = await session.execute(stmt)
    count, sources = result.one()
    return count or 0, sources or 0


# ---------------------------------------------------------------------------
# Trend events
# ---------------------------------------------------------------------------

async def get_event(session: AsyncSession, event_id: int) -> Optional[TrendEvent]:
    result = await session.execute(select(TrendEvent).where(TrendEvent.id == event_id))
    return result.scalar_one_or_none()


async def get_event_by_key(session: AsyncSession, event_key: str) -> Optional[TrendEvent]:
    result = await session.execute(select(TrendEvent).where(TrendEvent.event_key == event_key))
    return result.scalar_one_or_none()


async def create_event(session: AsyncSession, data: Dict[str, Any]) -> TrendEvent:
    event = TrendEvent(**data)
    session.add(event)
    await session.flush()
    return event


async def member_event_keys(session: AsyncSession, canonical_id: int) -> List[str]:
    """Keys of events clustered into ``canonical_id``."""
    result = await session.execute(
        select(TrendEvent.event_key).where(TrendEvent.cluster_id == canonical_id).order_by(TrendEvent.id)
    )
    return [r[0] for r in result.all()]


async def cluster_members(session: AsyncSession, canonical_id: int) -> List[TrendEvent]:
    result = await session.execute(
        select(TrendEvent).where(TrendEvent.cluster_id == canonical_id).order_by(TrendEvent.id)
    )
    return list(result.scalars().all())


async def event_keys_by_id(session: AsyncSession, event_ids: Iterable[int]) -> Dict[int, str]:
    result = await session.execute(
        select(TrendEvent.id, TrendEvent.event_key).where(TrendEvent.id.in_(list(event_ids)))
    )
    return {r[0]: r[1] for r in result.all()}


async def add_merged_counts(
    session: AsyncSession,
    event_id: int,
    evidence: int,
    sources: int,
    include_totals: bool = False,
) -> None:
    """
    Increment an event's merged counters in SQL.

    The increment is evaluated by the database, so two writers folding into
    the same canonical never overwrite each other. Callers refresh the event
    before reading the counters back.

    Args:
        event_id: Canonical event id
        evidence: Evidence items to add
        sources: Sources to add
        include_totals: Also add to ``evidence_count`` / ``source_count``
    """
    values = {
        "merged_evidence_count": TrendEvent.merged_evidence_count + evidence,
        "merged_source_count": TrendEvent.merged_source_count + sources,
    }
    if include_totals:
        values["evidence_count"] = TrendEvent.evidence_count + evidence
        values["source_count"] = TrendEvent.source_count + sources
    await session.execute(
        update(TrendEvent)
        .where(TrendEvent.id == event_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


async def events_seen_since(
    session: AsyncSession,
    since: datetime,
    until: Optional[datetime] = None,
    include_clustered: bool = False,
) -> List[TrendEvent]:
    """Events with ``last_seen_at`` in ``(since, until]``, oldest id first."""
    conditions = [TrendEvent.last_seen_at > since]
    if until is not None:
        conditions.append(TrendEvent.last_seen_at <= until)
    if not include_clustered:
        conditions.append(TrendEvent.cluster_id.is_(None))
    result = await session.execute(select(TrendEvent).where(and_(*conditions)).order_by(TrendEvent.id))
    return list(result.scalars().all())


async def assign_cluster_if_unassigned(session: AsyncSession, event_id: int, canonical_id: int) -> bool:
    """
    Point an event at its canonical, only if it is not clustered yet.

    Returns:
        True if this call set ``cluster_id``; False if another writer won
    """
    result = await session.execute(
        update(TrendEvent)
        .where(and_(TrendEvent.id == event_id, TrendEvent.cluster_id.is_(None)))
        .values(cluster_id=canonical_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def repoint_cluster_members(session: AsyncSession, old_canonical_id: int, new_canonical_id: int) -> int:
    """Move members of a former canonical to the new canonical."""
    result = await session.execute(
        update(TrendEvent)
        .where(TrendEvent.cluster_id == old_canonical_id)
        .values(cluster_id=new_canonical_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Duplicate clusters and reviews
# ---------------------------------------------------------------------------

async def get_cluster_for_canonical(session: AsyncSession, canonical_id: int) -> Optional[DuplicateCluster]:
    result = await session.execute(
        select(DuplicateCluster).where(DuplicateCluster.canonical_event_id == canonical_id)
    )
    return result.scalar_one_or_none()


async def upsert_cluster(
    session: AsyncSession,
    canonical_id: int,
    member_ids: Iterable[int],
    similarity_scores: Dict[str, float],
    now: datetime,
) -> DuplicateCluster:
    """Create or extend the cluster row of ``canonical_id``."""
    cluster = await get_cluster_for_canonical(session, canonical_id)
    if cluster is None:
        cluster = DuplicateCluster(
            canonical_event_id=canonical_id,
            member_event_ids=sorted(set(member_ids)),
            similarity_scores=dict(similarity_scores),
            merged_at=now,
            updated_at=now,
        )
        session.add(cluster)
    else:
        # JSON columns are replaced, never mutated in place
        cluster.member_event_ids = sorted(set(cluster.member_event_ids or []) | set(member_ids))
        scores = dict(cluster.similarity_scores or {})
        scores.update(similarity_scores)
        cluster.similarity_scores = scores
        cluster.updated_at = now
    await session.flush()
    return cluster


async def delete_cluster(session: AsyncSession, cluster: DuplicateCluster) -> None:
    await session.delete(cluster)
    await session.flush()


async def insert_review_if_new(
    session: AsyncSession,
    event_id_a: int,
    event_id_b: int,
    similarity: float,
    now: datetime,
) -> bool:
    """Persist a review pair once; ids are stored in ascending order."""
    low, high = sorted((event_id_a, event_id_b))
    result = await session.execute(
        select(DuplicateReview.id).where(
            and_(DuplicateReview.event_id_a == low, DuplicateReview.event_id_b == high)
        )
    )
    if result.scalar_one_or_none() is not None:
        return False
    session.add(DuplicateReview(event_id_a=low, event_id_b=high, similarity=similarity, created_at=now))
    await session.flush()
    return True


async def list_reviews(session: AsyncSession, limit: int = 100) -> List[DuplicateReview]:
    result = await session.execute(
        select(DuplicateReview).order_by(desc(DuplicateReview.created_at)).limit(limit)
    )
    return list(result.scalars().all())
