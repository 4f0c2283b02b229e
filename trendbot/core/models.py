"""Database models for TrendBot."""

from sqlalchemy import (
    String, DateTime, Boolean, Text, Integer, BigInteger,
    ForeignKey, JSON, Index, UniqueConstraint, Float, text
)
from sqlalchemy.orm import mapped_column
from sqlalchemy.sql import func

from .db import Base

# SQLite only auto-increments INTEGER primary keys
BigIntPK = BigInteger().with_variant(Integer, "sqlite")

JOB_STATUS_RUNNING = "running"
JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED = "failed"

SOURCE_TYPES = ("news", "rss", "social", "other")

LABEL_EVENT_PHRASE = "event_phrase"
LABEL_ENTITY_ONLY = "entity_only"


class ScheduledJob(Base):
    """Pipeline stage definitions driven by the scheduler."""
    __tablename__ = "scheduled_jobs"

    id = mapped_column(Integer, primary_key=True)
    name = mapped_column(String(100), unique=True, nullable=False)
    cadence = mapped_column(String(100), nullable=False)  # 5-field cron
    target = mapped_column(JSON, nullable=False)  # {"kind": "stage"|"http", ...}
    enabled = mapped_column(Boolean, default=True, nullable=False)
    timeout_seconds = mapped_column(Float, default=120.0, nullable=False)
    secret_env = mapped_column(String(100), default="CRON_SECRET", nullable=False)
    last_run_at = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at = mapped_column(DateTime(timezone=True), nullable=True)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at = mapped_column(DateTime(timezone=True), onupdate=func.now())


class JobExecution(Base):
    """One scheduled invocation; created running, finalized exactly once."""
    __tablename__ = "job_executions"

    id = mapped_column(BigIntPK, primary_key=True)
    job_name = mapped_column(String(100), nullable=False, index=True)
    status = mapped_column(String(16), nullable=False, default=JOB_STATUS_RUNNING)
    started_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = mapped_column(DateTime(timezone=True), nullable=True)
    error_code = mapped_column(String(32), nullable=True)
    error_message = mapped_column(Text, nullable=True)

    __table_args__ = (
        # at most one running execution per job
        Index(
            "uq_job_executions_one_running",
            "job_name",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )


class EvidenceItem(Base):
    """Normalized evidence handed over by ingestion collaborators. Append-only."""
    __tablename__ = "evidence_items"

    id = mapped_column(BigIntPK, primary_key=True)
    source_type = mapped_column(String(16), nullable=False)  # news|rss|social|other
    external_id = mapped_column(String(255), nullable=False)
    source_name = mapped_column(String(255), nullable=True)
    title = mapped_column(String(800), nullable=False)
    body = mapped_column(Text, nullable=False)
    entities = mapped_column(JSON, nullable=True)
    discovered_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    event_key = mapped_column(String(160), nullable=False, index=True)
    ingested_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("source_type", "external_id", name="uq_evidence_source_external"),
    )


class TrendEvent(Base):
    """Aggregated, scored topic built from evidence."""
    __tablename__ = "trend_events"

    id = mapped_column(BigIntPK, primary_key=True)
    event_key = mapped_column(String(160), unique=True, nullable=False)
    canonical_label = mapped_column(String(800), nullable=False)
    normalized_label = mapped_column(String(800), nullable=False, index=True)
    primary_entity = mapped_column(String(255), nullable=True, index=True)
    label_quality = mapped_column(String(16), nullable=False, default=LABEL_ENTITY_ONLY)
    first_seen_at = mapped_column(DateTime(timezone=True), nullable=False)
    last_seen_at = mapped_column(DateTime(timezone=True), nullable=False, index=True)

    # rolling counters
    baseline_7d = mapped_column(Float, default=0.0, nullable=False)
    baseline_30d = mapped_column(Float, default=0.0, nullable=False)
    baseline_stddev = mapped_column(Float, default=0.0, nullable=False)
    baseline_sample_days = mapped_column(Integer, default=0, nullable=False)
    current_1h = mapped_column(Integer, default=0, nullable=False)
    current_6h = mapped_column(Integer, default=0, nullable=False)
    current_24h = mapped_column(Integer, default=0, nullable=False)

    # derived metrics
    velocity = mapped_column(Float, default=0.0, nullable=False)
    acceleration = mapped_column(Float, default=0.0, nullable=False)
    z_score_velocity = mapped_column(Float, default=0.0, nullable=False)
    confidence_score = mapped_column(Float, default=0.0, nullable=False, index=True)
    is_trending = mapped_column(Boolean, default=False, nullable=False)
    is_breaking = mapped_column(Boolean, default=False, nullable=False)
    trend_stage = mapped_column(String(16), default="stable", nullable=False)

    source_count = mapped_column(Integer, default=0, nullable=False)
    evidence_count = mapped_column(Integer, default=0, nullable=False)
    merged_source_count = mapped_column(Integer, default=0, nullable=False)
    merged_evidence_count = mapped_column(Integer, default=0, nullable=False)

    cluster_id = mapped_column(ForeignKey("trend_events.id"), nullable=True, index=True)
    updated_at = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_event_phrase(self) -> bool:
        return self.label_quality == LABEL_EVENT_PHRASE


class DuplicateCluster(Base):
    """Merged duplicate set keyed by its canonical event."""
    __tablename__ = "duplicate_clusters"

    id = mapped_column(BigIntPK, primary_key=True)
    canonical_event_id = mapped_column(ForeignKey("trend_events.id"), unique=True, nullable=False)
    member_event_ids = mapped_column(JSON, nullable=False)  # [event_id, ...]
    similarity_scores = mapped_column(JSON, nullable=False)  # {"event_id": score}
    merged_at = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), nullable=True)


class DuplicateReview(Base):
    """Near-duplicate pairs held back for manual review."""
    __tablename__ = "duplicate_reviews"

    id = mapped_column(BigIntPK, primary_key=True)
    event_id_a = mapped_column(ForeignKey("trend_events.id"), nullable=False, index=True)
    event_id_b = mapped_column(ForeignKey("trend_events.id"), nullable=False, index=True)
    similarity = mapped_column(Float, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (UniqueConstraint("event_id_a", "event_id_b", name="uq_duplicate_review_pair"),)


Index('idx_evidence_key_discovered', EvidenceItem.event_key, EvidenceItem.discovered_at)
Index('idx_job_executions_job_started', JobExecution.job_name, JobExecution.started_at)
Index('idx_trend_events_active', TrendEvent.cluster_id, TrendEvent.last_seen_at)
