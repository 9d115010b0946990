"""
Embedding job models.
Tracks scheduled embedding work and the per-item ledger each job runs over.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB

from newtube.models.base import Base


class JobType(str, enum.Enum):
    VIDEO_EMBEDDING = "VIDEO_EMBEDDING"
    USER_EMBEDDING = "USER_EMBEDDING"
    COMMENT_EMBEDDING = "COMMENT_EMBEDDING"
    SEARCH_EMBEDDING = "SEARCH_EMBEDDING"
    BATCH_UPDATE = "BATCH_UPDATE"
    INCREMENTAL_UPDATE = "INCREMENTAL_UPDATE"


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRYING = "RETRYING"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value}
)
ACTIVE_STATUSES = frozenset(
    {JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.RETRYING.value}
)

# Legal lifecycle edges; anything else is rejected by JobService.transition().
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING.value: {JobStatus.RUNNING.value, JobStatus.CANCELLED.value},
    JobStatus.RUNNING.value: {
        JobStatus.COMPLETED.value,
        JobStatus.FAILED.value,
        JobStatus.RETRYING.value,
        JobStatus.CANCELLED.value,
    },
    JobStatus.RETRYING.value: {
        JobStatus.RUNNING.value,
        JobStatus.FAILED.value,
        JobStatus.CANCELLED.value,
    },
    JobStatus.COMPLETED.value: set(),
    JobStatus.FAILED.value: set(),
    JobStatus.CANCELLED.value: set(),
}


class ItemStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    SKIPPED = "SKIPPED"
    FAILED_TRANSIENT = "FAILED_TRANSIENT"
    FAILED_PERMANENT = "FAILED_PERMANENT"


FINISHED_ITEM_STATUSES = frozenset(
    {
        ItemStatus.SUCCEEDED.value,
        ItemStatus.SKIPPED.value,
        ItemStatus.FAILED_TRANSIENT.value,
        ItemStatus.FAILED_PERMANENT.value,
    }
)


class EmbeddingJob(Base):
    """
    A unit of scheduled embedding work.

    Counters are the persisted source of truth for progress; they are only
    written through ProgressAggregator and JobService.transition().
    """

    __tablename__ = "embedding_jobs"
    __table_args__ = (
        Index("ix_embedding_jobs_queue", "status", "scheduled_at", "priority", "created_at"),
        Index("ix_embedding_jobs_stale", "status", "heartbeat_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    type = Column(String(40), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value, index=True)
    batch_size = Column(Integer, nullable=False, default=100)
    priority = Column(Integer, nullable=False, default=10)  # Lower is scheduled first
    config_json = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False, default=dict)

    # Progress
    total_items = Column(Integer, nullable=False, default=0)
    processed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    success_items = Column(Integer, nullable=False, default=0)
    avg_processing_time = Column(Float, nullable=False, default=0.0)  # seconds per item

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)

    # Execution
    worker_id = Column(String(100), nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    items_resolved_at = Column(DateTime, nullable=True)
    dedupe_key = Column(String(160), nullable=True, index=True)
    created_by = Column(String(100), nullable=True)

    # Timing
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    scheduled_at = Column(DateTime, nullable=False, default=datetime.utcnow)  # Eligible after this time
    started_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> float:
        if not self.total_items:
            return 100.0 if self.status == JobStatus.COMPLETED.value else 0.0
        return round(100.0 * (self.processed_items or 0) / self.total_items, 2)


class EmbeddingJobItem(Base):
    """One target record covered by a job, addressed by its position in the job."""

    __tablename__ = "embedding_job_items"
    __table_args__ = (
        UniqueConstraint("job_id", "target_id", name="uq_embedding_job_items_target"),
        Index("ix_embedding_job_items_position", "job_id", "position"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(
        String, ForeignKey("embedding_jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False)
    target_id = Column(String, nullable=False)
    status = Column(String(20), nullable=False, default=ItemStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    processing_time = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
