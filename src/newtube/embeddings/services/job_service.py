"""
Job Service
Queue and lifecycle management for embedding jobs.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import asc, func, update
from sqlalchemy.orm import Session

from newtube.config import get_settings
from newtube.embeddings.models.job import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    FINISHED_ITEM_STATUSES,
    TERMINAL_STATUSES,
    EmbeddingJob,
    EmbeddingJobItem,
    ItemStatus,
    JobStatus,
    JobType,
)
from newtube.embeddings.models.targets import TargetKind
from newtube.embeddings.schemas.job_config import parse_job_config
from newtube.embeddings.services.progress import job_row_lock
from newtube.embeddings.services.retry import RetryManager
from newtube.exceptions import InvalidTransitionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

# Candidates examined per poll; a lost compare-and-swap moves on to the next one.
_POLL_CANDIDATES = 5


@dataclass(frozen=True)
class LedgerCounts:
    total_items: int
    success_items: int
    failed_items: int

    @property
    def processed_items(self) -> int:
        return self.success_items + self.failed_items


class JobService:
    def __init__(self, session: Session, *, retry_manager: Optional[RetryManager] = None):
        self.session = session
        self.retry_manager = retry_manager or RetryManager()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        config: Optional[Dict[str, Any]] = None,
        *,
        priority: int = 10,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        dedupe_key: Optional[str] = None,
        dedupe: bool = False,
        created_by: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> EmbeddingJob:
        """Validate and persist a new PENDING job."""
        settings = get_settings()
        try:
            resolved_type = JobType(job_type)
        except ValueError as exc:
            raise ValidationError(f"Unknown job type: {job_type}", field="type") from exc
        try:
            parsed = parse_job_config(resolved_type.value, config)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid config for {resolved_type.value}: {exc}", field="config"
            ) from exc

        resolved_batch = batch_size if batch_size is not None else settings.JOB_DEFAULT_BATCH_SIZE
        if resolved_batch < 1 or resolved_batch > settings.JOB_MAX_BATCH_SIZE:
            raise ValidationError(
                f"batch_size must be between 1 and {settings.JOB_MAX_BATCH_SIZE}",
                field="batch_size",
            )
        resolved_retries = (
            max_retries if max_retries is not None else settings.JOB_MAX_RETRIES_DEFAULT
        )
        if resolved_retries < 0:
            raise ValidationError("max_retries must be >= 0", field="max_retries")

        config_json = parsed.model_dump(mode="json", exclude_unset=True)
        if dedupe and not dedupe_key:
            dedupe_key = self._build_dedupe_key(resolved_type.value, config_json)
        if dedupe_key:
            existing = (
                self.session.query(EmbeddingJob)
                .filter(
                    EmbeddingJob.dedupe_key == dedupe_key,
                    EmbeddingJob.status.in_(sorted(ACTIVE_STATUSES)),
                )
                .order_by(EmbeddingJob.created_at.desc())
                .first()
            )
            if existing:
                logger.info(
                    "Enqueue deduplicated job_id=%s dedupe_key=%s", existing.id, dedupe_key
                )
                return existing

        if scheduled_at is not None and scheduled_at.tzinfo is not None:
            scheduled_at = scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)
        now = datetime.utcnow()
        job = EmbeddingJob(
            type=resolved_type.value,
            status=JobStatus.PENDING.value,
            config_json=config_json,
            priority=priority,
            batch_size=resolved_batch,
            max_retries=resolved_retries,
            dedupe_key=dedupe_key,
            created_by=created_by,
            created_at=now,
            updated_at=now,
            scheduled_at=scheduled_at or now,
        )
        self.session.add(job)
        self.session.commit()
        logger.info(
            "Enqueued job_id=%s type=%s priority=%s batch_size=%s",
            job.id,
            job.type,
            job.priority,
            job.batch_size,
        )
        return job

    # ------------------------------------------------------------------
    # Dequeue
    # ------------------------------------------------------------------

    def poll_next_job(self, worker_id: str) -> Optional[EmbeddingJob]:
        """
        Claim the next eligible job for this worker.

        Uses FOR UPDATE SKIP LOCKED on PostgreSQL. On every dialect the claim
        itself is a compare-and-swap on the observed status, so two workers
        can never both move the same job to RUNNING.
        """
        dialect = self.session.bind.dialect.name if self.session.bind else "unknown"
        now = datetime.utcnow()

        query = (
            self.session.query(EmbeddingJob)
            .populate_existing()
            .filter(
                EmbeddingJob.status.in_([JobStatus.PENDING.value, JobStatus.RETRYING.value]),
                EmbeddingJob.scheduled_at <= now,
            )
            .order_by(asc(EmbeddingJob.priority), asc(EmbeddingJob.created_at))
        )

        # PostgreSQL: Use SKIP LOCKED to prevent race conditions
        if dialect == "postgresql":
            query = query.with_for_update(skip_locked=True)

        candidates = query.limit(_POLL_CANDIDATES).all()
        for job in candidates:
            observed = job.status
            if observed == JobStatus.RETRYING.value and not self.retry_manager.can_resume(job):
                self._claim_or_skip(
                    job.id,
                    observed,
                    status=JobStatus.FAILED.value,
                    completed_at=now,
                    error_message=job.error_message or "retries_exhausted",
                )
                continue
            claimed = self._claim_or_skip(
                job.id,
                observed,
                status=JobStatus.RUNNING.value,
                worker_id=worker_id,
                heartbeat_at=now,
                started_at=func.coalesce(EmbeddingJob.started_at, now),
            )
            if claimed:
                self.session.refresh(job)
                return job
        self.session.commit()
        return None

    def next(self, worker_id: str) -> Optional[EmbeddingJob]:
        return self.poll_next_job(worker_id)

    def _claim_or_skip(self, job_id: str, observed: str, **values: Any) -> bool:
        values.setdefault("updated_at", datetime.utcnow())
        with job_row_lock:
            result = self.session.execute(
                update(EmbeddingJob)
                .where(EmbeddingJob.id == job_id, EmbeddingJob.status == observed)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def transition(
        self,
        job_id: str,
        target: str,
        *,
        expected: Optional[str] = None,
        owner: Optional[str] = None,
        **values: Any,
    ) -> EmbeddingJob:
        """
        Move a job to `target` if the edge is allowed from its current status.

        The write is a compare-and-swap on the status read here (and on
        worker_id when `owner` is given), so a concurrent change such as a
        stale sweep or a reclaim by another worker makes this raise instead
        of being overwritten.
        """
        target = JobStatus(target).value
        now = datetime.utcnow()
        with job_row_lock:
            job = self.session.get(EmbeddingJob, job_id, populate_existing=True)
            if job is None:
                raise NotFoundError("EmbeddingJob", job_id)
            current = expected or job.status
            if target not in ALLOWED_TRANSITIONS.get(current, set()):
                self.session.rollback()
                raise InvalidTransitionError(job_id, current, target)
            values["status"] = target
            values.setdefault("updated_at", now)
            if target in TERMINAL_STATUSES:
                values.setdefault("completed_at", now)
            conditions = [EmbeddingJob.id == job_id, EmbeddingJob.status == current]
            if owner:
                conditions.append(EmbeddingJob.worker_id == owner)
            result = self.session.execute(
                update(EmbeddingJob)
                .where(*conditions)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                self.session.rollback()
                fresh = self.session.get(EmbeddingJob, job_id, populate_existing=True)
                raise InvalidTransitionError(job_id, fresh.status if fresh else None, target)
            self.session.commit()
        self.session.refresh(job)
        logger.info("Job transition job_id=%s %s->%s", job_id, current, target)
        return job

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job. PENDING/RETRYING jobs are cancelled at once; RUNNING jobs
        are flagged and stop at the next batch boundary. Terminal jobs are
        left untouched.
        """
        job = self.session.get(EmbeddingJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError("EmbeddingJob", job_id)
        if job.status in (JobStatus.PENDING.value, JobStatus.RETRYING.value):
            try:
                self.transition(job_id, JobStatus.CANCELLED.value, expected=job.status)
                return True
            except InvalidTransitionError:
                # Claimed by a worker in between; fall through to the flag.
                self.session.refresh(job)
        if job.status == JobStatus.RUNNING.value:
            with job_row_lock:
                result = self.session.execute(
                    update(EmbeddingJob)
                    .where(
                        EmbeddingJob.id == job_id,
                        EmbeddingJob.status == JobStatus.RUNNING.value,
                    )
                    .values(cancel_requested=True, updated_at=datetime.utcnow())
                    .execution_options(synchronize_session=False)
                )
                self.session.commit()
            if result.rowcount == 1:
                logger.info("Cancellation requested job_id=%s", job_id)
                return True
        return False

    def is_cancel_requested(self, job_id: str) -> bool:
        value = (
            self.session.query(EmbeddingJob.cancel_requested)
            .filter(EmbeddingJob.id == job_id)
            .scalar()
        )
        self.session.commit()
        return bool(value)

    def heartbeat(self, job_id: str, worker_id: Optional[str] = None) -> bool:
        conditions = [
            EmbeddingJob.id == job_id,
            EmbeddingJob.status == JobStatus.RUNNING.value,
        ]
        if worker_id:
            conditions.append(EmbeddingJob.worker_id == worker_id)
        with job_row_lock:
            result = self.session.execute(
                update(EmbeddingJob)
                .where(*conditions)
                .values(heartbeat_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        return result.rowcount == 1

    def requeue_stale_jobs(self) -> int:
        """Move RUNNING jobs whose heartbeat stopped to RETRYING (or FAILED)."""
        settings = get_settings()
        timeout = settings.JOB_STALE_TIMEOUT_SECONDS
        if timeout <= 0:
            return 0
        now = datetime.utcnow()
        cutoff = now - timedelta(seconds=timeout)
        stale_jobs = (
            self.session.query(EmbeddingJob)
            .populate_existing()
            .filter(
                EmbeddingJob.status == JobStatus.RUNNING.value,
                func.coalesce(EmbeddingJob.heartbeat_at, EmbeddingJob.started_at) < cutoff,
            )
            .all()
        )
        moved = 0
        for job in stale_jobs:
            try:
                if self.retry_manager.retries_left(job):
                    retry_count = (job.retry_count or 0) + 1
                    self.transition(
                        job.id,
                        JobStatus.RETRYING.value,
                        expected=JobStatus.RUNNING.value,
                        retry_count=retry_count,
                        worker_id=None,
                        error_message="stale_timeout_requeued",
                        scheduled_at=self.retry_manager.next_attempt_at(retry_count, now=now),
                    )
                else:
                    self.transition(
                        job.id,
                        JobStatus.FAILED.value,
                        expected=JobStatus.RUNNING.value,
                        worker_id=None,
                        error_message="stale_timeout_failed",
                    )
                moved += 1
            except InvalidTransitionError:
                logger.info("Stale job changed state concurrently job_id=%s", job.id)
        if moved:
            logger.warning("Requeued stale jobs count=%s timeout_s=%s", moved, timeout)
        return moved

    def cleanup_old_jobs(self, older_than_hours: Optional[float] = None) -> int:
        """Delete terminal jobs (and their item ledgers) finished before the cutoff."""
        settings = get_settings()
        hours = older_than_hours if older_than_hours is not None else settings.JOB_RETENTION_HOURS
        cutoff = datetime.utcnow() - timedelta(hours=hours)
        job_ids = [
            row[0]
            for row in self.session.query(EmbeddingJob.id)
            .filter(
                EmbeddingJob.status.in_(sorted(TERMINAL_STATUSES)),
                EmbeddingJob.completed_at.isnot(None),
                EmbeddingJob.completed_at < cutoff,
            )
            .all()
        ]
        if not job_ids:
            self.session.commit()
            return 0
        self.session.query(EmbeddingJobItem).filter(
            EmbeddingJobItem.job_id.in_(job_ids)
        ).delete(synchronize_session=False)
        deleted = (
            self.session.query(EmbeddingJob)
            .filter(EmbeddingJob.id.in_(job_ids))
            .delete(synchronize_session=False)
        )
        self.session.commit()
        logger.info("Cleaned up old jobs count=%s older_than_hours=%s", deleted, hours)
        return deleted

    def schedule_incremental_update(
        self,
        target: str = TargetKind.VIDEO.value,
        *,
        since: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Optional[EmbeddingJob]:
        """
        Enqueue a low-priority INCREMENTAL_UPDATE job with a single retry.
        Skipped (returns None) while the queue is already backed up.
        """
        settings = get_settings()
        pending = (
            self.session.query(func.count(EmbeddingJob.id))
            .filter(EmbeddingJob.status == JobStatus.PENDING.value)
            .scalar()
            or 0
        )
        if pending >= settings.INCREMENTAL_UPDATE_MAX_PENDING_JOBS:
            logger.info(
                "Skipping incremental update target=%s pending_jobs=%s", target, pending
            )
            return None
        config: Dict[str, Any] = {
            "target": TargetKind(target).value,
            "limit": settings.INCREMENTAL_UPDATE_MAX_ITEMS,
        }
        if since is not None:
            config["since"] = since.isoformat()
        return self.enqueue(
            JobType.INCREMENTAL_UPDATE.value,
            config,
            priority=100,
            max_retries=1,
            dedupe_key=f"{JobType.INCREMENTAL_UPDATE.value}:{TargetKind(target).value}",
            created_by=created_by,
        )

    def last_incremental_completed_at(self, target: TargetKind) -> Optional[datetime]:
        jobs = (
            self.session.query(EmbeddingJob)
            .filter(
                EmbeddingJob.type == JobType.INCREMENTAL_UPDATE.value,
                EmbeddingJob.status == JobStatus.COMPLETED.value,
            )
            .order_by(EmbeddingJob.completed_at.desc())
            .all()
        )
        for job in jobs:
            if (job.config_json or {}).get("target", TargetKind.VIDEO.value) == TargetKind(target).value:
                return job.completed_at
        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[EmbeddingJob]:
        return self.session.get(EmbeddingJob, job_id, populate_existing=True)

    def list_jobs(
        self,
        *,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[EmbeddingJob]:
        query = self.session.query(EmbeddingJob).populate_existing()
        if status:
            query = query.filter(EmbeddingJob.status == status)
        if job_type:
            query = query.filter(EmbeddingJob.type == job_type)
        return (
            query.order_by(EmbeddingJob.created_at.desc())
            .offset(max(offset, 0))
            .limit(max(min(limit, 500), 1))
            .all()
        )

    def get_queue_stats(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in JobStatus}
        for status, count in (
            self.session.query(EmbeddingJob.status, func.count(EmbeddingJob.id))
            .group_by(EmbeddingJob.status)
            .all()
        ):
            counts[status] = count

        finished = (
            self.session.query(EmbeddingJob.started_at, EmbeddingJob.completed_at)
            .filter(
                EmbeddingJob.status == JobStatus.COMPLETED.value,
                EmbeddingJob.started_at.isnot(None),
                EmbeddingJob.completed_at.isnot(None),
            )
            .all()
        )
        durations = [(done - started).total_seconds() for started, done in finished]
        total_items = (
            self.session.query(func.coalesce(func.sum(EmbeddingJob.processed_items), 0)).scalar()
            or 0
        )
        return {
            "pending": counts[JobStatus.PENDING.value],
            "running": counts[JobStatus.RUNNING.value],
            "retrying": counts[JobStatus.RETRYING.value],
            "completed": counts[JobStatus.COMPLETED.value],
            "failed": counts[JobStatus.FAILED.value],
            "cancelled": counts[JobStatus.CANCELLED.value],
            "avg_job_duration_seconds": (
                round(sum(durations) / len(durations), 3) if durations else 0.0
            ),
            "total_processed_items": int(total_items),
        }

    # ------------------------------------------------------------------
    # Item ledger
    # ------------------------------------------------------------------

    def materialize_items(self, job_id: str, target_ids: Sequence[str]) -> int:
        """Write the job's item ledger once; later runs reuse it unchanged."""
        job = self.session.get(EmbeddingJob, job_id, populate_existing=True)
        if job is None:
            raise NotFoundError("EmbeddingJob", job_id)
        if job.items_resolved_at is not None:
            return self._count_items(job_id)

        now = datetime.utcnow()
        seen = set()
        position = 0
        for target_id in target_ids:
            if target_id in seen:
                continue
            seen.add(target_id)
            self.session.add(
                EmbeddingJobItem(
                    job_id=job_id,
                    position=position,
                    target_id=str(target_id),
                    status=ItemStatus.PENDING.value,
                    created_at=now,
                )
            )
            position += 1
        with job_row_lock:
            self.session.flush()
            self.session.execute(
                update(EmbeddingJob)
                .where(EmbeddingJob.id == job_id, EmbeddingJob.items_resolved_at.is_(None))
                .values(total_items=position, items_resolved_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        logger.info("Materialized job items job_id=%s total_items=%s", job_id, position)
        return position

    def reconcile_items(self, job_id: str) -> LedgerCounts:
        """
        Prepare the ledger for a (re)run.

        Transient failures go back to PENDING, and positions are compacted so
        finished items occupy [0, processed) and unfinished ones follow in
        their original order. Returns the counters implied by the ledger.
        """
        self.session.query(EmbeddingJobItem).filter(
            EmbeddingJobItem.job_id == job_id,
            EmbeddingJobItem.status == ItemStatus.FAILED_TRANSIENT.value,
        ).update(
            {"status": ItemStatus.PENDING.value, "finished_at": None},
            synchronize_session=False,
        )
        items = (
            self.session.query(EmbeddingJobItem)
            .populate_existing()
            .filter(EmbeddingJobItem.job_id == job_id)
            .order_by(asc(EmbeddingJobItem.position), asc(EmbeddingJobItem.id))
            .all()
        )
        finished = [i for i in items if i.status in FINISHED_ITEM_STATUSES]
        unfinished = [i for i in items if i.status not in FINISHED_ITEM_STATUSES]
        for position, item in enumerate(finished + unfinished):
            if item.position != position:
                item.position = position
        self.session.commit()

        success = sum(
            1
            for i in finished
            if i.status in (ItemStatus.SUCCEEDED.value, ItemStatus.SKIPPED.value)
        )
        failed = sum(1 for i in finished if i.status == ItemStatus.FAILED_PERMANENT.value)
        return LedgerCounts(total_items=len(items), success_items=success, failed_items=failed)

    def items_in_range(self, job_id: str, offset: int, count: int) -> List[EmbeddingJobItem]:
        items = (
            self.session.query(EmbeddingJobItem)
            .filter(
                EmbeddingJobItem.job_id == job_id,
                EmbeddingJobItem.position >= offset,
                EmbeddingJobItem.position < offset + count,
                EmbeddingJobItem.status == ItemStatus.PENDING.value,
            )
            .order_by(asc(EmbeddingJobItem.position))
            .all()
        )
        self.session.commit()
        return items

    def _count_items(self, job_id: str) -> int:
        return (
            self.session.query(func.count(EmbeddingJobItem.id))
            .filter(EmbeddingJobItem.job_id == job_id)
            .scalar()
            or 0
        )

    def _build_dedupe_key(self, job_type: str, config: Dict[str, Any]) -> Optional[str]:
        if not isinstance(config, dict):
            return None
        target_ids = config.get("target_ids")
        if target_ids:
            digest = hashlib.sha1(
                json.dumps(sorted(target_ids)).encode("utf-8")
            ).hexdigest()[:16]
            return f"{job_type}:ids:{digest}"
        target = config.get("target")
        if target:
            return f"{job_type}:target:{target}"
        return f"{job_type}:pending"
