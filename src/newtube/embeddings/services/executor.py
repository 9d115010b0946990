"""
Job Executor
Runs one claimed embedding job to its next lifecycle state.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from sqlalchemy.orm import sessionmaker

from newtube.config import get_settings
from newtube.database import session_scope
from newtube.embeddings.models.job import EmbeddingJob, ItemStatus, JobStatus
from newtube.embeddings.models.targets import ProcessingStatus, TargetKind
from newtube.embeddings.schemas.job_config import BaseJobConfig, parse_job_config
from newtube.embeddings.services.job_errors import (
    ErrorClass,
    ItemPayloadError,
    JobConfigError,
    classify_error,
    error_code,
)
from newtube.embeddings.services.job_service import JobService
from newtube.embeddings.services.partitioner import BatchPartitioner
from newtube.embeddings.services.progress import ItemOutcome, ProgressAggregator
from newtube.embeddings.services.retry import RetryManager
from newtube.embeddings.services.staleness import StalenessDetector
from newtube.embeddings.services.store import EmbeddingStore
from newtube.embeddings.services.strategies import (
    EmbeddingStrategy,
    ResolveContext,
    get_strategy,
)
from newtube.exceptions import InvalidTransitionError
from newtube.integrations.inference import InferenceClient

logger = logging.getLogger(__name__)

_CTX_KEYS = ("job_id", "type", "worker_id", "retry_count", "batch_offset", "target_id")


def _format_ctx(ctx: Dict[str, Any]) -> str:
    parts = []
    for key in _CTX_KEYS:
        value = ctx.get(key)
        if value is not None and value != "":
            parts.append(f"{key}={value}")
    return " ".join(parts)


class JobOwnershipLost(Exception):
    """The job row was requeued or claimed by another worker mid-run."""


class InferenceBudget:
    """Process-wide cap on in-flight inference calls, shared by all executors."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError("inference budget must be >= 1")
        self.limit = limit
        self._semaphore = threading.BoundedSemaphore(limit)
        self._lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._semaphore.acquire()
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            yield
        finally:
            with self._lock:
                self.in_flight -= 1
            self._semaphore.release()


class JobExecutor:
    """
    Drives a RUNNING job through its batches and decides the next state.

    Each run: parse config, materialize the item ledger on first run,
    reconcile it (transient failures go back to PENDING, counters recomputed),
    process the remaining batches in order, then finalize. Items inside a
    batch run concurrently; a fatal item error stops the job after the
    batch in flight.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        store: EmbeddingStore,
        inference_client: InferenceClient,
        budget: InferenceBudget,
        aggregator: Optional[ProgressAggregator] = None,
        retry_manager: Optional[RetryManager] = None,
        partitioner: Optional[BatchPartitioner] = None,
        detector: Optional[StalenessDetector] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self.store = store
        self.inference_client = inference_client
        self.budget = budget
        self.aggregator = aggregator or ProgressAggregator(session_factory)
        self.retry_manager = retry_manager or RetryManager()
        self.partitioner = partitioner or BatchPartitioner(settings.JOB_MAX_BATCH_SIZE)
        self.detector = detector or StalenessDetector()
        self.default_concurrency = max(settings.JOB_ITEM_CONCURRENCY, 1)
        self.default_model = settings.EMBEDDING_MODEL
        self.default_version = settings.EMBEDDING_VERSION

    def run_job(self, job_id: str, *, worker_id: Optional[str] = None) -> Optional[str]:
        """Run a claimed job. Returns the job status after this run."""
        with session_scope(self._session_factory) as session:
            service = JobService(session, retry_manager=self.retry_manager)
            job = service.get_job(job_id)
            if job is None:
                logger.warning("Job vanished before execution job_id=%s", job_id)
                return None
            ctx = {
                "job_id": job.id,
                "type": job.type,
                "worker_id": worker_id,
                "retry_count": job.retry_count,
            }
            if job.status != JobStatus.RUNNING.value:
                logger.warning(
                    "Job not RUNNING, skipping %s status=%s", _format_ctx(ctx), job.status
                )
                return job.status
            if worker_id and job.worker_id != worker_id:
                logger.warning(
                    "Job owned by another worker, skipping %s owner=%s",
                    _format_ctx(ctx),
                    job.worker_id,
                )
                return job.status

            retry = self.retry_manager
            try:
                config = self._parse_config(job)
                retry = self.retry_manager.with_overrides(
                    base_delay=config.retry_base_delay_seconds,
                    max_delay=config.retry_max_delay_seconds,
                )
                logger.info("Executing job %s", _format_ctx(ctx))
                cancelled = self._run_batches(service, job, config, ctx)
                if cancelled:
                    return self._cancel(service, job_id, ctx)
                return self._finalize(service, job_id, config, retry, ctx)
            except JobOwnershipLost:
                session.rollback()
                logger.warning("Lost ownership, abandoning run %s", _format_ctx(ctx))
                current = service.get_job(job_id)
                return current.status if current else None
            except Exception as exc:
                session.rollback()
                return self._handle_job_error(service, job_id, exc, retry, ctx)

    def _parse_config(self, job: EmbeddingJob) -> BaseJobConfig:
        try:
            return parse_job_config(job.type, job.config_json)
        except ValueError as exc:
            raise JobConfigError(f"Invalid config for job {job.id}: {exc}") from exc

    def _run_batches(
        self,
        service: JobService,
        job: EmbeddingJob,
        config: BaseJobConfig,
        ctx: Dict[str, Any],
    ) -> bool:
        """
        Process every remaining batch. Returns True if stopped by cancellation.
        Raises JobOwnershipLost when a heartbeat finds the job is no longer ours.
        """
        strategy = get_strategy(job.type)
        kind = strategy.target_kind(config)
        model = config.model or self.default_model
        version = config.version or self.default_version

        if job.items_resolved_at is None:
            target_ids = strategy.resolve_targets(
                config,
                ResolveContext(
                    store=self.store,
                    model=model,
                    version=version,
                    last_incremental_at=service.last_incremental_completed_at,
                ),
            )
            service.materialize_items(job.id, target_ids)

        counts = service.reconcile_items(job.id)
        self.aggregator.reset_counters(
            job.id,
            total_items=counts.total_items,
            success_items=counts.success_items,
            failed_items=counts.failed_items,
        )
        if counts.total_items == 0:
            logger.info("Job has no items %s", _format_ctx(ctx))
            return False

        concurrency = config.concurrency or self.default_concurrency
        with ThreadPoolExecutor(
            max_workers=concurrency, thread_name_prefix=f"job-{job.id[:8]}"
        ) as pool:
            for batch in self.partitioner.batches(
                counts.total_items, job.batch_size, start=counts.processed_items
            ):
                if service.is_cancel_requested(job.id):
                    logger.info("Cancellation observed %s", _format_ctx(ctx))
                    return True
                items = [
                    (item.id, item.target_id)
                    for item in service.items_in_range(job.id, batch.offset, batch.count)
                ]
                batch_ctx = dict(ctx, batch_offset=batch.offset)
                logger.debug(
                    "Dispatching batch %s count=%s", _format_ctx(batch_ctx), len(items)
                )
                futures = [
                    pool.submit(
                        self._process_item,
                        job.id,
                        item_pk,
                        target_id,
                        kind,
                        strategy,
                        config,
                        model,
                        version,
                        batch_ctx,
                    )
                    for item_pk, target_id in items
                ]
                fatal: Optional[BaseException] = None
                for future in futures:
                    outcome = future.result()
                    if outcome is not None and fatal is None:
                        fatal = outcome
                if not service.heartbeat(job.id, ctx.get("worker_id")):
                    raise JobOwnershipLost(job.id)
                if fatal is not None:
                    raise fatal
        return False

    def _process_item(
        self,
        job_id: str,
        item_pk: int,
        target_id: str,
        kind: TargetKind,
        strategy: EmbeddingStrategy,
        config: BaseJobConfig,
        model: str,
        version: str,
        ctx: Dict[str, Any],
    ) -> Optional[BaseException]:
        """
        Process one item. Item-level errors are absorbed and counted; a fatal
        error is returned to the caller and the item is left PENDING.
        """
        started = time.monotonic()
        previous_status: Optional[str] = None
        try:
            record = self.store.get_record(kind, target_id)
            if record is None:
                raise ItemPayloadError(f"{kind.value} record {target_id} no longer exists")
            previous_status = record.processing_status
            if not config.force and not self.detector.needs_processing(record, model, version):
                self.aggregator.record_item_result(
                    job_id,
                    ItemOutcome.SKIPPED,
                    time.monotonic() - started,
                    item_pk=item_pk,
                )
                return None
            payload = strategy.build_payload(kind, record)
            self.store.mark_status(kind, target_id, ProcessingStatus.PROCESSING)
            with self.budget.slot():
                result = self.inference_client.compute(payload, model)
            self.store.upsert_result(
                kind, target_id, result.vector, result.scores, model, version
            )
        except Exception as exc:
            error_class = classify_error(exc)
            item_ctx = dict(ctx, target_id=target_id)
            if error_class == ErrorClass.FATAL:
                logger.error(
                    "Fatal item error %s error_code=%s: %s",
                    _format_ctx(item_ctx),
                    error_code(exc),
                    exc,
                )
                if previous_status:
                    self._restore_record(kind, target_id, previous_status, item_ctx)
                return exc
            logger.warning(
                "Item failed %s class=%s error_code=%s: %s",
                _format_ctx(item_ctx),
                error_class.value,
                error_code(exc),
                exc,
            )
            self._mark_record_failed(kind, target_id, str(exc), item_ctx)
            self.aggregator.record_item_result(
                job_id,
                ItemOutcome.FAILURE,
                time.monotonic() - started,
                item_pk=item_pk,
                item_status=(
                    ItemStatus.FAILED_PERMANENT
                    if error_class == ErrorClass.PERMANENT
                    else ItemStatus.FAILED_TRANSIENT
                ),
                error=str(exc)[:1000],
            )
            return None

        self.aggregator.record_item_result(
            job_id, ItemOutcome.SUCCESS, time.monotonic() - started, item_pk=item_pk
        )
        return None

    def _mark_record_failed(
        self, kind: TargetKind, target_id: str, message: str, ctx: Dict[str, Any]
    ) -> None:
        try:
            self.store.mark_status(kind, target_id, ProcessingStatus.FAILED, message[:1000])
        except Exception as exc:
            logger.warning("Could not mark record FAILED %s: %s", _format_ctx(ctx), exc)

    def _restore_record(
        self, kind: TargetKind, target_id: str, status: str, ctx: Dict[str, Any]
    ) -> None:
        try:
            self.store.mark_status(kind, target_id, ProcessingStatus(status))
        except Exception as exc:
            logger.warning("Could not restore record status %s: %s", _format_ctx(ctx), exc)

    def _finalize(
        self,
        service: JobService,
        job_id: str,
        config: BaseJobConfig,
        retry: RetryManager,
        ctx: Dict[str, Any],
    ) -> str:
        snapshot = self.aggregator.snapshot(job_id)
        job = service.get_job(job_id)
        allowed = config.allowed_failures(snapshot.total_items)
        try:
            if snapshot.failed_items <= allowed:
                job = service.transition(
                    job_id,
                    JobStatus.COMPLETED.value,
                    expected=JobStatus.RUNNING.value,
                    owner=ctx.get("worker_id"),
                    error_message=None,
                )
                logger.info(
                    "Completed job %s processed=%s success=%s failed=%s",
                    _format_ctx(ctx),
                    snapshot.processed_items,
                    snapshot.success_items,
                    snapshot.failed_items,
                )
                return job.status

            message = (
                f"{snapshot.failed_items} of {snapshot.total_items} items failed "
                f"(allowed {allowed})"
            )
            return self._retry_or_fail(service, job, message, ErrorClass.TRANSIENT, retry, ctx)
        except InvalidTransitionError as exc:
            logger.warning("Finalize lost a race %s: %s", _format_ctx(ctx), exc)
            current = service.get_job(job_id)
            return current.status if current else None

    def _cancel(self, service: JobService, job_id: str, ctx: Dict[str, Any]) -> str:
        try:
            job = service.transition(
                job_id,
                JobStatus.CANCELLED.value,
                expected=JobStatus.RUNNING.value,
                owner=ctx.get("worker_id"),
            )
        except InvalidTransitionError as exc:
            logger.warning("Cancel lost a race %s: %s", _format_ctx(ctx), exc)
            current = service.get_job(job_id)
            return current.status if current else None
        logger.info("Cancelled job %s", _format_ctx(ctx))
        return job.status

    def _handle_job_error(
        self,
        service: JobService,
        job_id: str,
        exc: BaseException,
        retry: RetryManager,
        ctx: Dict[str, Any],
    ) -> Optional[str]:
        error_class = classify_error(exc)
        if error_class == ErrorClass.FATAL:
            message = f"Job {job_id} fatal error: {exc}"
            logger.error("%s %s error_code=%s", message, _format_ctx(ctx), error_code(exc))
        else:
            message = f"Job {job_id} execution failed: {exc}"
            logger.error(
                "%s %s error_code=%s", message, _format_ctx(ctx), error_code(exc), exc_info=True
            )
        job = service.get_job(job_id)
        if job is None or job.status != JobStatus.RUNNING.value:
            return job.status if job else None
        try:
            return self._retry_or_fail(service, job, message, error_class, retry, ctx)
        except InvalidTransitionError as race:
            logger.warning("Error handling lost a race %s: %s", _format_ctx(ctx), race)
            current = service.get_job(job_id)
            return current.status if current else None

    def _retry_or_fail(
        self,
        service: JobService,
        job: EmbeddingJob,
        message: str,
        error_class: ErrorClass,
        retry: RetryManager,
        ctx: Dict[str, Any],
    ) -> str:
        if retry.should_retry(job, error_class):
            retry_count = (job.retry_count or 0) + 1
            scheduled_at = retry.next_attempt_at(retry_count)
            job = service.transition(
                job.id,
                JobStatus.RETRYING.value,
                expected=JobStatus.RUNNING.value,
                owner=ctx.get("worker_id"),
                retry_count=retry_count,
                error_message=message,
                scheduled_at=scheduled_at,
            )
            logger.warning(
                "Job scheduled for retry %s next_retry_count=%s scheduled_at=%s",
                _format_ctx(ctx),
                retry_count,
                scheduled_at.isoformat(),
            )
            return job.status
        job = service.transition(
            job.id,
            JobStatus.FAILED.value,
            expected=JobStatus.RUNNING.value,
            owner=ctx.get("worker_id"),
            error_message=message,
        )
        logger.error("Job failed %s: %s", _format_ctx(ctx), message)
        return job.status
