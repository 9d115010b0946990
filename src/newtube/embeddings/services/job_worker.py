"""
Job Worker
Polling workers that claim embedding jobs and hand them to the executor.
"""

import contextvars
import logging
import socket
import threading
import time
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import sessionmaker

from newtube.config import get_settings
from newtube.database import session_scope
from newtube.embeddings.models.job import EmbeddingJob, JobStatus
from newtube.embeddings.services.executor import InferenceBudget, JobExecutor
from newtube.embeddings.services.job_service import JobService
from newtube.embeddings.services.progress import ProgressAggregator
from newtube.embeddings.services.retry import RetryManager
from newtube.embeddings.services.staleness import StalenessDetector
from newtube.embeddings.services.store import EmbeddingStore, SqlEmbeddingStore
from newtube.integrations.inference import HttpInferenceClient, InferenceClient

logger = logging.getLogger(__name__)


class JobWorker:
    def __init__(
        self,
        worker_id: str,
        executor: JobExecutor,
        *,
        session_factory: sessionmaker,
        poll_interval: float = 5,
    ):
        self.worker_id = worker_id
        self.executor = executor
        self.poll_interval = poll_interval  # seconds
        self._session_factory = session_factory
        self._running = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> bool:
        """Polls and processes one job in the current thread. Returns True if a job was processed."""
        try:
            with session_scope(self._session_factory) as session:
                job_service = JobService(session, retry_manager=self.executor.retry_manager)
                requeued = job_service.requeue_stale_jobs()
                if requeued:
                    logger.warning(
                        "Worker '%s' requeued %s stale job(s)", self.worker_id, requeued
                    )
                job: Optional[EmbeddingJob] = job_service.poll_next_job(self.worker_id)
                if not job:
                    return False
                job_id, job_type = job.id, job.type
            logger.info(
                "Worker '%s' picked up job job_id=%s type=%s", self.worker_id, job_id, job_type
            )
            status = self.executor.run_job(job_id, worker_id=self.worker_id)
            logger.info(
                "Worker '%s' finished run job_id=%s status=%s", self.worker_id, job_id, status
            )
            return True
        except Exception as e:
            logger.error("Worker '%s' error in run_once: %s", self.worker_id, e, exc_info=True)
        return False

    def start(self):
        """Starts the worker, polling for jobs in a separate thread."""
        if self._running:
            logger.warning("Worker '%s' is already running.", self.worker_id)
            return

        logger.info("Worker '%s' starting...", self.worker_id)
        self._running = True
        self._stop.clear()
        ctx = contextvars.copy_context()
        self._thread = threading.Thread(
            target=ctx.run, args=(self._run_loop,), name=f"Worker-{self.worker_id}-Loop"
        )
        self._thread.start()

    def _run_loop(self):
        """The main polling loop for the worker thread."""
        while self._running:
            processed = self.run_once()
            if not processed:
                logger.debug("Worker '%s' found no eligible jobs. Sleeping...", self.worker_id)
                self._stop.wait(self.poll_interval)

    def stop(self, timeout: Optional[float] = None):
        """Stops the worker and waits for its thread to finish."""
        if not self._running:
            logger.warning("Worker '%s' is not running.", self.worker_id)
            return

        logger.info("Worker '%s' stopping. Waiting for thread to join...", self.worker_id)
        self._running = False
        self._stop.set()
        if self._thread:
            # A job in flight runs to its next state before the loop exits.
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Worker '%s' thread did not terminate gracefully.", self.worker_id)
        logger.info("Worker '%s' stopped.", self.worker_id)

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


class WorkerPool:
    """
    A fixed set of JobWorker threads sharing one executor.

    The pool owns the process-wide InferenceBudget and passes it to the
    executor, so total in-flight inference calls stay bounded no matter how
    many workers and item threads are active.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        size: Optional[int] = None,
        inference_client: Optional[InferenceClient] = None,
        store: Optional[EmbeddingStore] = None,
        budget: Optional[InferenceBudget] = None,
        retry_manager: Optional[RetryManager] = None,
        detector: Optional[StalenessDetector] = None,
        poll_interval: Optional[float] = None,
        worker_prefix: Optional[str] = None,
    ):
        settings = get_settings()
        self.size = size if size is not None else settings.WORKER_POOL_SIZE
        if self.size < 1:
            raise ValueError("worker pool size must be >= 1")
        self._session_factory = session_factory
        self.budget = budget or InferenceBudget(settings.INFERENCE_MAX_CONCURRENCY)
        self.inference_client = inference_client or HttpInferenceClient()
        self.executor = JobExecutor(
            session_factory,
            store=store or SqlEmbeddingStore(session_factory),
            inference_client=self.inference_client,
            budget=self.budget,
            aggregator=ProgressAggregator(session_factory),
            retry_manager=retry_manager,
            detector=detector,
        )
        interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        prefix = worker_prefix or socket.gethostname()
        self.workers: List[JobWorker] = [
            JobWorker(
                f"{prefix}-{index + 1}",
                self.executor,
                session_factory=session_factory,
                poll_interval=interval,
            )
            for index in range(self.size)
        ]

    def start(self) -> None:
        for worker in self.workers:
            worker.start()
        logger.info("Worker pool started size=%s budget=%s", self.size, self.budget.limit)

    def stop(self, timeout: Optional[float] = None) -> None:
        for worker in self.workers:
            if worker.is_alive:
                worker.stop(timeout=timeout)
        logger.info("Worker pool stopped size=%s", self.size)

    def close(self) -> None:
        self.stop()
        self.inference_client.close()

    def active_job_count(self) -> int:
        with session_scope(self._session_factory) as session:
            return (
                session.query(func.count(EmbeddingJob.id))
                .filter(
                    EmbeddingJob.status.in_(
                        [
                            JobStatus.PENDING.value,
                            JobStatus.RUNNING.value,
                            JobStatus.RETRYING.value,
                        ]
                    )
                )
                .scalar()
                or 0
            )

    def run_until_idle(self, *, timeout: float = 60.0, check_interval: float = 0.05) -> bool:
        """
        Start the pool, wait until no job is PENDING, RUNNING or RETRYING, then
        stop. Returns False if the deadline passed first.
        """
        self.start()
        deadline = time.monotonic() + timeout
        idle = False
        try:
            while time.monotonic() < deadline:
                if self.active_job_count() == 0:
                    idle = True
                    break
                time.sleep(check_interval)
        finally:
            self.stop()
        return idle
