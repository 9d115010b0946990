"""
Progress aggregation for running jobs.

Counters on the job row are only ever changed by single UPDATE statements that
move processed_items together with success_items or failed_items, so no reader
can observe processed != success + failed. The process-wide lock serializes
writers inside one process; the statement itself is atomic across processes.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import sessionmaker

from newtube.database import session_scope
from newtube.embeddings.models.job import EmbeddingJob, EmbeddingJobItem, ItemStatus

logger = logging.getLogger(__name__)

# Single serialization point for every write to an embedding_jobs row.
job_row_lock = threading.RLock()

# Ledger statuses that reconciliation counts as processed.
_COUNTED_ITEM_STATUSES = (
    ItemStatus.SUCCEEDED.value,
    ItemStatus.SKIPPED.value,
    ItemStatus.FAILED_PERMANENT.value,
)


class ItemOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProgressSnapshot:
    total_items: int
    processed_items: int
    success_items: int
    failed_items: int
    avg_processing_time: float

    @property
    def consistent(self) -> bool:
        return (
            self.processed_items == self.success_items + self.failed_items
            and self.processed_items <= self.total_items
        )


class ProgressAggregator:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record_item_result(
        self,
        job_id: str,
        outcome: ItemOutcome,
        item_time: float,
        *,
        item_pk: Optional[int] = None,
        item_status: Optional[ItemStatus] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Count one finished item against its job.

        The ledger row (when given) is updated in the same transaction so the
        counters stay reconcilable from embedding_job_items after a crash.
        Returns False when the job has no room left (already fully counted).
        """
        outcome = ItemOutcome(outcome)
        item_time = max(float(item_time or 0.0), 0.0)
        now = datetime.utcnow()

        values = {
            "processed_items": EmbeddingJob.processed_items + 1,
            "avg_processing_time": EmbeddingJob.avg_processing_time
            + (item_time - EmbeddingJob.avg_processing_time) / (EmbeddingJob.processed_items + 1),
            "updated_at": now,
        }
        if outcome == ItemOutcome.FAILURE:
            values["failed_items"] = EmbeddingJob.failed_items + 1
        else:
            values["success_items"] = EmbeddingJob.success_items + 1

        with job_row_lock:
            with session_scope(self._session_factory) as session:
                result = session.execute(
                    update(EmbeddingJob)
                    .where(
                        EmbeddingJob.id == job_id,
                        EmbeddingJob.processed_items < EmbeddingJob.total_items,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.warning(
                        "Progress update ignored job_id=%s outcome=%s (no capacity left)",
                        job_id,
                        outcome.value,
                    )
                    return False
                if item_pk is not None:
                    session.execute(
                        update(EmbeddingJobItem)
                        .where(EmbeddingJobItem.id == item_pk)
                        .values(
                            status=(item_status or _default_item_status(outcome)).value,
                            attempts=EmbeddingJobItem.attempts + 1,
                            last_error=error,
                            processing_time=item_time,
                            finished_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
        return True

    def reset_counters(
        self,
        job_id: str,
        *,
        total_items: int,
        success_items: int,
        failed_items: int,
    ) -> None:
        """
        Overwrite counters with values recomputed from the item ledger.

        avg_processing_time is rebuilt from the ledger rows still counted as
        processed.
        """
        processed = success_items + failed_items
        if processed > total_items:
            raise ValueError(
                f"processed ({processed}) exceeds total ({total_items}) for job {job_id}"
            )
        values = {
            "total_items": total_items,
            "processed_items": processed,
            "success_items": success_items,
            "failed_items": failed_items,
            "updated_at": datetime.utcnow(),
        }
        with job_row_lock:
            with session_scope(self._session_factory) as session:
                if processed == 0:
                    values["avg_processing_time"] = 0.0
                else:
                    average = session.execute(
                        select(func.avg(EmbeddingJobItem.processing_time)).where(
                            EmbeddingJobItem.job_id == job_id,
                            EmbeddingJobItem.status.in_(_COUNTED_ITEM_STATUSES),
                            EmbeddingJobItem.processing_time.isnot(None),
                        )
                    ).scalar()
                    if average is not None:
                        values["avg_processing_time"] = float(average)
                session.execute(
                    update(EmbeddingJob)
                    .where(EmbeddingJob.id == job_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )

    def snapshot(self, job_id: str) -> Optional[ProgressSnapshot]:
        with job_row_lock:
            with session_scope(self._session_factory) as session:
                row = session.execute(
                    select(
                        EmbeddingJob.total_items,
                        EmbeddingJob.processed_items,
                        EmbeddingJob.success_items,
                        EmbeddingJob.failed_items,
                        EmbeddingJob.avg_processing_time,
                    ).where(EmbeddingJob.id == job_id)
                ).first()
        if row is None:
            return None
        return ProgressSnapshot(
            total_items=row[0] or 0,
            processed_items=row[1] or 0,
            success_items=row[2] or 0,
            failed_items=row[3] or 0,
            avg_processing_time=float(row[4] or 0.0),
        )


def _default_item_status(outcome: ItemOutcome) -> ItemStatus:
    if outcome == ItemOutcome.SUCCESS:
        return ItemStatus.SUCCEEDED
    if outcome == ItemOutcome.SKIPPED:
        return ItemStatus.SKIPPED
    return ItemStatus.FAILED_TRANSIENT
