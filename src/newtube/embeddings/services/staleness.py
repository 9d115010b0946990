from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from newtube.embeddings.models.targets import ProcessingStatus


class StalenessDetector:
    """
    Decides whether a stored embedding still reflects the active model and
    its source signals.

    A record is stale when:
    - its model or version differs from the active one
    - its processing_status is already STALE
    - (users) interactions since the last calculation reached last_update_threshold
    - (optional) it was last processed more than max_age ago
    """

    def __init__(self, *, max_age: Optional[timedelta] = None):
        self.max_age = max_age

    def is_stale(
        self,
        record: Any,
        current_model: str,
        current_version: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        if getattr(record, "embedding_model", None) != current_model:
            return True
        if str(getattr(record, "embedding_version", None)) != str(current_version):
            return True
        if getattr(record, "processing_status", None) == ProcessingStatus.STALE.value:
            return True
        if self._interactions_exceeded(record):
            return True
        if self.max_age is not None:
            last = self._last_processed(record)
            if last is None:
                return True
            if (now or datetime.utcnow()) - last > self.max_age:
                return True
        return False

    def needs_processing(
        self,
        record: Any,
        current_model: str,
        current_version: str,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        """True unless the record is COMPLETED and fresh."""
        if getattr(record, "processing_status", None) != ProcessingStatus.COMPLETED.value:
            return True
        if not getattr(record, "embedding", None):
            return True
        return self.is_stale(record, current_model, current_version, now=now)

    @staticmethod
    def _interactions_exceeded(record: Any) -> bool:
        if not hasattr(record, "last_update_threshold"):
            return False
        threshold = record.last_update_threshold or 0
        if threshold <= 0:
            return False
        delta = (record.interaction_count or 0) - (record.interaction_count_at_calculation or 0)
        return delta >= threshold

    @staticmethod
    def _last_processed(record: Any) -> Optional[datetime]:
        return getattr(record, "last_calculated_at", None) or getattr(
            record, "last_processed_at", None
        )
