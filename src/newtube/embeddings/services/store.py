"""
Embedding Store
Persistence of computed vectors for the four embedding target tables.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, case, false, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from newtube.config import get_settings
from newtube.database import session_scope
from newtube.embeddings.models.targets import (
    SCORE_FIELDS,
    TARGET_MODELS,
    ProcessingStatus,
    SearchEmbedding,
    TargetKind,
    processed_at_column,
)
from newtube.embeddings.services.job_errors import ItemPayloadError

logger = logging.getLogger(__name__)


class EmbeddingStore(ABC):
    """Abstract access to embedding target records."""

    @abstractmethod
    def get_record(self, kind: TargetKind, target_id: str) -> Optional[Any]:
        """Return a detached copy of the record, or None if it no longer exists."""

    @abstractmethod
    def upsert_result(
        self,
        kind: TargetKind,
        target_id: str,
        vector: Sequence[float],
        scores: Optional[Dict[str, float]],
        model: str,
        version: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """
        Store a computed vector and mark the record COMPLETED.
        Raises ItemPayloadError if the record was deleted upstream.
        """

    @abstractmethod
    def mark_status(
        self,
        kind: TargetKind,
        target_id: str,
        status: ProcessingStatus,
        error: Optional[str] = None,
    ) -> bool:
        pass

    @abstractmethod
    def find_pending(self, kind: TargetKind, limit: int) -> List[str]:
        pass

    @abstractmethod
    def find_stale_candidates(
        self, kind: TargetKind, model: str, version: str, limit: int
    ) -> List[str]:
        pass

    @abstractmethod
    def find_changed_since(
        self, kind: TargetKind, since: Optional[datetime], limit: int
    ) -> List[str]:
        pass

    @abstractmethod
    def mark_stale_older_than(self, kind: TargetKind, hours: float) -> int:
        pass

    @abstractmethod
    def get_search_embedding(
        self, query: str, user_id: Optional[str], *, fallback_anonymous: bool = True
    ) -> Optional[SearchEmbedding]:
        pass

    @abstractmethod
    def ensure_search_embedding(
        self, query: str, user_id: Optional[str], payload: Optional[Dict[str, Any]] = None
    ) -> str:
        pass

    @abstractmethod
    def embedding_stats(self, kind: Optional[TargetKind] = None) -> Dict[str, Any]:
        pass


class SqlEmbeddingStore(EmbeddingStore):
    """
    SQLAlchemy-backed store.

    Every call runs in its own short transaction so it can be used from the
    item worker threads without sharing a Session.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        processing_timeout_seconds: Optional[float] = None,
    ):
        self._session_factory = session_factory
        if processing_timeout_seconds is None:
            processing_timeout_seconds = get_settings().JOB_STALE_TIMEOUT_SECONDS
        self.processing_timeout_seconds = processing_timeout_seconds

    def get_record(self, kind: TargetKind, target_id: str) -> Optional[Any]:
        model = TARGET_MODELS[TargetKind(kind)]
        with session_scope(self._session_factory) as session:
            record = session.get(model, target_id)
            if record is not None:
                session.expunge(record)
            return record

    def upsert_result(
        self,
        kind: TargetKind,
        target_id: str,
        vector: Sequence[float],
        scores: Optional[Dict[str, float]],
        model: str,
        version: str,
        timestamp: Optional[datetime] = None,
    ) -> None:
        kind = TargetKind(kind)
        timestamp = timestamp or datetime.utcnow()
        with session_scope(self._session_factory) as session:
            record = session.get(TARGET_MODELS[kind], target_id)
            if record is None:
                raise ItemPayloadError(f"{kind.value} record {target_id} no longer exists")
            record.embedding = [float(v) for v in vector]
            record.embedding_model = model
            record.embedding_version = str(version)
            record.processing_status = ProcessingStatus.COMPLETED.value
            record.last_error = None
            for field in SCORE_FIELDS[kind]:
                if scores and field in scores and scores[field] is not None:
                    setattr(record, field, float(scores[field]))
            setattr(record, processed_at_column(kind), timestamp)
            if kind == TargetKind.USER:
                record.interaction_count_at_calculation = record.interaction_count or 0

    def mark_status(
        self,
        kind: TargetKind,
        target_id: str,
        status: ProcessingStatus,
        error: Optional[str] = None,
    ) -> bool:
        model = TARGET_MODELS[TargetKind(kind)]
        values: Dict[str, Any] = {
            "processing_status": ProcessingStatus(status).value,
            "updated_at": datetime.utcnow(),
        }
        if error is not None or status != ProcessingStatus.PROCESSING:
            values["last_error"] = error
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(model)
                .where(model.id == target_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def find_pending(self, kind: TargetKind, limit: int) -> List[str]:
        model = TARGET_MODELS[TargetKind(kind)]
        with session_scope(self._session_factory) as session:
            rows = (
                session.query(model.id)
                .filter(model.processing_status == ProcessingStatus.PENDING.value)
                .order_by(model.created_at.asc(), model.id.asc())
                .limit(limit)
                .all()
            )
            return [row[0] for row in rows]

    def find_stale_candidates(
        self, kind: TargetKind, model: str, version: str, limit: int
    ) -> List[str]:
        """
        Records needing (re)processing: PENDING, then STALE, then FAILED or
        orphaned PROCESSING, then COMPLETED records produced by another model
        or version. Newest first within each group.
        """
        table = TARGET_MODELS[TargetKind(kind)]
        mismatch = or_(
            table.embedding_model.is_(None),
            table.embedding_model != model,
            table.embedding_version.is_(None),
            table.embedding_version != str(version),
        )
        rank = case(
            (table.processing_status == ProcessingStatus.PENDING.value, 1),
            (table.processing_status == ProcessingStatus.STALE.value, 2),
            (table.processing_status == ProcessingStatus.FAILED.value, 3),
            (table.processing_status == ProcessingStatus.PROCESSING.value, 3),
            else_=4,
        )
        with session_scope(self._session_factory) as session:
            rows = (
                session.query(table.id)
                .filter(
                    or_(
                        table.processing_status.in_(
                            [
                                ProcessingStatus.PENDING.value,
                                ProcessingStatus.STALE.value,
                                ProcessingStatus.FAILED.value,
                            ]
                        ),
                        (table.processing_status == ProcessingStatus.COMPLETED.value) & mismatch,
                        self._orphaned(table),
                    )
                )
                .order_by(rank, table.created_at.desc(), table.id.asc())
                .limit(limit)
                .all()
            )
            return [row[0] for row in rows]

    def find_changed_since(
        self, kind: TargetKind, since: Optional[datetime], limit: int
    ) -> List[str]:
        table = TARGET_MODELS[TargetKind(kind)]
        due = table.processing_status.in_(
            [ProcessingStatus.PENDING.value, ProcessingStatus.STALE.value]
        )
        due = or_(due, self._orphaned(table))
        condition = due if since is None else or_(due, table.updated_at > since)
        with session_scope(self._session_factory) as session:
            rows = (
                session.query(table.id)
                .filter(
                    condition,
                    or_(
                        table.processing_status != ProcessingStatus.PROCESSING.value,
                        self._orphaned(table),
                    ),
                )
                .order_by(table.updated_at.asc(), table.id.asc())
                .limit(limit)
                .all()
            )
            return [row[0] for row in rows]

    def mark_stale_older_than(self, kind: TargetKind, hours: float) -> int:
        kind = TargetKind(kind)
        table = TARGET_MODELS[kind]
        processed_at = getattr(table, processed_at_column(kind))
        cutoff = datetime.utcnow() - timedelta(hours=hours)
        with session_scope(self._session_factory) as session:
            result = session.execute(
                update(table)
                .where(
                    table.processing_status == ProcessingStatus.COMPLETED.value,
                    processed_at < cutoff,
                )
                .values(processing_status=ProcessingStatus.STALE.value)
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0
        logger.info("Marked stale embeddings kind=%s count=%s hours=%s", kind.value, count, hours)
        return count

    def get_search_embedding(
        self, query: str, user_id: Optional[str], *, fallback_anonymous: bool = True
    ) -> Optional[SearchEmbedding]:
        """
        Exact (query, user_id) lookup. With fallback_anonymous, a personalized
        miss falls back to the anonymous row for the same query.
        """
        with session_scope(self._session_factory) as session:
            record = self._find_search_row(session, query, user_id)
            if record is None and user_id is not None and fallback_anonymous:
                record = self._find_search_row(session, query, None)
            if record is not None:
                session.expunge(record)
            return record

    def ensure_search_embedding(
        self, query: str, user_id: Optional[str], payload: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create the (query, user_id) row if missing and bump search_count.

        Two callers racing on a missing row both try to insert; the loser hits
        the unique constraint and retries as an increment of the winner's row.
        """
        try:
            return self._insert_or_bump_search(query, user_id, payload)
        except IntegrityError:
            logger.info(
                "Search row created concurrently query=%r user_id=%s, retrying", query, user_id
            )
            return self._insert_or_bump_search(query, user_id, payload)

    def _insert_or_bump_search(
        self, query: str, user_id: Optional[str], payload: Optional[Dict[str, Any]]
    ) -> str:
        with session_scope(self._session_factory) as session:
            record = self._find_search_row(session, query, user_id)
            if record is None:
                record = SearchEmbedding(
                    query=query,
                    user_id=user_id,
                    source_payload=payload or {"text": query},
                    processing_status=ProcessingStatus.PENDING.value,
                    search_count=1,
                )
                session.add(record)
                session.flush()
                return record.id
            values: Dict[str, Any] = {
                "search_count": func.coalesce(SearchEmbedding.search_count, 0) + 1,
                "updated_at": datetime.utcnow(),
            }
            if payload:
                values["source_payload"] = payload
            session.execute(
                update(SearchEmbedding)
                .where(SearchEmbedding.id == record.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return record.id

    def embedding_stats(self, kind: Optional[TargetKind] = None) -> Dict[str, Any]:
        kinds = [TargetKind(kind)] if kind else list(TargetKind)
        stats: Dict[str, Any] = {}
        with session_scope(self._session_factory) as session:
            for target in kinds:
                table = TARGET_MODELS[target]
                by_status = {
                    status: count
                    for status, count in session.query(
                        table.processing_status, func.count(table.id)
                    )
                    .group_by(table.processing_status)
                    .all()
                }
                by_model = {
                    f"{model or 'none'}:{version or 'none'}": count
                    for model, version, count in session.query(
                        table.embedding_model, table.embedding_version, func.count(table.id)
                    )
                    .filter(table.embedding_model.isnot(None))
                    .group_by(table.embedding_model, table.embedding_version)
                    .all()
                }
                last_processed = session.query(
                    func.max(getattr(table, processed_at_column(target)))
                ).scalar()
                stats[target.value] = {
                    "total": sum(by_status.values()),
                    "by_status": by_status,
                    "by_model": by_model,
                    "last_processed_at": last_processed.isoformat() if last_processed else None,
                }
        return stats

    def _orphaned(self, table):
        """PROCESSING rows untouched for longer than the processing timeout."""
        if not self.processing_timeout_seconds or self.processing_timeout_seconds <= 0:
            return false()
        cutoff = datetime.utcnow() - timedelta(seconds=self.processing_timeout_seconds)
        return and_(
            table.processing_status == ProcessingStatus.PROCESSING.value,
            table.updated_at < cutoff,
        )

    @staticmethod
    def _find_search_row(session, query: str, user_id: Optional[str]) -> Optional[SearchEmbedding]:
        q = session.query(SearchEmbedding).filter(SearchEmbedding.query == query)
        if user_id is None:
            q = q.filter(SearchEmbedding.user_id.is_(None))
        else:
            q = q.filter(SearchEmbedding.user_id == user_id)
        return q.first()
