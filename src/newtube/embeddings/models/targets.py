"""
Embedding target models.

One row per content unit whose vector representation is maintained. Rows are
created when connectors first observe new content and are mutated in place by
the orchestrator; nothing in this package deletes them.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from newtube.models.base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _json_column(**kwargs) -> Column:
    return Column(JSON().with_variant(JSONB, "postgresql"), **kwargs)


class ProcessingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STALE = "STALE"


class TargetKind(str, enum.Enum):
    VIDEO = "video"
    USER = "user"
    COMMENT = "comment"
    SEARCH = "search"


class VideoEmbedding(Base):
    __tablename__ = "video_embeddings"
    __table_args__ = (
        UniqueConstraint("platform_id", "platform", name="uq_video_embeddings_platform"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    platform_id = Column(String(200), nullable=False)
    platform = Column(String(40), nullable=False, default="youtube")
    source_payload = _json_column(nullable=True)

    embedding = _json_column(nullable=True)
    embedding_model = Column(String(120), nullable=True)
    embedding_version = Column(String(40), nullable=True)
    processing_status = Column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True
    )
    quality_score = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_processed_at = Column(DateTime, nullable=True)


class UserEmbedding(Base):
    __tablename__ = "user_embeddings"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String(100), nullable=False, unique=True)
    source_payload = _json_column(nullable=True)

    embedding = _json_column(nullable=True)
    embedding_model = Column(String(120), nullable=True)
    embedding_version = Column(String(40), nullable=True)
    processing_status = Column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True
    )
    confidence_score = Column(Float, nullable=True)
    interaction_count = Column(Integer, nullable=False, default=0)
    # Interaction count observed when the current vector was calculated.
    interaction_count_at_calculation = Column(Integer, nullable=False, default=0)
    # Interaction delta required before recomputation is warranted.
    last_update_threshold = Column(Integer, nullable=False, default=10)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_calculated_at = Column(DateTime, nullable=True)


class CommentEmbedding(Base):
    __tablename__ = "comment_embeddings"

    id = Column(String, primary_key=True, default=_uuid)
    comment_id = Column(String(200), nullable=False, unique=True)
    video_id = Column(String(200), nullable=True, index=True)
    source_payload = _json_column(nullable=True)

    embedding = _json_column(nullable=True)
    embedding_model = Column(String(120), nullable=True)
    embedding_version = Column(String(40), nullable=True)
    processing_status = Column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True
    )
    toxicity_score = Column(Float, nullable=True)
    relevance_score = Column(Float, nullable=True)
    sentiment_score = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_processed_at = Column(DateTime, nullable=True)


class SearchEmbedding(Base):
    """
    Query embeddings keyed by (query, user_id).

    user_id NULL is the anonymous variant of a query; personalized rows for the
    same text live beside it and are never merged into it.
    """

    __tablename__ = "search_embeddings"
    __table_args__ = (
        UniqueConstraint("query", "user_id", name="uq_search_embeddings_query_user"),
        Index("ix_search_embeddings_query", "query"),
        Index(
            "uq_search_embeddings_anonymous_query",
            "query",
            unique=True,
            postgresql_where=text("user_id IS NULL"),
            sqlite_where=text("user_id IS NULL"),
        ),
    )

    id = Column(String, primary_key=True, default=_uuid)
    query = Column(String(500), nullable=False)
    user_id = Column(String(100), nullable=True)
    source_payload = _json_column(nullable=True)

    embedding = _json_column(nullable=True)
    embedding_model = Column(String(120), nullable=True)
    embedding_version = Column(String(40), nullable=True)
    processing_status = Column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value, index=True
    )
    search_count = Column(Integer, nullable=False, default=0)
    click_through = Column(Float, nullable=True)
    avg_watch_time = Column(Float, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_processed_at = Column(DateTime, nullable=True)


TARGET_MODELS = {
    TargetKind.VIDEO: VideoEmbedding,
    TargetKind.USER: UserEmbedding,
    TargetKind.COMMENT: CommentEmbedding,
    TargetKind.SEARCH: SearchEmbedding,
}

# Inference score fields each table accepts.
SCORE_FIELDS = {
    TargetKind.VIDEO: ("quality_score",),
    TargetKind.USER: ("confidence_score",),
    TargetKind.COMMENT: ("toxicity_score", "relevance_score", "sentiment_score"),
    TargetKind.SEARCH: (),
}


def processed_at_column(kind: TargetKind) -> str:
    return "last_calculated_at" if kind == TargetKind.USER else "last_processed_at"
