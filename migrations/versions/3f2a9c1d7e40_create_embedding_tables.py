"""create embedding jobs, job items and embedding target tables

Revision ID: 3f2a9c1d7e40
Revises:
Create Date: 2026-10-12 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "3f2a9c1d7e40"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _embedding_columns() -> list:
    return [
        sa.Column("source_payload", _json(), nullable=True),
        sa.Column("embedding", _json(), nullable=True),
        sa.Column("embedding_model", sa.String(length=120), nullable=True),
        sa.Column("embedding_version", sa.String(length=40), nullable=True),
        sa.Column("processing_status", sa.String(length=20), nullable=False, server_default="PENDING"),
    ]


def _timestamps() -> list:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "embedding_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("type", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("batch_size", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("config_json", _json(), nullable=False),
        sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("processed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_items", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_processing_time", sa.Float(), nullable=False, server_default="0"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(length=100), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("items_resolved_at", sa.DateTime(), nullable=True),
        sa.Column("dedupe_key", sa.String(length=160), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=True),
        *_timestamps(),
        sa.Column("scheduled_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_embedding_jobs_type"), "embedding_jobs", ["type"], unique=False)
    op.create_index(op.f("ix_embedding_jobs_status"), "embedding_jobs", ["status"], unique=False)
    op.create_index(
        op.f("ix_embedding_jobs_dedupe_key"), "embedding_jobs", ["dedupe_key"], unique=False
    )
    op.create_index(
        "ix_embedding_jobs_queue",
        "embedding_jobs",
        ["status", "scheduled_at", "priority", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_embedding_jobs_stale", "embedding_jobs", ["status", "heartbeat_at"], unique=False
    )

    op.create_table(
        "embedding_job_items",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("target_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processing_time", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["embedding_jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "target_id", name="uq_embedding_job_items_target"),
    )
    op.create_index(
        op.f("ix_embedding_job_items_job_id"), "embedding_job_items", ["job_id"], unique=False
    )
    op.create_index(
        "ix_embedding_job_items_position",
        "embedding_job_items",
        ["job_id", "position"],
        unique=False,
    )

    op.create_table(
        "video_embeddings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("platform_id", sa.String(length=200), nullable=False),
        sa.Column("platform", sa.String(length=40), nullable=False),
        *_embedding_columns(),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("last_processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("platform_id", "platform", name="uq_video_embeddings_platform"),
    )
    op.create_table(
        "user_embeddings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=False),
        *_embedding_columns(),
        sa.Column("confidence_score", sa.Float(), nullable=True),
        sa.Column("interaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "interaction_count_at_calculation", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_update_threshold", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("last_calculated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id"),
    )
    op.create_table(
        "comment_embeddings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("comment_id", sa.String(length=200), nullable=False),
        sa.Column("video_id", sa.String(length=200), nullable=True),
        *_embedding_columns(),
        sa.Column("toxicity_score", sa.Float(), nullable=True),
        sa.Column("relevance_score", sa.Float(), nullable=True),
        sa.Column("sentiment_score", sa.Float(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("last_processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("comment_id"),
    )
    op.create_index(
        op.f("ix_comment_embeddings_video_id"), "comment_embeddings", ["video_id"], unique=False
    )
    op.create_table(
        "search_embeddings",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("query", sa.String(length=500), nullable=False),
        sa.Column("user_id", sa.String(length=100), nullable=True),
        *_embedding_columns(),
        sa.Column("search_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("click_through", sa.Float(), nullable=True),
        sa.Column("avg_watch_time", sa.Float(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column("last_processed_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("query", "user_id", name="uq_search_embeddings_query_user"),
    )
    op.create_index("ix_search_embeddings_query", "search_embeddings", ["query"], unique=False)

    for table in ("video_embeddings", "user_embeddings", "comment_embeddings", "search_embeddings"):
        op.create_index(
            op.f(f"ix_{table}_processing_status"), table, ["processing_status"], unique=False
        )


def downgrade() -> None:
    for table in ("search_embeddings", "comment_embeddings", "user_embeddings", "video_embeddings"):
        op.drop_table(table)
    op.drop_index("ix_embedding_job_items_position", table_name="embedding_job_items")
    op.drop_index(op.f("ix_embedding_job_items_job_id"), table_name="embedding_job_items")
    op.drop_table("embedding_job_items")
    op.drop_index("ix_embedding_jobs_stale", table_name="embedding_jobs")
    op.drop_index("ix_embedding_jobs_queue", table_name="embedding_jobs")
    op.drop_index(op.f("ix_embedding_jobs_dedupe_key"), table_name="embedding_jobs")
    op.drop_index(op.f("ix_embedding_jobs_status"), table_name="embedding_jobs")
    op.drop_index(op.f("ix_embedding_jobs_type"), table_name="embedding_jobs")
    op.drop_table("embedding_jobs")
