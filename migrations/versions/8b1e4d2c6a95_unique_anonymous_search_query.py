"""unique anonymous search query

Revision ID: 8b1e4d2c6a95
Revises: 3f2a9c1d7e40
Create Date: 2026-10-19 10:15:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "8b1e4d2c6a95"
down_revision: Union[str, None] = "3f2a9c1d7e40"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Fold duplicate anonymous rows into the lowest id before enforcing uniqueness.
    op.execute(
        """
        UPDATE search_embeddings SET search_count = (
            SELECT SUM(d.search_count) FROM search_embeddings d
            WHERE d.user_id IS NULL AND d.query = search_embeddings.query
        )
        WHERE user_id IS NULL AND id IN (
            SELECT MIN(id) FROM search_embeddings WHERE user_id IS NULL GROUP BY query
        )
        """
    )
    op.execute(
        """
        DELETE FROM search_embeddings
        WHERE user_id IS NULL AND id NOT IN (
            SELECT MIN(id) FROM search_embeddings WHERE user_id IS NULL GROUP BY query
        )
        """
    )
    op.create_index(
        "uq_search_embeddings_anonymous_query",
        "search_embeddings",
        ["query"],
        unique=True,
        postgresql_where=sa.text("user_id IS NULL"),
        sqlite_where=sa.text("user_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_search_embeddings_anonymous_query", table_name="search_embeddings")
