"""
Embedding subsystem bootstrap helpers.

SQLAlchemy only creates tables for models that have been imported (registered) in the
metadata. `create_all()` and Alembic autogenerate both go through this import surface.
"""

from __future__ import annotations


def import_all_models() -> None:
    from newtube.embeddings.models import job as _job  # noqa: F401
    from newtube.embeddings.models import targets as _targets  # noqa: F401
