from __future__ import annotations

import os

import pytest


def _pg_url() -> str:
    return (os.getenv("NEWTUBE_PYTEST_PG_URL") or "").strip()


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "requires_postgres: needs a PostgreSQL database (enable with NEWTUBE_PYTEST_PG_URL=...)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    if _pg_url():
        return
    skip_pg = pytest.mark.skip(reason="NEWTUBE_PYTEST_PG_URL not set")
    for item in items:
        if "requires_postgres" in item.keywords:
            item.add_marker(skip_pg)
