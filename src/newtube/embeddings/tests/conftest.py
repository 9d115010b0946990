from __future__ import annotations

import pytest

from newtube.config import get_settings
from newtube.database import create_db_engine, create_session_factory
from newtube.embeddings.bootstrap import import_all_models
from newtube.embeddings.services.executor import InferenceBudget, JobExecutor
from newtube.embeddings.services.retry import RetryManager
from newtube.embeddings.services.store import SqlEmbeddingStore
from newtube.embeddings.tests.factories import FakeInferenceClient
from newtube.models.base import Base


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("NEWTUBE_EMBEDDING_MODEL", "test-model")
    monkeypatch.setenv("NEWTUBE_EMBEDDING_VERSION", "1")
    monkeypatch.setenv("NEWTUBE_EMBEDDING_DIMENSIONS", "0")
    monkeypatch.setenv("NEWTUBE_JOB_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("NEWTUBE_JOB_ITEM_CONCURRENCY", "3")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine(tmp_path):
    # File-backed so worker threads get their own connections.
    engine = create_db_engine(f"sqlite:///{tmp_path / 'newtube_test.db'}")
    import_all_models()
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def session(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def retry_manager():
    return RetryManager(base_delay=0.0, max_delay=0.0)


@pytest.fixture()
def fake_client():
    return FakeInferenceClient()


@pytest.fixture()
def executor(session_factory, fake_client, retry_manager):
    return JobExecutor(
        session_factory,
        store=SqlEmbeddingStore(session_factory),
        inference_client=fake_client,
        budget=InferenceBudget(4),
        retry_manager=retry_manager,
    )
