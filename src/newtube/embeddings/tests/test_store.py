import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from newtube.database import session_scope
from newtube.embeddings.models.targets import (
    ProcessingStatus,
    SearchEmbedding,
    TargetKind,
    VideoEmbedding,
)
from newtube.embeddings.services.job_errors import ItemPayloadError
from newtube.embeddings.services.store import SqlEmbeddingStore
from newtube.embeddings.tests.factories import add_search, add_user, add_videos


@pytest.fixture()
def store(session_factory):
    return SqlEmbeddingStore(session_factory)


def _set_video(session_factory, video_id, **values):
    with session_scope(session_factory) as db:
        db.query(VideoEmbedding).filter(VideoEmbedding.id == video_id).update(
            values, synchronize_session=False
        )


def test_get_record_returns_detached_copy(store, session_factory):
    (video_id,) = add_videos(session_factory, 1)
    record = store.get_record(TargetKind.VIDEO, video_id)
    assert record.platform_id == "vid-0"
    assert record.source_payload["title"] == "Video 0"
    assert store.get_record(TargetKind.VIDEO, "missing") is None


def test_upsert_result_marks_completed(store, session_factory):
    (video_id,) = add_videos(session_factory, 1)
    store.mark_status(TargetKind.VIDEO, video_id, ProcessingStatus.FAILED, "boom")
    ts = datetime(2026, 3, 1, 12, 0, 0)

    store.upsert_result(
        TargetKind.VIDEO, video_id, [1, 2, 3], {"quality_score": 0.7, "unknown": 1.0}, "m", 4, ts
    )

    record = store.get_record(TargetKind.VIDEO, video_id)
    assert record.embedding == [1.0, 2.0, 3.0]
    assert record.embedding_model == "m"
    assert record.embedding_version == "4"
    assert record.processing_status == ProcessingStatus.COMPLETED.value
    assert record.last_error is None
    assert record.quality_score == pytest.approx(0.7)
    assert record.last_processed_at == ts


def test_upsert_missing_record_raises(store):
    with pytest.raises(ItemPayloadError):
        store.upsert_result(TargetKind.COMMENT, "gone", [0.1], None, "m", "1")


def test_upsert_user_records_interaction_baseline(store, session_factory):
    user_pk = add_user(session_factory, "u-1", interaction_count=42)
    store.upsert_result(TargetKind.USER, user_pk, [0.5], {"confidence_score": 0.8}, "m", "1")
    user = store.get_record(TargetKind.USER, user_pk)
    assert user.interaction_count_at_calculation == 42
    assert user.confidence_score == pytest.approx(0.8)
    assert user.last_calculated_at is not None


def test_mark_status_reports_missing_rows(store, session_factory):
    (video_id,) = add_videos(session_factory, 1)
    assert store.mark_status(TargetKind.VIDEO, video_id, ProcessingStatus.PROCESSING) is True
    assert store.mark_status(TargetKind.VIDEO, "missing", ProcessingStatus.PROCESSING) is False


def test_find_pending_oldest_first(store, session_factory):
    ids = add_videos(session_factory, 3)
    base = datetime.utcnow() - timedelta(hours=1)
    for offset, video_id in enumerate(reversed(ids)):
        _set_video(session_factory, video_id, created_at=base + timedelta(minutes=offset))
    add_videos(session_factory, 1, prefix="done", status=ProcessingStatus.COMPLETED.value)

    assert store.find_pending(TargetKind.VIDEO, 10) == list(reversed(ids))
    assert len(store.find_pending(TargetKind.VIDEO, 2)) == 2


def test_find_stale_candidates_ordering(store, session_factory):
    now = datetime.utcnow()
    (completed_old,) = add_videos(
        session_factory, 1, prefix="old", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=now,
    )
    (completed_current,) = add_videos(
        session_factory, 1, prefix="cur", status=ProcessingStatus.COMPLETED.value,
        model="m", version="2", processed_at=now,
    )
    (failed,) = add_videos(session_factory, 1, prefix="failed", status=ProcessingStatus.FAILED.value)
    (stale,) = add_videos(session_factory, 1, prefix="stale", status=ProcessingStatus.STALE.value)
    pending_old, pending_new = add_videos(session_factory, 2, prefix="pending")
    _set_video(session_factory, pending_old, created_at=now - timedelta(hours=2))
    _set_video(session_factory, pending_new, created_at=now - timedelta(hours=1))

    candidates = store.find_stale_candidates(TargetKind.VIDEO, "m", "2", 10)

    assert candidates == [pending_new, pending_old, stale, failed, completed_old]
    assert completed_current not in candidates
    assert store.find_stale_candidates(TargetKind.VIDEO, "m", "2", 1) == [pending_new]


def test_find_changed_since(store, session_factory):
    now = datetime.utcnow()
    (pending,) = add_videos(session_factory, 1, prefix="p")
    (touched,) = add_videos(
        session_factory, 1, prefix="t", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=now,
    )
    (untouched,) = add_videos(
        session_factory, 1, prefix="u", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=now,
    )
    (in_flight,) = add_videos(session_factory, 1, prefix="f", status=ProcessingStatus.PROCESSING.value)
    _set_video(session_factory, untouched, updated_at=now - timedelta(days=2))
    _set_video(session_factory, touched, updated_at=now + timedelta(seconds=5))
    _set_video(session_factory, in_flight, updated_at=now + timedelta(seconds=5))

    changed = store.find_changed_since(TargetKind.VIDEO, now - timedelta(hours=1), 10)
    assert set(changed) == {pending, touched}
    assert store.find_changed_since(TargetKind.VIDEO, None, 10) == [pending]


def test_orphaned_processing_rows_are_offered_again(session_factory):
    store = SqlEmbeddingStore(session_factory, processing_timeout_seconds=600)
    now = datetime.utcnow()
    (orphaned,) = add_videos(session_factory, 1, prefix="o", status=ProcessingStatus.PROCESSING.value)
    (in_flight,) = add_videos(session_factory, 1, prefix="f", status=ProcessingStatus.PROCESSING.value)
    _set_video(session_factory, orphaned, updated_at=now - timedelta(hours=1))

    assert store.find_stale_candidates(TargetKind.VIDEO, "m", "1", 10) == [orphaned]
    assert store.find_changed_since(TargetKind.VIDEO, None, 10) == [orphaned]
    assert store.find_changed_since(TargetKind.VIDEO, now - timedelta(days=1), 10) == [orphaned]
    assert in_flight not in store.find_changed_since(TargetKind.VIDEO, now - timedelta(days=1), 10)

    disabled = SqlEmbeddingStore(session_factory, processing_timeout_seconds=0)
    assert disabled.find_stale_candidates(TargetKind.VIDEO, "m", "1", 10) == []


def test_mark_stale_older_than(store, session_factory):
    now = datetime.utcnow()
    (old,) = add_videos(
        session_factory, 1, prefix="old", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=now - timedelta(hours=30),
    )
    (recent,) = add_videos(
        session_factory, 1, prefix="new", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=now - timedelta(hours=1),
    )

    assert store.mark_stale_older_than(TargetKind.VIDEO, 24) == 1
    assert store.get_record(TargetKind.VIDEO, old).processing_status == "STALE"
    assert store.get_record(TargetKind.VIDEO, recent).processing_status == "COMPLETED"


def test_search_rows_are_keyed_by_query_and_user(store, session_factory):
    anonymous = add_search(session_factory, "jazz")
    personal = add_search(session_factory, "jazz", user_id="u-1")

    assert store.get_search_embedding("jazz", None).id == anonymous
    assert store.get_search_embedding("jazz", "u-1").id == personal
    assert store.get_search_embedding("jazz", "u-2").id == anonymous
    assert store.get_search_embedding("jazz", "u-2", fallback_anonymous=False) is None
    assert store.get_search_embedding("blues", None) is None


def test_ensure_search_embedding_creates_once(store):
    first = store.ensure_search_embedding("lofi", "u-1")
    again = store.ensure_search_embedding("lofi", "u-1")
    anonymous = store.ensure_search_embedding("lofi", None)

    assert first == again
    assert anonymous != first
    row = store.get_search_embedding("lofi", "u-1")
    assert row.search_count == 2
    assert row.processing_status == ProcessingStatus.PENDING.value


def test_concurrent_anonymous_searches_share_one_row(store, session_factory):
    workers = 6
    barrier = threading.Barrier(workers)
    errors = []

    def search():
        try:
            barrier.wait()
            store.ensure_search_embedding("cats", None)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=search) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    with session_scope(session_factory) as db:
        rows = (
            db.query(SearchEmbedding)
            .filter(SearchEmbedding.query == "cats", SearchEmbedding.user_id.is_(None))
            .all()
        )
        assert len(rows) == 1
        assert rows[0].search_count == workers


def test_anonymous_search_rows_are_unique(session_factory):
    add_search(session_factory, "dogs")
    add_search(session_factory, "dogs", user_id="u-1")

    with pytest.raises(IntegrityError):
        add_search(session_factory, "dogs")


def test_ensure_search_embedding_recovers_from_lost_insert(store, session_factory, monkeypatch):
    existing = add_search(session_factory, "birds")
    original = store._find_search_row
    calls = []

    def miss_once(session, query, user_id):
        calls.append(query)
        if len(calls) == 1:
            return None
        return original(session, query, user_id)

    monkeypatch.setattr(store, "_find_search_row", miss_once)

    assert store.ensure_search_embedding("birds", None) == existing
    assert store.get_search_embedding("birds", None).search_count == 1


def test_embedding_stats(store, session_factory):
    add_videos(session_factory, 2)
    add_videos(
        session_factory, 3, prefix="done", status=ProcessingStatus.COMPLETED.value,
        model="m", version="1", processed_at=datetime(2026, 5, 1),
    )

    stats = store.embedding_stats(TargetKind.VIDEO)
    assert list(stats) == ["video"]
    video = stats["video"]
    assert video["total"] == 5
    assert video["by_status"] == {"PENDING": 2, "COMPLETED": 3}
    assert video["by_model"] == {"m:1": 3}
    assert video["last_processed_at"] == "2026-05-01T00:00:00"

    everything = store.embedding_stats()
    assert set(everything) == {"video", "user", "comment", "search"}
    assert everything["user"]["total"] == 0
