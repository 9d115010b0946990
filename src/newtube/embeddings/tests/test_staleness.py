from datetime import datetime, timedelta
from types import SimpleNamespace

from newtube.embeddings.services.staleness import StalenessDetector


def _record(**fields):
    base = dict(
        embedding=[0.1, 0.2],
        embedding_model="m",
        embedding_version="1",
        processing_status="COMPLETED",
        last_processed_at=datetime.utcnow(),
    )
    base.update(fields)
    return SimpleNamespace(**base)


def test_fresh_record_is_not_stale():
    detector = StalenessDetector()
    record = _record()
    assert detector.is_stale(record, "m", "1") is False
    assert detector.needs_processing(record, "m", "1") is False


def test_version_mismatch_is_stale():
    assert StalenessDetector().is_stale(_record(embedding_version="1"), "m", "2") is True


def test_integer_version_compares_as_string():
    assert StalenessDetector().is_stale(_record(embedding_version="3"), "m", 3) is False


def test_model_mismatch_is_stale():
    assert StalenessDetector().is_stale(_record(), "other-model", "1") is True


def test_stale_status_is_stale():
    assert StalenessDetector().is_stale(_record(processing_status="STALE"), "m", "1") is True


def test_user_interaction_threshold():
    detector = StalenessDetector()
    below = _record(
        interaction_count=19, interaction_count_at_calculation=10, last_update_threshold=10
    )
    at = _record(
        interaction_count=20, interaction_count_at_calculation=10, last_update_threshold=10
    )
    disabled = _record(
        interaction_count=500, interaction_count_at_calculation=0, last_update_threshold=0
    )
    assert detector.is_stale(below, "m", "1") is False
    assert detector.is_stale(at, "m", "1") is True
    assert detector.is_stale(disabled, "m", "1") is False


def test_max_age():
    detector = StalenessDetector(max_age=timedelta(hours=24))
    now = datetime.utcnow()
    old = _record(last_processed_at=now - timedelta(hours=30))
    recent = _record(last_processed_at=now - timedelta(hours=2))
    never = _record(last_processed_at=None)
    assert detector.is_stale(old, "m", "1", now=now) is True
    assert detector.is_stale(recent, "m", "1", now=now) is False
    assert detector.is_stale(never, "m", "1", now=now) is True


def test_non_completed_records_need_processing():
    detector = StalenessDetector()
    for status in ("PENDING", "PROCESSING", "FAILED"):
        assert detector.needs_processing(_record(processing_status=status), "m", "1") is True
    assert detector.needs_processing(_record(embedding=None), "m", "1") is True
