from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from newtube.embeddings.models.targets import TargetKind
from newtube.embeddings.schemas.job_config import parse_job_config
from newtube.embeddings.services.job_errors import ItemPayloadError
from newtube.embeddings.services.strategies import (
    MAX_DESCRIPTION_CHARS,
    BatchUpdateStrategy,
    IncrementalUpdateStrategy,
    ResolveContext,
    VideoEmbeddingStrategy,
    clean_text,
    get_strategy,
)


def _video(**source):
    return SimpleNamespace(
        id="v-1", platform="youtube", platform_id="abc", source_payload=source
    )


def test_clean_text_strips_markup_and_whitespace():
    assert clean_text("<b>Hello</b>\n\n  world ") == "Hello world"
    assert clean_text(None) == ""


def test_video_payload_joins_title_description_tags():
    payload = VideoEmbeddingStrategy().build_payload(
        TargetKind.VIDEO,
        _video(title="Cats", description="<p>Funny cats</p>", tags=["pets", " ", "cats"]),
    )
    assert payload["text"] == "Cats\nFunny cats\npets cats"
    assert payload["platform"] == "youtube"
    assert payload["platform_id"] == "abc"


def test_video_description_is_truncated():
    payload = VideoEmbeddingStrategy().build_payload(
        TargetKind.VIDEO, _video(title="T", description="x" * (MAX_DESCRIPTION_CHARS + 50))
    )
    assert len(payload["text"]) == len("T\n") + MAX_DESCRIPTION_CHARS


def test_empty_payload_raises_item_payload_error():
    with pytest.raises(ItemPayloadError):
        VideoEmbeddingStrategy().build_payload(TargetKind.VIDEO, _video())


def test_user_search_and_comment_payloads():
    strategy = get_strategy("USER_EMBEDDING")
    user = SimpleNamespace(
        id="u", user_id="user-1", interaction_count=4,
        source_payload={"interests": ["music"], "recent_titles": ["Jazz live"]},
    )
    assert strategy.build_payload(TargetKind.USER, user)["text"] == "music\nJazz live"

    search = SimpleNamespace(id="s", query="lofi beats", user_id=None, source_payload=None)
    assert get_strategy("SEARCH_EMBEDDING").build_payload(TargetKind.SEARCH, search)["text"] == (
        "lofi beats"
    )

    comment = SimpleNamespace(
        id="c", comment_id="c-1", video_id="v", source_payload={"text": "nice <i>video</i>"}
    )
    assert get_strategy("COMMENT_EMBEDDING").build_payload(TargetKind.COMMENT, comment)[
        "text"
    ] == "nice video"


def test_targeted_strategy_prefers_explicit_ids():
    store = MagicMock()
    ctx = ResolveContext(store=store, model="m", version="1")
    config = parse_job_config("VIDEO_EMBEDDING", {"target_ids": ["a", "b"]})
    assert VideoEmbeddingStrategy().resolve_targets(config, ctx) == ["a", "b"]
    store.find_pending.assert_not_called()

    store.find_pending.return_value = ["p1"]
    config = parse_job_config("VIDEO_EMBEDDING", {"limit": 7})
    assert VideoEmbeddingStrategy().resolve_targets(config, ctx) == ["p1"]
    store.find_pending.assert_called_once_with(TargetKind.VIDEO, 7)


def test_batch_update_uses_active_model_and_version():
    store = MagicMock()
    store.find_stale_candidates.return_value = ["x"]
    ctx = ResolveContext(store=store, model="m2", version="5")
    config = parse_job_config("BATCH_UPDATE", {"target": "user", "limit": 20})
    assert BatchUpdateStrategy().resolve_targets(config, ctx) == ["x"]
    store.find_stale_candidates.assert_called_once_with(TargetKind.USER, "m2", "5", 20)


def test_incremental_falls_back_to_last_completed_run():
    store = MagicMock()
    store.find_changed_since.return_value = []
    last = datetime.utcnow() - timedelta(hours=1)
    ctx = ResolveContext(store=store, model="m", version="1", last_incremental_at=lambda _k: last)

    config = parse_job_config("INCREMENTAL_UPDATE", {"target": "video"})
    IncrementalUpdateStrategy().resolve_targets(config, ctx)
    store.find_changed_since.assert_called_with(TargetKind.VIDEO, last, 200)

    explicit = datetime(2026, 1, 1)
    config = parse_job_config("INCREMENTAL_UPDATE", {"since": explicit.isoformat()})
    IncrementalUpdateStrategy().resolve_targets(config, ctx)
    store.find_changed_since.assert_called_with(TargetKind.VIDEO, explicit, 200)


def test_unknown_strategy():
    with pytest.raises(ValueError):
        get_strategy("NOPE")
