"""
Per-type embedding strategies.

Each JobType maps to one strategy that knows which target table it writes,
how to pick the records a job covers, and how to turn a record into the
payload sent to the inference service. The executor only talks to this
interface.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Type

from newtube.embeddings.models.job import JobType
from newtube.embeddings.models.targets import TargetKind
from newtube.embeddings.schemas.job_config import (
    BaseJobConfig,
    BatchUpdateConfig,
    CommentJobConfig,
    IncrementalUpdateConfig,
    SearchJobConfig,
    TargetedJobConfig,
    UserJobConfig,
    VideoJobConfig,
)
from newtube.embeddings.services.job_errors import ItemPayloadError
from newtube.embeddings.services.store import EmbeddingStore

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")

MAX_DESCRIPTION_CHARS = 2000


def clean_text(value: Any) -> str:
    if value is None:
        return ""
    text = _TAG_RE.sub(" ", str(value))
    return _WS_RE.sub(" ", text).strip()


@dataclass
class ResolveContext:
    store: EmbeddingStore
    model: str
    version: str
    # Completion time of the last successful incremental run for a target kind.
    last_incremental_at: Callable[[TargetKind], Optional[datetime]] = lambda _kind: None


class EmbeddingStrategy:
    job_type: JobType
    config_model: Type[BaseJobConfig] = BaseJobConfig
    kind: Optional[TargetKind] = None

    def target_kind(self, config: BaseJobConfig) -> TargetKind:
        return self.kind or TargetKind(getattr(config, "target"))

    def resolve_targets(self, config: BaseJobConfig, ctx: ResolveContext) -> List[str]:
        raise NotImplementedError

    def build_payload(self, kind: TargetKind, record: Any) -> Dict[str, Any]:
        builder = _PAYLOAD_BUILDERS[kind]
        payload = builder(record)
        if not payload.get("text"):
            raise ItemPayloadError(f"{kind.value} record {record.id} has no embeddable content")
        return payload


class TargetedStrategy(EmbeddingStrategy):
    config_model: Type[BaseJobConfig] = TargetedJobConfig

    def resolve_targets(self, config: BaseJobConfig, ctx: ResolveContext) -> List[str]:
        if config.target_ids:
            return list(config.target_ids)
        return ctx.store.find_pending(self.target_kind(config), config.limit)


class VideoEmbeddingStrategy(TargetedStrategy):
    job_type = JobType.VIDEO_EMBEDDING
    config_model = VideoJobConfig
    kind = TargetKind.VIDEO


class UserEmbeddingStrategy(TargetedStrategy):
    job_type = JobType.USER_EMBEDDING
    config_model = UserJobConfig
    kind = TargetKind.USER


class CommentEmbeddingStrategy(TargetedStrategy):
    job_type = JobType.COMMENT_EMBEDDING
    config_model = CommentJobConfig
    kind = TargetKind.COMMENT


class SearchEmbeddingStrategy(TargetedStrategy):
    job_type = JobType.SEARCH_EMBEDDING
    config_model = SearchJobConfig
    kind = TargetKind.SEARCH


class BatchUpdateStrategy(EmbeddingStrategy):
    job_type = JobType.BATCH_UPDATE
    config_model = BatchUpdateConfig

    def resolve_targets(self, config: BaseJobConfig, ctx: ResolveContext) -> List[str]:
        return ctx.store.find_stale_candidates(
            self.target_kind(config), ctx.model, ctx.version, config.limit
        )


class IncrementalUpdateStrategy(EmbeddingStrategy):
    job_type = JobType.INCREMENTAL_UPDATE
    config_model = IncrementalUpdateConfig

    def resolve_targets(self, config: BaseJobConfig, ctx: ResolveContext) -> List[str]:
        kind = self.target_kind(config)
        since = config.since or ctx.last_incremental_at(kind)
        return ctx.store.find_changed_since(kind, since, config.limit)


def _source(record: Any) -> Dict[str, Any]:
    payload = getattr(record, "source_payload", None)
    return dict(payload) if isinstance(payload, dict) else {}


def _video_payload(record: Any) -> Dict[str, Any]:
    src = _source(record)
    title = clean_text(src.get("title"))
    description = clean_text(src.get("description"))[:MAX_DESCRIPTION_CHARS]
    tags = [clean_text(t) for t in (src.get("tags") or []) if clean_text(t)]
    parts = [p for p in (title, description, " ".join(tags)) if p]
    return {
        "kind": TargetKind.VIDEO.value,
        "text": "\n".join(parts),
        "platform": record.platform,
        "platform_id": record.platform_id,
        "category": src.get("category"),
    }


def _user_payload(record: Any) -> Dict[str, Any]:
    src = _source(record)
    interests = [clean_text(i) for i in (src.get("interests") or []) if clean_text(i)]
    history = [clean_text(h) for h in (src.get("recent_titles") or []) if clean_text(h)]
    parts = interests + history
    return {
        "kind": TargetKind.USER.value,
        "text": "\n".join(parts),
        "user_id": record.user_id,
        "interaction_count": record.interaction_count or 0,
    }


def _comment_payload(record: Any) -> Dict[str, Any]:
    src = _source(record)
    return {
        "kind": TargetKind.COMMENT.value,
        "text": clean_text(src.get("text")),
        "comment_id": record.comment_id,
        "video_id": record.video_id,
    }


def _search_payload(record: Any) -> Dict[str, Any]:
    src = _source(record)
    return {
        "kind": TargetKind.SEARCH.value,
        "text": clean_text(src.get("text") or record.query),
        "user_id": record.user_id,
    }


_PAYLOAD_BUILDERS: Dict[TargetKind, Callable[[Any], Dict[str, Any]]] = {
    TargetKind.VIDEO: _video_payload,
    TargetKind.USER: _user_payload,
    TargetKind.COMMENT: _comment_payload,
    TargetKind.SEARCH: _search_payload,
}

_STRATEGIES: Dict[JobType, EmbeddingStrategy] = {
    strategy.job_type: strategy
    for strategy in (
        VideoEmbeddingStrategy(),
        UserEmbeddingStrategy(),
        CommentEmbeddingStrategy(),
        SearchEmbeddingStrategy(),
        BatchUpdateStrategy(),
        IncrementalUpdateStrategy(),
    )
}


def get_strategy(job_type: str) -> EmbeddingStrategy:
    try:
        return _STRATEGIES[JobType(job_type)]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"No embedding strategy for job type: {job_type}") from exc
