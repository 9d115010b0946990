from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from newtube.database import session_scope
from newtube.embeddings.models.targets import (
    CommentEmbedding,
    ProcessingStatus,
    SearchEmbedding,
    UserEmbedding,
    VideoEmbedding,
)
from newtube.integrations.inference import InferenceClient, InferenceResult


class FakeInferenceClient(InferenceClient):
    """
    Deterministic inference stand-in.

    `fail_plan` maps payload text to a list of exceptions raised on the
    first calls for that text; later calls succeed.
    """

    def __init__(
        self,
        *,
        fail_plan: Optional[Dict[str, List[Exception]]] = None,
        delay: float = 0.0,
    ):
        self.fail_plan = {k: list(v) for k, v in (fail_plan or {}).items()}
        self.delay = delay
        self.calls: List[str] = []
        self.in_flight = 0
        self.peak = 0
        self.on_compute = None
        self._lock = threading.Lock()

    def compute(self, payload: Dict[str, Any], model: str) -> InferenceResult:
        text = payload.get("text", "")
        with self._lock:
            self.calls.append(text)
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            planned = self.fail_plan.get(text)
            error = planned.pop(0) if planned else None
        try:
            if self.on_compute is not None:
                self.on_compute(text)
            if self.delay:
                threading.Event().wait(self.delay)
            if error is not None:
                raise error
            return InferenceResult(
                vector=[float(len(text)), 1.0, 0.5],
                scores={"quality_score": 0.9, "toxicity_score": 0.1},
            )
        finally:
            with self._lock:
                self.in_flight -= 1

    def calls_for(self, text: str) -> int:
        with self._lock:
            return self.calls.count(text)


def video_text(index: int, prefix: str = "Video") -> str:
    return f"{prefix} {index}"


def add_videos(
    session_factory,
    count: int,
    *,
    status: str = ProcessingStatus.PENDING.value,
    prefix: str = "vid",
    title_prefix: str = "Video",
    payload: Optional[Dict[str, Any]] = None,
    model: Optional[str] = None,
    version: Optional[str] = None,
    processed_at: Optional[datetime] = None,
) -> List[str]:
    ids = []
    with session_scope(session_factory) as db:
        for index in range(count):
            record = VideoEmbedding(
                platform_id=f"{prefix}-{index}",
                platform="youtube",
                source_payload=(
                    payload
                    if payload is not None
                    else {"title": video_text(index, title_prefix), "tags": []}
                ),
                processing_status=status,
                embedding=[0.1, 0.2] if model else None,
                embedding_model=model,
                embedding_version=version,
                last_processed_at=processed_at,
            )
            db.add(record)
            db.flush()
            ids.append(record.id)
    return ids


def add_user(session_factory, user_id: str, **fields) -> str:
    with session_scope(session_factory) as db:
        record = UserEmbedding(
            user_id=user_id,
            source_payload=fields.pop("source_payload", {"interests": ["music", "travel"]}),
            **fields,
        )
        db.add(record)
        db.flush()
        return record.id


def add_comment(session_factory, comment_id: str, text: str) -> str:
    with session_scope(session_factory) as db:
        record = CommentEmbedding(
            comment_id=comment_id, video_id="vid-0", source_payload={"text": text}
        )
        db.add(record)
        db.flush()
        return record.id


def add_search(session_factory, query: str, user_id: Optional[str] = None) -> str:
    with session_scope(session_factory) as db:
        record = SearchEmbedding(query=query, user_id=user_id, source_payload={"text": query})
        db.add(record)
        db.flush()
        return record.id
