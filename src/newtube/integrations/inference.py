"""
Embedding inference client.

The orchestrator calls the inference service once per item. Errors are raised
as-is (httpx errors, ModelUnavailableError); classification is done by the
caller, see `newtube.embeddings.services.job_errors.classify_error`.
"""

from __future__ import annotations

import math
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from newtube.config import get_settings
from newtube.embeddings.services.job_errors import ItemPayloadError, ModelUnavailableError


@dataclass(frozen=True)
class InferenceResult:
    vector: List[float]
    scores: Dict[str, float] = field(default_factory=dict)
    tokens_used: int = 0


class InferenceClient(ABC):
    """Abstract base class for embedding inference providers."""

    @abstractmethod
    def compute(self, payload: Dict[str, Any], model: str) -> InferenceResult:
        """
        Compute the embedding for one item.
        Args:
            payload: The materialized content of the target record.
            model: Embedding model name to use.
        Returns:
            The vector plus any domain scores the model produced.
        """

    def health(self) -> Dict[str, Any]:
        return {"ok": True}

    def close(self) -> None:
        return None


def validate_vector(vector: Any, *, dimensions: int = 0) -> List[float]:
    """Reject vectors that can never be stored (wrong shape, NaN/inf)."""
    if not isinstance(vector, list) or not vector:
        raise ItemPayloadError("Inference returned an empty embedding")
    try:
        values = [float(v) for v in vector]
    except (TypeError, ValueError) as exc:
        raise ItemPayloadError(f"Inference returned non-numeric embedding: {exc}") from exc
    if any(not math.isfinite(v) for v in values):
        raise ItemPayloadError("Inference returned non-finite embedding values")
    if dimensions and len(values) != dimensions:
        raise ItemPayloadError(
            f"Embedding dimension mismatch: expected {dimensions}, got {len(values)}"
        )
    return values


class HttpInferenceClient(InferenceClient):
    """
    Client for the inference service `/v1/embeddings` endpoint.

    One httpx.Client is shared by all worker threads; httpx clients are
    thread-safe and pooling keeps per-item latency down.
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout_s: Optional[float] = None,
        dimensions: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.INFERENCE_BASE_URL).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.INFERENCE_API_KEY
        self.timeout_s = timeout_s or settings.INFERENCE_TIMEOUT_SECONDS
        self.dimensions = (
            dimensions if dimensions is not None else settings.EMBEDDING_DIMENSIONS
        )
        self._transport = transport
        self._client: Optional[httpx.Client] = None
        self._lock = threading.Lock()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = (self._api_key or "").strip()
        if token:
            if not token.lower().startswith("bearer "):
                token = f"Bearer {token}"
            headers["Authorization"] = token
        return headers

    def _get_client(self) -> httpx.Client:
        with self._lock:
            if self._client is None:
                self._client = httpx.Client(
                    base_url=self.base_url,
                    timeout=self.timeout_s,
                    headers=self._headers(),
                    transport=self._transport,
                )
            return self._client

    def compute(self, payload: Dict[str, Any], model: str) -> InferenceResult:
        client = self._get_client()
        resp = client.post("/v1/embeddings", json={"model": model, "input": payload})
        if resp.status_code == 404 and _is_model_missing(resp):
            raise ModelUnavailableError(f"Embedding model not available: {model}")
        resp.raise_for_status()
        body = resp.json()
        vector = validate_vector(body.get("embedding"), dimensions=self.dimensions)
        scores = {
            str(k): float(v)
            for k, v in (body.get("scores") or {}).items()
            if isinstance(v, (int, float))
        }
        return InferenceResult(
            vector=vector,
            scores=scores,
            tokens_used=int((body.get("usage") or {}).get("total_tokens") or 0),
        )

    def health(self) -> Dict[str, Any]:
        resp = self._get_client().get("/health")
        resp.raise_for_status()
        return resp.json()

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None


def _is_model_missing(resp: httpx.Response) -> bool:
    try:
        body = resp.json()
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    return str(body.get("code") or "").lower() == "model_not_found"
