from __future__ import annotations

import enum
from typing import Optional

import httpx
from pydantic import ValidationError as ConfigValidationError
from sqlalchemy.exc import OperationalError


class ErrorClass(str, enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    FATAL = "fatal"


class JobFatalError(RuntimeError):
    """Non-retryable job failure (e.g., invalid configuration)."""


class JobConfigError(JobFatalError):
    """Stored job configuration does not validate for its type."""


class ModelUnavailableError(JobFatalError):
    """The requested embedding model cannot be served at all."""


class ItemPayloadError(ValueError):
    """A single item cannot be embedded (malformed payload, content gone upstream)."""


class TransientInferenceError(RuntimeError):
    """Inference temporarily unavailable; worth another attempt."""


_PERMANENT_HTTP = {400, 404, 410, 413, 422}
_FATAL_HTTP = {401, 403}


def _classify_status(status_code: int) -> ErrorClass:
    if status_code in _FATAL_HTTP:
        return ErrorClass.FATAL
    if status_code in _PERMANENT_HTTP:
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Decide how an exception raised while processing a job should be treated.

    The inference client and store raise raw errors; classification happens
    here so every caller applies the same policy. Unknown errors are treated
    as transient so a retry is attempted before the job gives up.
    """
    if isinstance(exc, JobFatalError):
        return ErrorClass.FATAL
    if isinstance(exc, ConfigValidationError):
        return ErrorClass.FATAL
    if isinstance(exc, ItemPayloadError):
        return ErrorClass.PERMANENT
    if isinstance(exc, TransientInferenceError):
        return ErrorClass.TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, OperationalError):
        return ErrorClass.TRANSIENT
    return ErrorClass.TRANSIENT


def error_code(exc: BaseException, message: Optional[str] = None) -> str:
    """Short machine-readable label used in log lines."""
    text = (message or str(exc) or "").lower()
    if isinstance(exc, (JobConfigError, ConfigValidationError)):
        return "config_invalid"
    if isinstance(exc, ModelUnavailableError):
        return "model_unavailable"
    if isinstance(exc, JobFatalError):
        return "fatal"
    if isinstance(exc, ItemPayloadError):
        return "payload_invalid"
    if isinstance(exc, httpx.HTTPStatusError):
        return f"http_{exc.response.status_code}"
    if isinstance(exc, httpx.TimeoutException) or "timeout" in text:
        return "timeout"
    if isinstance(exc, OperationalError):
        return "store_unavailable"
    return "item_failed"
