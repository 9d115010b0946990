import httpx
import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import OperationalError

from newtube.embeddings.schemas.job_config import parse_job_config
from newtube.embeddings.services.job_errors import (
    ErrorClass,
    ItemPayloadError,
    JobConfigError,
    ModelUnavailableError,
    TransientInferenceError,
    classify_error,
    error_code,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://inference.local/v1/embeddings")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError("boom", request=request, response=response)


def _config_validation_error() -> PydanticValidationError:
    with pytest.raises(PydanticValidationError) as excinfo:
        parse_job_config("VIDEO_EMBEDDING", {"limit": 0})
    return excinfo.value


@pytest.mark.parametrize(
    "exc,expected",
    [
        (JobConfigError("bad"), ErrorClass.FATAL),
        (ModelUnavailableError("gone"), ErrorClass.FATAL),
        (ItemPayloadError("empty"), ErrorClass.PERMANENT),
        (TransientInferenceError("busy"), ErrorClass.TRANSIENT),
        (httpx.ConnectTimeout("slow"), ErrorClass.TRANSIENT),
        (OperationalError("select 1", {}, Exception("locked")), ErrorClass.TRANSIENT),
        (RuntimeError("unexpected"), ErrorClass.TRANSIENT),
    ],
)
def test_classify_error(exc, expected):
    assert classify_error(exc) == expected


@pytest.mark.parametrize(
    "status_code,expected",
    [
        (401, ErrorClass.FATAL),
        (403, ErrorClass.FATAL),
        (400, ErrorClass.PERMANENT),
        (422, ErrorClass.PERMANENT),
        (429, ErrorClass.TRANSIENT),
        (503, ErrorClass.TRANSIENT),
    ],
)
def test_classify_http_status(status_code, expected):
    assert classify_error(_status_error(status_code)) == expected


def test_pydantic_validation_error_is_fatal():
    exc = _config_validation_error()
    assert classify_error(exc) == ErrorClass.FATAL
    assert error_code(exc) == "config_invalid"


def test_error_codes():
    assert error_code(JobConfigError("bad")) == "config_invalid"
    assert error_code(ModelUnavailableError("gone")) == "model_unavailable"
    assert error_code(ItemPayloadError("x")) == "payload_invalid"
    assert error_code(_status_error(503)) == "http_503"
    assert error_code(RuntimeError("read timeout")) == "timeout"
    assert error_code(RuntimeError("other")) == "item_failed"
