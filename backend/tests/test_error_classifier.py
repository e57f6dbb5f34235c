import httpx
import pytest

from reelforge.services.error_classifier import classify, classify_message, classify_status
from reelforge.services.errors import FetchError, PipelineError, PlatformError
from reelforge.services.outcome import RetryableFailure, TerminalFailure, failure_from_error, final_message
from reelforge.services.sanitize import sanitize, sanitize_dict


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.test/resource")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"HTTP {code}", request=request, response=response)


@pytest.mark.parametrize(
    "status_code,retriable,code",
    [
        (400, False, "BAD_REQUEST"),
        (401, False, "UNAUTHORIZED"),
        (403, False, "FORBIDDEN"),
        (404, False, "NOT_FOUND"),
        (408, True, "TIMEOUT"),
        (422, False, "VALIDATION_ERROR"),
        (429, True, "RATE_LIMITED"),
        (500, True, "UPSTREAM_ERROR"),
        (503, True, "UPSTREAM_ERROR"),
        (418, False, "BAD_REQUEST"),
        (302, False, "UNKNOWN_ERROR"),
    ],
)
def test_classify_status(status_code, retriable, code):
    verdict = classify_status(status_code)
    assert verdict.retriable is retriable
    assert verdict.code == code


@pytest.mark.parametrize(
    "message,retriable,code",
    [
        ("Request failed with status 429", True, "RATE_LIMITED"),
        ("ECONNRESET while reading body", True, "NETWORK_ERROR"),
        ("connect ECONNREFUSED 10.0.0.1:443", True, "NETWORK_ERROR"),
        ("operation timed out", True, "TIMEOUT"),
        ("Service Unavailable", True, "UPSTREAM_ERROR"),
        ("This video is private", False, "PRIVATE_VIDEO"),
        ("Video has been removed by the uploader", False, "DELETED_VIDEO"),
        ("Unsupported URL: https://example.com", False, "INVALID_URL"),
        ("something odd happened", False, "UNKNOWN_ERROR"),
    ],
)
def test_classify_message(message, retriable, code):
    verdict = classify_message(message)
    assert verdict.retriable is retriable
    assert verdict.code == code


def test_forced_retriability_wins():
    assert classify(PipelineError("WHATEVER", "private", retriable=True)).retriable is True
    assert classify(PipelineError("RATE_LIMITED", retriable=False)).retriable is False


def test_status_code_decides_for_platform_errors_but_code_is_kept():
    transient = classify(PlatformError("CHUNK_UPLOAD_FAILED", "chunk 2/3", status_code=503))
    assert (transient.retriable, transient.code) == (True, "CHUNK_UPLOAD_FAILED")

    permanent = classify(PlatformError("CHUNK_UPLOAD_FAILED", "chunk 2/3", status_code=400))
    assert (permanent.retriable, permanent.code) == (False, "CHUNK_UPLOAD_FAILED")


def test_known_codes_have_fixed_verdicts():
    assert classify(FetchError("RATE_LIMITED")).retriable
    assert classify(PipelineError("STORAGE_ERROR")).retriable
    assert not classify(FetchError("PRIVATE_VIDEO")).retriable
    assert not classify(PipelineError("SCHEMA_PARSE_ERROR")).retriable
    assert not classify(PipelineError("VIDEO_PROCESSING_TIMEOUT")).retriable


def test_unlisted_code_falls_back_to_message_text():
    verdict = classify(PipelineError("UPLOAD_FAILED", "connection reset by peer"))
    assert (verdict.retriable, verdict.code) == (True, "UPLOAD_FAILED")


def test_transport_and_builtin_errors():
    assert classify(_status_error(502)) == classify_status(502)
    assert classify(_status_error(401)).code == "UNAUTHORIZED"
    assert classify(httpx.ReadTimeout("read timed out")).code == "TIMEOUT"
    assert classify(httpx.ConnectError("refused")).code == "NETWORK_ERROR"
    assert classify(TimeoutError()).code == "TIMEOUT"
    assert classify(ConnectionRefusedError()).code == "NETWORK_ERROR"


def test_unknown_errors_are_not_retried():
    verdict = classify(ValueError("boom"))
    assert verdict.retriable is False
    assert verdict.code == "UNKNOWN_ERROR"


@pytest.mark.parametrize(
    "error",
    [
        _status_error(429),
        httpx.ConnectError("refused"),
        PlatformError("UPLOAD_FAILED", "bad gateway"),
        FetchError("DELETED_VIDEO"),
        RuntimeError("Request failed with status 503"),
    ],
)
def test_classification_is_deterministic(error):
    assert classify(error) == classify(error)


def test_failure_from_error_scrubs_credentials():
    failure = failure_from_error(
        PlatformError("TOKEN_EXPIRED", "Bearer abc.def-123 rejected", retriable=False)
    )
    assert isinstance(failure, TerminalFailure)
    assert failure.code == "TOKEN_EXPIRED"
    assert "abc.def-123" not in failure.message
    assert "Bearer ***" in failure.message

    retry = failure_from_error(httpx.ConnectError("refused"))
    assert isinstance(retry, RetryableFailure)
    assert retry.code == "NETWORK_ERROR"


def test_final_message_marks_exhaustion():
    assert final_message("RATE_LIMITED", "slow down") == "[FINAL] RATE_LIMITED: slow down"


def test_sanitize():
    assert sanitize("GET /me?access_token=abc123&x=1") == "GET /me?access_token=***&x=1"
    assert "***TOKEN***" in sanitize("token " + "a" * 48)
    assert sanitize(None) == ""
    assert sanitize_dict({"Authorization": "Bearer x", "nested": {"refresh_token": "r"}, "ok": 1}) == {
        "Authorization": "***",
        "nested": {"refresh_token": "***"},
        "ok": 1,
    }
