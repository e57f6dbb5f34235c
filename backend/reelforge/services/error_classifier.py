"""
Error classification: error -> (retriable, code).

Non-retriable: content permanence (private / deleted / invalid URL),
authorization (401/403), malformed requests (400 / validation).
Retriable: rate limiting (429), transport errors (refused / reset / timeout),
upstream 5xx. Anything unrecognised is non-retriable so an unknown failure
mode never loops through the queue forever.
"""
from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass

import httpx

from reelforge.services.errors import PipelineError


@dataclass(frozen=True)
class Classification:
    retriable: bool
    code: str


# Codes whose verdict is fixed regardless of how the error was produced
RETRIABLE_CODES = frozenset({
    "RATE_LIMITED",
    "NETWORK_ERROR",
    "TIMEOUT",
    "UPSTREAM_ERROR",
    "REMOTION_CLI_FAILED",
    "STORAGE_ERROR",
})

NON_RETRIABLE_CODES = frozenset({
    "PRIVATE_VIDEO",
    "DELETED_VIDEO",
    "INVALID_URL",
    "UNAUTHORIZED",
    "FORBIDDEN",
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "BAD_REQUEST",
    "TOKEN_EXPIRED",
    "ACCOUNT_NOT_FOUND",
    "ACCOUNT_INACTIVE",
    "RENDER_NOT_READY",
    "SCHEMA_PARSE_ERROR",
    "SCHEMA_VALIDATION_ERROR",
    "ANALYSIS_NOT_AVAILABLE",
    "RENDER_TIMEOUT",
    "COMPONENT_NOT_FOUND",
    "INVALID_PROPS",
    "VIDEO_PROCESSING_ERROR",
    "VIDEO_PROCESSING_TIMEOUT",
    "UNSUPPORTED_PLATFORM",
    "UNKNOWN_ERROR",
})

_HTTP_CODES = {
    400: Classification(False, "BAD_REQUEST"),
    401: Classification(False, "UNAUTHORIZED"),
    403: Classification(False, "FORBIDDEN"),
    404: Classification(False, "NOT_FOUND"),
    408: Classification(True, "TIMEOUT"),
    410: Classification(False, "DELETED_VIDEO"),
    422: Classification(False, "VALIDATION_ERROR"),
    429: Classification(True, "RATE_LIMITED"),
}

_STATUS_IN_TEXT = re.compile(r"\b(400|401|403|404|408|410|422|429|500|502|503|504)\b")

_TRANSIENT_MARKERS = (
    ("too many requests", "RATE_LIMITED"),
    ("rate limit", "RATE_LIMITED"),
    ("econnrefused", "NETWORK_ERROR"),
    ("econnreset", "NETWORK_ERROR"),
    ("connection refused", "NETWORK_ERROR"),
    ("connection reset", "NETWORK_ERROR"),
    ("reset by peer", "NETWORK_ERROR"),
    ("timed out", "TIMEOUT"),
    ("timeout", "TIMEOUT"),
    ("temporarily", "UPSTREAM_ERROR"),
    ("service unavailable", "UPSTREAM_ERROR"),
    ("bad gateway", "UPSTREAM_ERROR"),
)

_PERMANENT_MARKERS = (
    ("private", "PRIVATE_VIDEO"),
    ("requires authentication", "PRIVATE_VIDEO"),
    ("deleted", "DELETED_VIDEO"),
    ("removed", "DELETED_VIDEO"),
    ("not found", "DELETED_VIDEO"),
    ("invalid url", "INVALID_URL"),
    ("unsupported url", "INVALID_URL"),
    ("unauthorized", "UNAUTHORIZED"),
    ("forbidden", "FORBIDDEN"),
    ("bad request", "BAD_REQUEST"),
    ("validation", "VALIDATION_ERROR"),
)


def classify_status(status_code: int) -> Classification:
    """Verdict for an HTTP status code."""
    if status_code in _HTTP_CODES:
        return _HTTP_CODES[status_code]
    if 500 <= status_code <= 599:
        return Classification(True, "UPSTREAM_ERROR")
    if 400 <= status_code <= 499:
        return Classification(False, "BAD_REQUEST")
    return Classification(False, "UNKNOWN_ERROR")


def classify_message(message: str) -> Classification:
    """Keyword heuristics for errors that only carry text."""
    lower = message.lower()

    match = _STATUS_IN_TEXT.search(lower)
    if match:
        return classify_status(int(match.group(1)))

    for marker, code in _TRANSIENT_MARKERS:
        if marker in lower:
            return Classification(True, code)

    for marker, code in _PERMANENT_MARKERS:
        if marker in lower:
            return Classification(False, code)

    return Classification(False, "UNKNOWN_ERROR")


def classify(error: BaseException) -> Classification:
    """Classify an exception raised anywhere in a worker.

    Deterministic: the same error always yields the same verdict.
    """
    if isinstance(error, PipelineError):
        if error.retriable is not None:
            return Classification(error.retriable, error.code)
        if error.status_code is not None:
            by_status = classify_status(error.status_code)
            return Classification(by_status.retriable, error.code)
        if error.code in RETRIABLE_CODES:
            return Classification(True, error.code)
        if error.code in NON_RETRIABLE_CODES:
            return Classification(False, error.code)
        by_text = classify_message(error.message)
        return Classification(by_text.retriable, error.code)

    if isinstance(error, httpx.HTTPStatusError):
        return classify_status(error.response.status_code)

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return Classification(True, "TIMEOUT")

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return Classification(True, "NETWORK_ERROR")

    return classify_message(str(error))
