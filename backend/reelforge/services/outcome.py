"""
Three-way job outcome returned by every worker.

    Success            : entity reached its success state
    RetryableFailure   : nothing written; the queue should re-attempt
    TerminalFailure    : entity moved to FAILED, never re-attempted

The Celery layer maps these onto retry / finish; workers never rely on the
absence of a write to signal "try again".
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from reelforge.services.error_classifier import classify
from reelforge.services.errors import PipelineError
from reelforge.services.sanitize import sanitize

FINAL_MARKER = "[FINAL]"


@dataclass
class Success:
    result: dict[str, Any] = field(default_factory=dict)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": "success", "skipped": self.skipped, **self.result}


@dataclass
class RetryableFailure:
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": "retry", "code": self.code, "message": self.message}


@dataclass
class TerminalFailure:
    code: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"outcome": "failed", "code": self.code, "message": self.message}


JobOutcome = Union[Success, RetryableFailure, TerminalFailure]


def failure_from_error(error: BaseException) -> RetryableFailure | TerminalFailure:
    """Classify `error` into the matching failure outcome (nothing persisted yet)."""
    verdict = classify(error)
    message = error.message if isinstance(error, PipelineError) else str(error)
    message = sanitize(message)[:1000] or verdict.code
    if verdict.retriable:
        return RetryableFailure(code=verdict.code, message=message)
    return TerminalFailure(code=verdict.code, message=message)


def final_message(code: str, message: str) -> str:
    """Message persisted when the queue gave up on a retriable error."""
    return f"{FINAL_MARKER} {code}: {message}"
