"""
Domain exceptions raised by the job pipeline.

Every error carries a stable `code` that ends up in the entity's
errorCode/errorMessage columns. `retriable` may be forced by the raiser;
when left as None the error classifier decides.
"""
from __future__ import annotations

from typing import Any


class PipelineError(Exception):
    """Base class for coded pipeline failures."""

    default_code = "INTERNAL_ERROR"

    def __init__(
        self,
        code: str | None = None,
        message: str | None = None,
        *,
        retriable: bool | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.code = code or self.default_code
        self.message = message or self.code
        self.retriable = retriable
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class FetchError(PipelineError):
    """Source video could not be fetched (yt-dlp / upstream platform)."""

    default_code = "UNKNOWN_ERROR"


class AnalysisError(PipelineError):
    default_code = "VIDEO_ANALYSIS_FAILED"


class ExtractionError(PipelineError):
    default_code = "EXTRACTION_FAILED"


class RenderError(PipelineError):
    default_code = "REMOTION_CLI_FAILED"


class PlatformError(PipelineError):
    """Failure talking to a social platform API."""

    default_code = "PUBLISH_FAILED"


class StorageError(PipelineError):
    default_code = "STORAGE_ERROR"


class TerminalJobError(Exception):
    """Raised from a Celery task to stop the queue from re-attempting the job."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"[FINAL] {code}: {message}")
