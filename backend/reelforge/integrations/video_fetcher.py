"""
Source video fetcher on top of the yt-dlp CLI.

Two calls per video: `yt-dlp -j` for metadata, then the download itself.
`fetch` runs both behind a single throttle slot, so one video costs one
rate window.
Failures are mapped to FetchError codes from yt-dlp's stderr.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from reelforge.services.error_classifier import classify_message
from reelforge.services.errors import FetchError
from reelforge.settings import get_settings
from reelforge.integrations.process import CmdRunner, run_cmd

logger = logging.getLogger(__name__)


@dataclass
class VideoMetadata:
    title: str | None = None
    duration: float | None = None
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    uploader: str | None = None
    description: str | None = None


def fetch_error_from_stderr(stderr: str, action: str) -> FetchError:
    lower = stderr.lower()
    if "private" in lower or "authentication" in lower or "login required" in lower:
        return FetchError("PRIVATE_VIDEO", "Video is private or requires authentication")
    if "unsupported url" in lower or "is not a valid url" in lower:
        return FetchError("INVALID_URL", "URL is not a supported video page")
    if "429" in lower or "too many" in lower:
        return FetchError("RATE_LIMITED", "Rate limited by source. Please try again later.")
    if "404" in lower or "not found" in lower or "removed" in lower or "deleted" in lower:
        return FetchError("DELETED_VIDEO", "Video not found or has been deleted")

    detail = stderr.strip()[-500:] or "unknown error"
    verdict = classify_message(stderr)
    if verdict.retriable:
        return FetchError(verdict.code, f"Failed to {action}: {detail}")
    return FetchError("UNKNOWN_ERROR", f"Failed to {action}: {detail}")


class VideoFetcher:
    def __init__(
        self,
        *,
        binary: str | None = None,
        runner: CmdRunner = run_cmd,
        throttle: Callable[[], Awaitable[None]] | None = None,
    ):
        self.binary = binary or get_settings().ytdlp_binary
        self.runner = runner
        self.throttle = throttle

    async def _run(self, args: list[str], action: str) -> str:
        try:
            result = await self.runner([self.binary, *args])
        except FileNotFoundError as exc:
            raise FetchError("UNKNOWN_ERROR", f"{self.binary} is not installed", retriable=False) from exc
        if result.returncode != 0:
            raise fetch_error_from_stderr(result.stderr, action)
        return result.stdout

    async def extract_metadata(self, url: str) -> VideoMetadata:
        stdout = await self._run(["-j", "--no-warnings", url], "extract metadata")
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise FetchError("UNKNOWN_ERROR", "Failed to parse yt-dlp metadata") from exc
        return VideoMetadata(
            title=data.get("title"),
            duration=data.get("duration"),
            width=data.get("width"),
            height=data.get("height"),
            fps=data.get("fps"),
            uploader=data.get("uploader"),
            description=data.get("description"),
        )

    async def download(self, url: str, dest: Path) -> int:
        dest.parent.mkdir(parents=True, exist_ok=True)
        await self._run(
            ["-o", str(dest), "-f", "best[ext=mp4]/best", "--no-warnings", "--quiet", url],
            "download video",
        )
        if not dest.exists():
            raise FetchError("UNKNOWN_ERROR", "yt-dlp reported success but produced no file")
        size = dest.stat().st_size
        logger.info(f"[intake] downloaded {url} ({size} bytes)")
        return size

    async def fetch(self, url: str, dest: Path) -> tuple[VideoMetadata, int]:
        """Metadata plus download for one video, throttled once."""
        if self.throttle is not None:
            await self.throttle()
        metadata = await self.extract_metadata(url)
        size = await self.download(url, dest)
        return metadata, size
