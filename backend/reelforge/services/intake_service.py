"""
Intake worker: fetch a source video with yt-dlp and park it in the blob store.

PENDING -> FETCHING -> READY | FAILED. A retriable failure leaves the row in
FETCHING so the queue's next attempt re-enters the same state.
"""
from __future__ import annotations

import logging
import shutil
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.storage import StorageService, collected_video_key, get_storage
from reelforge.integrations.video_fetcher import VideoFetcher
from reelforge.models import VideoStatus
from reelforge.schemas import IntakeJob
from reelforge.settings import get_settings
from reelforge.services.outcome import JobOutcome, RetryableFailure, Success, TerminalFailure, failure_from_error
from reelforge.services.redis_semaphore import RedisRateLimiter
from reelforge.services.state_machine import VIDEO, transition

logger = logging.getLogger(__name__)

TAG_KEYWORDS = (
    "dance", "music", "challenge", "tutorial", "trending", "funny",
    "comedy", "prank", "motivation", "beauty", "fashion", "fitness",
    "cooking", "travel", "vlog", "gaming", "sports", "art", "design",
)


def extract_tags(title: str | None) -> list[str]:
    """Keywords found (case-insensitive substring) in the title, in list order."""
    if not title:
        return []
    lower = title.lower()
    return [kw for kw in TAG_KEYWORDS if kw in lower]


async def mark_video_failed(session: AsyncSession, video_id: str, code: str, message: str) -> bool:
    return await transition(
        session, VIDEO, video_id,
        to=VideoStatus.failed.value,
        error_code=code,
        error_message=message,
    )


def default_fetcher() -> VideoFetcher:
    limiter = RedisRateLimiter("ytdlp", get_settings().intake_rate_window_ms)
    return VideoFetcher(throttle=limiter.wait)


async def process_intake_job(
    session: AsyncSession,
    job: IntakeJob,
    *,
    fetcher: VideoFetcher | None = None,
    storage: StorageService | None = None,
    work_dir: Path | None = None,
) -> JobOutcome:
    fetcher = fetcher or default_fetcher()
    storage = storage or get_storage()
    work_dir = (work_dir or Path(get_settings().work_dir)) / "intake" / job.video_id

    if not await transition(
        session, VIDEO, job.video_id,
        to=VideoStatus.fetching.value,
        error_code=None,
        error_message=None,
    ):
        return Success(result={"video_id": job.video_id}, skipped=True)

    logger.info(f"[intake] video {job.video_id}: fetching {job.source_url} ({job.platform.value})")
    key = collected_video_key(job.video_id)
    try:
        local_path = work_dir / "video.mp4"
        metadata, size = await fetcher.fetch(job.source_url, local_path)
        await storage.upload_file(key, local_path, "video/mp4")
    except Exception as exc:
        failure = failure_from_error(exc)
        if isinstance(failure, RetryableFailure):
            logger.warning(f"[intake] video {job.video_id}: retriable {failure.code}: {failure.message}")
            return failure
        logger.error(f"[intake] video {job.video_id}: {failure.code}: {failure.message}")
        await mark_video_failed(session, job.video_id, failure.code, failure.message)
        return failure
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    tags = extract_tags(metadata.title)
    changed = await transition(
        session, VIDEO, job.video_id,
        to=VideoStatus.ready.value,
        video_key=key,
        title=metadata.title,
        caption=metadata.uploader,
        duration_seconds=metadata.duration,
        tags=tags,
    )
    if not changed:
        # row was failed under us; its blob would be orphaned
        await storage.delete(key)
        return TerminalFailure("STATE_CONFLICT", "Video left FETCHING while the fetch was running")

    logger.info(f"[intake] video {job.video_id}: READY ({size} bytes, tags={tags})")
    return Success(result={"video_id": job.video_id, "video_key": key, "size_bytes": size})
