"""
Queue dispatcher: enqueues lane jobs with their retry policy.

The enqueue helpers are what the HTTP layer calls. They validate input,
create or claim the entity row, then hand a typed payload to `dispatch`.
Input errors are raised as HTTPException with an {error, code, details}
body and are never retried.
"""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from fastapi import HTTPException, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.models import (
    AnalysisStatus,
    CollectedVideo,
    ExtractionStatus,
    Platform,
    Project,
    ProjectStatus,
    PublishLog,
    PublishStatus,
    Render,
    RenderStatus,
    SocialAccount,
    Template,
    VideoStatus,
)
from reelforge.schemas import (
    AnalysisJob,
    Backoff,
    ExtractionJob,
    IntakeJob,
    JobOptions,
    PublishJob,
    RenderJob,
)
from reelforge.settings import get_settings
from reelforge.services.analysis_service import mark_analysis_failed
from reelforge.services.extraction_service import mark_extraction_failed
from reelforge.services.intake_service import mark_video_failed
from reelforge.services.publish_service import mark_publish_failed
from reelforge.services.render_service import mark_render_failed
from reelforge.services.sanitize import sanitize
from reelforge.services.state_machine import ANALYSIS, transition

logger = logging.getLogger(__name__)

DISPATCH_FAILED = "DISPATCH_FAILED"

MarkFailed = Callable[[AsyncSession, str, str, str], Awaitable[bool]]


class Lane(str, Enum):
    intake = "intake"
    analysis = "analysis"
    extraction = "extraction"
    render = "render"
    publish = "publish"


LANE_TASKS = {
    Lane.intake: "reelforge.intake",
    Lane.analysis: "reelforge.analysis",
    Lane.extraction: "reelforge.extraction",
    Lane.render: "reelforge.render",
    Lane.publish: "reelforge.publish",
}

_INSTAGRAM_URL = re.compile(r"^https?://(www\.)?instagram\.com/(reel|p)/[A-Za-z0-9_-]+/?$")
_TIKTOK_URL = re.compile(r"^https?://(www\.|m\.)?tiktok\.com/@[A-Za-z0-9_.-]+/video/\d+/?$")
_TIKTOK_SHORT_URL = re.compile(r"^https?://(vm|vt)\.tiktok\.com/[A-Za-z0-9_-]+/?$")


def detect_platform(url: str) -> Platform | None:
    if _INSTAGRAM_URL.match(url):
        return Platform.instagram
    if _TIKTOK_URL.match(url) or _TIKTOK_SHORT_URL.match(url):
        return Platform.tiktok
    return None


def default_options(lane: Lane) -> JobOptions:
    """Per-lane retry policy from settings."""
    settings = get_settings()
    attempts = getattr(settings, f"{lane.value}_attempts")
    backoff_ms = getattr(settings, f"{lane.value}_backoff_ms")
    return JobOptions(attempts=attempts, backoff=Backoff(initial_delay_ms=backoff_ms))


def _http_error(status_code: int, code: str, message: str, **details: Any) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error": message, "code": code, "details": details},
    )


def dispatch(lane: Lane, payload: BaseModel, options: JobOptions | None = None) -> str:
    """Send one job to its lane queue; returns the Celery task id."""
    from reelforge.worker.celery_app import celery_app

    options = options or default_options(lane)
    countdown = options.delay_ms / 1000 if options.delay_ms else None
    result = celery_app.send_task(
        LANE_TASKS[lane],
        kwargs={
            "payload": payload.model_dump(mode="json"),
            "options": options.model_dump(mode="json"),
        },
        queue=lane.value,
        countdown=countdown,
    )
    logger.info(
        f"[dispatch] {lane.value} job {result.id} queued "
        f"(attempts={options.attempts}, backoff={options.backoff.initial_delay_ms}ms, delay={options.delay_ms})"
    )
    return result.id


async def _dispatch_or_fail(
    session: AsyncSession,
    lane: Lane,
    payload: BaseModel,
    entity_ids: list[str],
    mark_failed: MarkFailed,
    options: JobOptions | None = None,
) -> str:
    """Dispatch a job whose rows are already committed.

    If the broker send raises, every row in `entity_ids` is moved to
    FAILED with DISPATCH_FAILED so it does not sit in its queued state
    with no job behind it, and the caller gets a 503.
    """
    try:
        return dispatch(lane, payload, options)
    except Exception as exc:
        message = sanitize(f"{type(exc).__name__}: {exc}")
        logger.error(f"[dispatch] {lane.value} send failed for {entity_ids}: {message}")
        for entity_id in entity_ids:
            await mark_failed(session, entity_id, DISPATCH_FAILED, message)
        raise _http_error(
            status.HTTP_503_SERVICE_UNAVAILABLE, DISPATCH_FAILED,
            "Job queue unavailable", lane=lane.value, failed_ids=entity_ids,
        ) from exc


# ── Enqueue helpers ──────────────────────────────────────────

async def enqueue_intake(session: AsyncSession, urls: list[str], *, user_id: str | None = None) -> dict:
    platforms: list[tuple[str, Platform]] = []
    for url in urls:
        platform = detect_platform(url)
        if platform is None:
            raise _http_error(status.HTTP_400_BAD_REQUEST, "INVALID_URL", "Invalid or unsupported URL", url=url)
        platforms.append((url, platform))

    videos = [
        CollectedVideo(source_url=url, platform=platform.value, status=VideoStatus.pending.value, user_id=user_id)
        for url, platform in platforms
    ]
    session.add_all(videos)
    await session.commit()

    job_ids = []
    for index, (video, (url, platform)) in enumerate(zip(videos, platforms)):
        job = IntakeJob(video_id=video.id, source_url=url, platform=platform)
        # a broker failure also fails the rows not yet sent
        undispatched = [v.id for v in videos[index:]]
        job_ids.append(await _dispatch_or_fail(session, Lane.intake, job, undispatched, mark_video_failed))
    return {
        "collected_video_ids": [v.id for v in videos],
        "job_ids": job_ids,
        "message": "Videos queued for collection",
    }


async def enqueue_analysis(session: AsyncSession, video_id: str) -> dict:
    video = await session.get(CollectedVideo, video_id)
    if video is None:
        raise _http_error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Collected video not found", video_id=video_id)
    if video.status != VideoStatus.ready.value:
        raise _http_error(
            status.HTTP_409_CONFLICT, "VIDEO_NOT_READY",
            "Video must be READY before analysis", status=video.status,
        )
    if video.analysis_status == AnalysisStatus.analyzing.value:
        raise _http_error(status.HTTP_409_CONFLICT, "ALREADY_ANALYZING", "Analysis already in progress")

    # claim ANALYZING in the same statement that re-checks READY
    claimed = await transition(
        session, ANALYSIS, video_id,
        to=AnalysisStatus.analyzing.value,
        operator=True,
        where=(CollectedVideo.status == VideoStatus.ready.value,),
        analysis_error=None,
    )
    if not claimed:
        raise _http_error(status.HTTP_409_CONFLICT, "ALREADY_ANALYZING", "Analysis already in progress")

    job_id = await _dispatch_or_fail(
        session, Lane.analysis, AnalysisJob(video_id=video_id), [video_id], mark_analysis_failed,
    )
    return {"video_id": video_id, "job_id": job_id, "analysis_status": AnalysisStatus.analyzing.value}


async def enqueue_extraction(
    session: AsyncSession,
    video_id: str,
    auto_seed_threshold: float | None = None,
    *,
    name: str | None = None,
) -> dict:
    video = await session.get(CollectedVideo, video_id)
    if video is None:
        raise _http_error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Collected video not found", video_id=video_id)
    if video.analysis_status != AnalysisStatus.analyzed.value:
        raise _http_error(
            status.HTTP_409_CONFLICT, "ANALYSIS_NOT_AVAILABLE",
            "Video must be analyzed before extraction", analysis_status=video.analysis_status,
        )

    template = Template(
        name=name or (video.title or f"Extracted from {video.platform}")[:200],
        extraction_status=ExtractionStatus.extracting.value,
        extracted_from_video_id=video_id,
    )
    session.add(template)
    await session.commit()

    job = ExtractionJob(template_id=template.id, video_id=video_id, auto_seed_threshold=auto_seed_threshold)
    job_id = await _dispatch_or_fail(session, Lane.extraction, job, [template.id], mark_extraction_failed)
    return {"template_id": template.id, "job_id": job_id, "extraction_status": template.extraction_status}


async def trigger_render(session: AsyncSession, project_id: str) -> Render:
    project = await session.get(Project, project_id)
    if project is None:
        raise _http_error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Project not found", project_id=project_id)
    if project.status != ProjectStatus.ready.value:
        raise _http_error(
            status.HTTP_409_CONFLICT, "PROJECT_NOT_READY",
            f"Project must be in 'ready' status to render. Current status: {project.status}",
            status=project.status,
        )
    template = await session.get(Template, project.template_id)
    if template is None:
        raise _http_error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Template not found", template_id=project.template_id)

    render = Render(project_id=project.id, user_id=project.user_id, status=RenderStatus.pending.value)
    session.add(render)
    try:
        await session.commit()
    except IntegrityError:
        # uq_renders_active_project: one PENDING/PROCESSING render per project
        await session.rollback()
        active = (await session.execute(
            select(Render.id, Render.status)
            .where(Render.project_id == project_id, Render.status.in_(
                (RenderStatus.pending.value, RenderStatus.processing.value)
            ))
        )).first()
        raise _http_error(
            status.HTTP_409_CONFLICT, "ALREADY_RENDERING",
            "Project already has an active render in progress",
            active_render_id=active.id if active else None,
            active_render_status=active.status if active else None,
        )

    job = RenderJob(
        render_id=render.id,
        project_id=project.id,
        template_id=project.template_id,
        slot_fills=project.slot_fills or [],
        music_url=project.music_url,
        duration_seconds=template.duration_seconds or 15.0,
        fps=get_settings().render_default_fps,
    )
    render.job_id = await _dispatch_or_fail(session, Lane.render, job, [render.id], mark_render_failed)
    session.add(render)
    await session.commit()
    return render


async def enqueue_publish(
    session: AsyncSession,
    project_id: str,
    social_account_id: str,
    caption: str | None = None,
    scheduled_at: datetime | None = None,
) -> PublishLog:
    now = datetime.now(timezone.utc)
    if scheduled_at is not None:
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        if scheduled_at <= now:
            raise _http_error(
                status.HTTP_400_BAD_REQUEST, "SCHEDULE_IN_PAST",
                "Scheduled time must be in future", scheduled_at=scheduled_at.isoformat(),
            )

    project = await session.get(Project, project_id)
    if project is None:
        raise _http_error(status.HTTP_404_NOT_FOUND, "NOT_FOUND", "Project not found", project_id=project_id)

    render = (await session.execute(
        select(Render)
        .where(Render.project_id == project_id, Render.status == RenderStatus.done.value)
        .order_by(Render.completed_at.desc())
        .limit(1)
    )).scalar_one_or_none()
    if render is None or not render.minio_key:
        raise _http_error(status.HTTP_409_CONFLICT, "NO_DONE_RENDER", "Project render not complete")

    account = await session.get(SocialAccount, social_account_id)
    if account is None or not account.is_active or account.user_id != project.user_id:
        raise _http_error(
            status.HTTP_409_CONFLICT, "NO_ACCOUNT",
            "No connected account for platform", social_account_id=social_account_id,
        )

    log = PublishLog(
        project_id=project.id,
        render_id=render.id,
        social_account_id=account.id,
        platform=account.platform,
        status=PublishStatus.pending.value,
        caption=caption,
        scheduled_at=scheduled_at,
    )
    session.add(log)
    await session.commit()

    options = default_options(Lane.publish)
    if scheduled_at is not None:
        options.delay_ms = max(0, int((scheduled_at - now).total_seconds() * 1000))

    job = PublishJob(
        publish_log_id=log.id,
        platform=Platform(account.platform),
        render_id=render.id,
        social_account_id=account.id,
    )
    log.job_id = await _dispatch_or_fail(session, Lane.publish, job, [log.id], mark_publish_failed, options)
    session.add(log)
    await session.commit()
    return log
