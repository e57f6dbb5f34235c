"""
Analysis worker: keyframes -> thumbnails -> vision model -> analysis document.

Per-frame failures are tolerated; the job fails only when no frame at all
could be analysed.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.ffmpeg import FFmpegTools, ProbeInfo
from reelforge.integrations.llm_provider import LLMProvider, get_llm_provider
from reelforge.integrations.storage import StorageService, analysis_frame_key, get_storage
from reelforge.models import AnalysisStatus, CollectedVideo, VideoStatus
from reelforge.schemas import AnalysisJob, VideoAnalysis, VideoScene
from reelforge.settings import get_settings
from reelforge.services.error_classifier import classify
from reelforge.services.errors import AnalysisError
from reelforge.services.outcome import JobOutcome, RetryableFailure, Success, TerminalFailure, failure_from_error
from reelforge.services.state_machine import ANALYSIS, transition

logger = logging.getLogger(__name__)

BACKGROUND_TYPES = {"image", "video", "solid", "gradient", "unknown"}
FONT_SIZES = {"small", "medium", "large", "extra_large"}
FONT_WEIGHTS = {"normal", "bold", "extra_bold"}
ALIGNMENTS = {"left", "center", "right"}

FRAME_PROMPT = """You are an expert video template designer and visual content analyzer.
Analyze this keyframe from a 9:16 short-form video (Instagram Reel or TikTok).

Frame number: {frame_number}
Timestamp: {timestamp}s
Video duration: {duration}s

Describe the background, every text overlay (transcribed exactly, with position
and style), the 3-5 dominant colors, and any animation or transition effects.

Return ONLY a valid JSON object with these fields:
{{
  "backgroundType": "image" | "video" | "solid" | "gradient" | "unknown",
  "dominantColors": ["#RRGGBB", ...],
  "brightness": 0-100,
  "contrast": 0-100,
  "detectedText": [{{"text": "...", "position": {{"x": 0-1, "y": 0-1}}, "fontSize": "small"|"medium"|"large"|"extra_large", "fontWeight": "normal"|"bold"|"extra_bold", "color": "#RRGGBB", "alignment": "left"|"center"|"right", "confidence": 0-1}}],
  "animationCues": ["fade_in", "slide_left", ...],
  "confidenceScore": 0-1
}}"""


def _clamp(value: Any, lo: float, hi: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return min(hi, max(lo, number))


def _pick(value: Any, allowed: set[str], default: str) -> str:
    return value if value in allowed else default


def normalize_frame_analysis(data: dict[str, Any]) -> dict[str, Any]:
    """Clamp and whitelist a raw vision-model answer into VideoScene fields."""
    texts = []
    for item in data.get("detectedText") or []:
        if not isinstance(item, dict):
            continue
        position = item.get("position") or {}
        texts.append({
            "text": str(item.get("text") or ""),
            "position": {
                "x": _clamp(position.get("x"), 0, 1, 0),
                "y": _clamp(position.get("y"), 0, 1, 0),
            },
            "fontSize": _pick(item.get("fontSize"), FONT_SIZES, "medium"),
            "fontWeight": _pick(item.get("fontWeight"), FONT_WEIGHTS, "normal"),
            "color": str(item.get("color") or "#FFFFFF"),
            "backgroundColor": item.get("backgroundColor"),
            "alignment": _pick(item.get("alignment"), ALIGNMENTS, "center"),
            "confidence": _clamp(item.get("confidence"), 0, 1, 0.8),
        })

    return {
        "backgroundType": _pick(data.get("backgroundType"), BACKGROUND_TYPES, "unknown"),
        "dominantColors": [str(c) for c in (data.get("dominantColors") or [])][:5],
        "brightness": _clamp(data.get("brightness"), 0, 100, 50),
        "contrast": _clamp(data.get("contrast"), 0, 100, 50),
        "detectedText": texts,
        "animationCues": [str(c) for c in (data.get("animationCues") or [])],
        "confidenceScore": _clamp(data.get("confidenceScore"), 0, 1, 0.7),
    }


class FrameAnalyzer:
    """Thumbnail upload plus vision call for one frame, with bounded retries."""

    def __init__(
        self,
        *,
        storage: StorageService,
        ffmpeg: FFmpegTools,
        llm: LLMProvider,
        retries: int,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.storage = storage
        self.ffmpeg = ffmpeg
        self.llm = llm
        self.retries = max(1, retries)
        self.sleep = sleep

    async def analyze(
        self,
        video_id: str,
        index: int,
        frame: Path,
        probe: ProbeInfo,
        frame_count: int,
    ) -> VideoScene:
        thumb = await self.ffmpeg.thumbnail(frame, frame.with_name(f"thumb-{index:04d}.jpg"))
        image = thumb.read_bytes()
        key = analysis_frame_key(video_id, index)
        await self.storage.upload_bytes(key, image, "image/jpeg")

        frame_number = index * int(probe.fps)
        timestamp = index * probe.duration / frame_count
        prompt = FRAME_PROMPT.format(
            frame_number=frame_number,
            timestamp=round(timestamp, 2),
            duration=probe.duration,
        )

        last_error: Exception | None = None
        for attempt in range(1, self.retries + 1):
            try:
                raw = await self.llm.complete_json(prompt, image_jpeg=image, temperature=0.3, max_tokens=1000)
                fields = normalize_frame_analysis(raw)
                return VideoScene.model_validate({
                    "sceneIndex": index,
                    "frameNumber": frame_number,
                    "timestamp": round(timestamp, 2),
                    "durationEstimate": round(probe.duration / frame_count, 2),
                    "frameUrl": key,
                    **fields,
                })
            except Exception as exc:
                last_error = exc
                logger.warning(
                    f"[analysis] video {video_id} frame {index}: attempt {attempt}/{self.retries} failed: {exc}"
                )
                if attempt < self.retries:
                    await self.sleep(1.0 * attempt)

        raise AnalysisError(
            "VIDEO_ANALYSIS_FAILED",
            f"Failed to analyze frame {index}: {last_error}",
            retriable=classify(last_error).retriable if last_error else False,
        )


async def mark_analysis_failed(session: AsyncSession, video_id: str, code: str, message: str) -> bool:
    return await transition(
        session, ANALYSIS, video_id,
        to=AnalysisStatus.failed.value,
        analysis_error=f"{code}: {message}",
    )


async def process_analysis_job(
    session: AsyncSession,
    job: AnalysisJob,
    *,
    storage: StorageService | None = None,
    ffmpeg: FFmpegTools | None = None,
    llm: LLMProvider | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    work_dir: Path | None = None,
) -> JobOutcome:
    settings = get_settings()
    storage = storage or get_storage()
    ffmpeg = ffmpeg or FFmpegTools()
    llm = llm or get_llm_provider()
    work_dir = (work_dir or Path(settings.work_dir)) / "analysis" / job.video_id

    video = await session.get(CollectedVideo, job.video_id)
    if video is None:
        return TerminalFailure("VIDEO_NOT_FOUND", f"Collected video {job.video_id} not found")
    if video.status != VideoStatus.ready.value or not video.video_key:
        message = f"Video has not finished downloading (status={video.status})"
        await mark_analysis_failed(session, job.video_id, "VIDEO_NOT_READY", message)
        return TerminalFailure("VIDEO_NOT_READY", message)
    video_key = video.video_key

    if not await transition(
        session, ANALYSIS, job.video_id,
        to=AnalysisStatus.analyzing.value,
        analysis_error=None,
    ):
        return Success(result={"video_id": job.video_id}, skipped=True)

    started_at = datetime.now(timezone.utc)
    logger.info(f"[analysis] video {job.video_id}: starting")
    try:
        source = await storage.download_file(video_key, work_dir / "source.mp4")
        probe = await ffmpeg.probe(source)
        frames = await ffmpeg.extract_keyframes(source, work_dir / "frames", settings.analysis_max_frames)
        if not frames:
            raise AnalysisError(
                "FRAME_EXTRACTION_ERROR", "No keyframes could be extracted from video", retriable=False
            )

        analyzer = FrameAnalyzer(
            storage=storage, ffmpeg=ffmpeg, llm=llm,
            retries=settings.analysis_frame_retries, sleep=sleep,
        )
        scenes: list[VideoScene] = []
        last_error: Exception | None = None
        for index, frame in enumerate(frames):
            try:
                scenes.append(await analyzer.analyze(job.video_id, index, frame, probe, len(frames)))
            except Exception as exc:
                last_error = exc
                logger.error(f"[analysis] video {job.video_id}: frame {index} skipped: {exc}")

        if not scenes:
            raise AnalysisError(
                "VIDEO_ANALYSIS_FAILED",
                f"Failed to analyze any of {len(frames)} frames: {last_error}",
                retriable=classify(last_error).retriable if last_error else False,
            )

        analysis = VideoAnalysis(
            video_id=job.video_id,
            duration_seconds=round(probe.duration, 2),
            fps=probe.fps,
            resolution={"width": probe.width, "height": probe.height},
            scene_count=len(scenes),
            analysis_started_at=started_at,
            analysis_completed_at=datetime.now(timezone.utc),
            ffmpeg_version=await ffmpeg.version(),
            vision_model=llm.model,
            failed_frames=len(frames) - len(scenes),
            scenes=scenes,
        )
    except Exception as exc:
        failure = failure_from_error(exc)
        if isinstance(failure, RetryableFailure):
            logger.warning(f"[analysis] video {job.video_id}: retriable {failure.code}: {failure.message}")
            return failure
        logger.error(f"[analysis] video {job.video_id}: {failure.code}: {failure.message}")
        await mark_analysis_failed(session, job.video_id, failure.code, failure.message)
        return failure
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    if not await transition(
        session, ANALYSIS, job.video_id,
        to=AnalysisStatus.analyzed.value,
        analysis_result=analysis.to_doc(),
        analysis_error=None,
    ):
        return TerminalFailure("STATE_CONFLICT", "Analysis left ANALYZING while frames were processed")

    logger.info(
        f"[analysis] video {job.video_id}: ANALYZED "
        f"({len(analysis.scenes)} scenes, {analysis.failed_frames} frames failed)"
    )
    return Success(result={"video_id": job.video_id, "scene_count": analysis.scene_count})
