"""
Extraction worker: analysis document -> generated template schema -> quality score.

A schema that cannot be parsed or validated is a terminal failure; the input
analysis is fixed, so the queue never re-attempts that class of error.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.llm_provider import LLMProvider, LLMResponseError, extract_json_object, get_llm_provider
from reelforge.models import AnalysisStatus, CollectedVideo, ExtractionStatus, Template
from reelforge.schemas import ExtractionJob, ExtractionQuality, TemplateSchema, VideoAnalysis
from reelforge.services.errors import ExtractionError
from reelforge.services.outcome import JobOutcome, RetryableFailure, Success, TerminalFailure, failure_from_error
from reelforge.services.state_machine import EXTRACTION, transition

logger = logging.getLogger(__name__)

COMPONENT_REGISTRY = {
    "StaticImage": "display image at fixed position",
    "KenBurnsImage": "display image with subtle zoom/pan",
    "AnimatedText": "render text with fade-in animation",
    "TypewriterText": "render text with typewriter effect",
    "GrainOverlay": "add film grain texture",
    "FadeTransition": "fade between scenes",
}

SCHEMA_EXAMPLE = """{
  "version": "1.0",
  "slots": [
    {
      "id": "slot-id",
      "type": "image|text|video|audio",
      "label": "Display Name",
      "required": true,
      "placeholder": "optional",
      "constraints": {"maxLength": 100, "minWidth": 1080, "minHeight": 1920, "accept": ["image/jpeg"]}
    }
  ],
  "scenes": [
    {
      "id": "scene-1",
      "durationSeconds": 5,
      "components": [
        {
          "componentId": "StaticImage",
          "zIndex": 0,
          "slotBindings": {"image": "slot-id"},
          "props": {"position": {"x": 0, "y": 0}, "scale": 1, "opacity": 1}
        }
      ]
    }
  ],
  "transitions": ["fade"],
  "defaultMusic": "optional-track-id",
  "audioTags": ["upbeat", "energetic"]
}"""

# penalty per triggered quality check
PENALTY_SCENE_COUNT = 0.1
PENALTY_NO_SLOTS = 0.3
PENALTY_NO_TEXT_SLOTS = 0.15
PENALTY_NO_IMAGE_SLOTS = 0.15
PENALTY_LOW_CONFIDENCE = 0.1
PENALTY_NO_TRANSITIONS = 0.05


def build_extraction_prompt(analysis: VideoAnalysis) -> str:
    registry = "\n".join(f"- {name}: {desc}" for name, desc in COMPONENT_REGISTRY.items())
    return (
        "You are a template designer. I have analyzed a short-form video and extracted "
        "scenes with visual information.\n\n"
        f"Video Analysis:\n{json.dumps(analysis.to_doc(), indent=2)}\n\n"
        "Based on this analysis, generate a template schema that recreates this video's visual design.\n\n"
        "Requirements:\n"
        "1. Define scenes matching the detected scenes (one per extracted keyframe)\n"
        "2. For each scene use durationEstimate from the analysis as durationSeconds and a 1080x1920 layout\n"
        "3. Create slots for user-provided content: one image slot per image background, "
        "one text slot per detected text overlay\n"
        "4. Use detectedText to name slots and animationCues to choose transitions\n"
        "5. Reference components from the registry by ID\n\n"
        f"Component Registry:\n{registry}\n\n"
        f"TemplateSchema structure:\n{SCHEMA_EXAMPLE}\n\n"
        "Return ONLY a valid TemplateSchema JSON object (no markdown, no explanation)."
    )


def parse_template_schema(raw: str) -> TemplateSchema:
    try:
        data = extract_json_object(raw)
    except LLMResponseError as exc:
        raise ExtractionError(
            "SCHEMA_PARSE_ERROR",
            "Failed to parse generated schema from model response",
            retriable=False,
            details={"response": raw[:500]},
        ) from exc
    try:
        return TemplateSchema.model_validate(data)
    except ValidationError as exc:
        errors = [f"{'/'.join(str(p) for p in err['loc'])} {err['msg']}" for err in exc.errors()]
        raise ExtractionError(
            "SCHEMA_VALIDATION_ERROR",
            "Generated schema does not match TemplateSchema",
            retriable=False,
            details={"errors": errors[:20]},
        ) from exc


def compute_quality(analysis: VideoAnalysis, schema: TemplateSchema) -> ExtractionQuality:
    issues: list[str] = []
    score = 1.0

    if len(schema.scenes) != analysis.scene_count:
        issues.append(f"Expected {analysis.scene_count} scenes, got {len(schema.scenes)}")
        score -= PENALTY_SCENE_COUNT

    if not schema.slots:
        issues.append("No content slots generated")
        score -= PENALTY_NO_SLOTS

    text_slots = sum(1 for slot in schema.slots if slot.type == "text")
    detected_text = sum(len(scene.detected_text) for scene in analysis.scenes)
    if text_slots == 0 and detected_text > 0:
        issues.append(f"No text slots generated despite {detected_text} text overlays detected")
        score -= PENALTY_NO_TEXT_SLOTS

    image_slots = sum(1 for slot in schema.slots if slot.type == "image")
    image_scenes = sum(1 for scene in analysis.scenes if scene.background_type == "image")
    if image_slots == 0 and image_scenes > 0:
        issues.append(f"No image slots generated despite {image_scenes} image backgrounds detected")
        score -= PENALTY_NO_IMAGE_SLOTS

    if analysis.scenes:
        avg_confidence = sum(scene.confidence_score for scene in analysis.scenes) / len(analysis.scenes)
        if avg_confidence < 0.5:
            issues.append(f"Low analysis confidence: {avg_confidence * 100:.0f}%")
            score -= PENALTY_LOW_CONFIDENCE

    animated = sum(1 for scene in analysis.scenes if scene.animation_cues)
    if animated > 0 and not schema.transitions:
        issues.append("Animation cues detected but no transitions specified")
        score -= PENALTY_NO_TRANSITIONS

    score = max(0.0, min(1.0, score))
    return ExtractionQuality(score=round(score, 2), issues=issues)


def passes_auto_seed_gate(score: float, threshold: float | None) -> bool:
    """Inclusive threshold; a missing or out-of-range threshold never passes."""
    if threshold is None or not 0 <= threshold <= 1:
        return False
    return score >= threshold


async def mark_extraction_failed(session: AsyncSession, template_id: str, code: str, message: str) -> bool:
    return await transition(
        session, EXTRACTION, template_id,
        to=ExtractionStatus.failed.value,
        extraction_error_code=code,
        extraction_error=message,
    )


async def _load_analysis(session: AsyncSession, video_id: str) -> VideoAnalysis:
    video = await session.get(CollectedVideo, video_id)
    if video is None:
        raise ExtractionError("VIDEO_NOT_FOUND", f"Collected video {video_id} not found", retriable=False)
    if video.analysis_status != AnalysisStatus.analyzed.value or not video.analysis_result:
        raise ExtractionError(
            "ANALYSIS_NOT_AVAILABLE",
            f"Video has no completed analysis (analysis_status={video.analysis_status})",
            retriable=False,
        )
    try:
        return VideoAnalysis.model_validate(video.analysis_result)
    except ValidationError as exc:
        raise ExtractionError("ANALYSIS_NOT_AVAILABLE", f"Stored analysis is malformed: {exc}", retriable=False) from exc


async def process_extraction_job(
    session: AsyncSession,
    job: ExtractionJob,
    *,
    llm: LLMProvider | None = None,
) -> JobOutcome:
    llm = llm or get_llm_provider()

    template = await session.get(Template, job.template_id)
    if template is None:
        return TerminalFailure("TEMPLATE_NOT_FOUND", f"Template {job.template_id} not found")

    if not await transition(
        session, EXTRACTION, job.template_id,
        to=ExtractionStatus.extracting.value,
        extraction_error_code=None,
        extraction_error=None,
    ):
        return Success(result={"template_id": job.template_id}, skipped=True)

    logger.info(f"[extraction] template {job.template_id}: extracting from video {job.video_id}")
    try:
        analysis = await _load_analysis(session, job.video_id)
        raw = await llm.complete(build_extraction_prompt(analysis), temperature=0.5, max_tokens=4000)
        schema = parse_template_schema(raw)
    except Exception as exc:
        failure = failure_from_error(exc)
        if isinstance(failure, RetryableFailure):
            logger.warning(f"[extraction] template {job.template_id}: retriable {failure.code}: {failure.message}")
            return failure
        logger.error(f"[extraction] template {job.template_id}: {failure.code}: {failure.message}")
        await mark_extraction_failed(session, job.template_id, failure.code, failure.message)
        return failure

    quality = compute_quality(analysis, schema)
    auto_seed = passes_auto_seed_gate(quality.score, job.auto_seed_threshold)

    fields = {
        "schema": schema.to_doc(),
        "duration_seconds": schema.duration_seconds,
        "extraction_quality": quality.model_dump(),
        "extraction_error_code": None,
        "extraction_error": None,
    }
    if auto_seed:
        fields["is_published"] = True
        fields["published_at"] = datetime.now(timezone.utc)

    if not await transition(
        session, EXTRACTION, job.template_id,
        to=ExtractionStatus.completed.value,
        **fields,
    ):
        return TerminalFailure("STATE_CONFLICT", "Template left EXTRACTING while the model was running")

    logger.info(
        f"[extraction] template {job.template_id}: COMPLETED score={quality.score} "
        f"issues={len(quality.issues)} auto_seeded={auto_seed}"
    )
    return Success(result={
        "template_id": job.template_id,
        "score": quality.score,
        "auto_seeded": auto_seed,
    })


# ── Operator review ──────────────────────────────────────────

async def publish_template(session: AsyncSession, template_id: str) -> bool:
    """Manually promote a COMPLETED draft. False if it is not a draft any more."""
    result = await session.execute(
        sa.update(Template)
        .where(
            Template.id == template_id,
            Template.extraction_status == ExtractionStatus.completed.value,
            Template.is_published.is_(False),
        )
        .values(is_published=True, published_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def reject_template(session: AsyncSession, template_id: str, reason: str | None = None) -> bool:
    """Operator rejection of an unpublished COMPLETED draft."""
    return await transition(
        session, EXTRACTION, template_id,
        to=ExtractionStatus.rejected.value,
        operator=True,
        where=(Template.is_published.is_(False),),
        extraction_error=reason,
    )
