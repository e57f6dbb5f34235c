from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator
from pydantic.alias_generators import to_camel

from .models import Platform


class _CamelModel(BaseModel):
    """JSON documents persisted and exchanged in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── Video analysis document ─────────────────────────────────

class Position(_CamelModel):
    x: float = Field(ge=0, le=1)
    y: float = Field(ge=0, le=1)


class DetectedTextOverlay(_CamelModel):
    text: str
    position: Position
    font_size: Literal["small", "medium", "large", "extra_large"] = "medium"
    font_weight: Literal["normal", "bold", "extra_bold"] = "normal"
    color: str = "#FFFFFF"
    background_color: str | None = None
    alignment: Literal["left", "center", "right"] = "center"
    confidence: float = Field(default=0.5, ge=0, le=1)


class VideoScene(_CamelModel):
    scene_index: int
    frame_number: int
    timestamp: float
    duration_estimate: float
    frame_url: str
    background_type: Literal["image", "video", "solid", "gradient", "unknown"] = "unknown"
    dominant_colors: list[str] = Field(default_factory=list)
    brightness: float = Field(default=50, ge=0, le=100)
    contrast: float = Field(default=50, ge=0, le=100)
    detected_text: list[DetectedTextOverlay] = Field(default_factory=list)
    animation_cues: list[str] = Field(default_factory=list)
    confidence_score: float = Field(default=0.5, ge=0, le=1)


class Resolution(_CamelModel):
    width: int
    height: int


class VideoAnalysis(_CamelModel):
    video_id: str
    duration_seconds: float
    fps: float
    resolution: Resolution
    scene_count: int
    analysis_started_at: datetime
    analysis_completed_at: datetime
    ffmpeg_version: str = "unknown"
    vision_model: str = "unknown"
    failed_frames: int = 0
    scenes: list[VideoScene]


# ── Template schema document ────────────────────────────────

class SlotConstraints(_CamelModel):
    max_length: int | None = None
    min_width: int | None = None
    min_height: int | None = None
    accept: list[str] | None = None


class ContentSlot(_CamelModel):
    id: str = Field(min_length=1)
    type: Literal["image", "text", "video", "audio"]
    label: str
    required: bool
    placeholder: str | None = None
    constraints: SlotConstraints | None = None


class SceneComponent(_CamelModel):
    component_id: str = Field(min_length=1)
    z_index: int
    slot_bindings: dict[str, str] = Field(default_factory=dict)
    props: dict[str, Any] = Field(default_factory=dict)


class Scene(_CamelModel):
    id: str = Field(min_length=1)
    duration_seconds: float = Field(gt=0)
    components: list[SceneComponent]


class TemplateSchema(_CamelModel):
    version: Literal["1.0"]
    slots: list[ContentSlot]
    scenes: list[Scene] = Field(min_length=1)
    transitions: list[str] | None = None
    default_music: str | None = None
    audio_tags: list[str] | None = None

    @property
    def duration_seconds(self) -> float:
        return sum(scene.duration_seconds for scene in self.scenes)


class ExtractionQuality(BaseModel):
    score: float = Field(ge=0, le=1)
    issues: list[str] = Field(default_factory=list)


# ── Job payloads (one per lane) ─────────────────────────────

class IntakeJob(BaseModel):
    video_id: str
    source_url: str
    platform: Platform


class AnalysisJob(BaseModel):
    video_id: str


class ExtractionJob(BaseModel):
    template_id: str
    video_id: str
    # out-of-range values disable the auto-seed gate rather than fail the job
    auto_seed_threshold: float | None = None


class RenderJob(BaseModel):
    render_id: str
    project_id: str
    template_id: str
    # [{"slotId": ..., "value": ...}, ...] as stored on the project
    slot_fills: list[dict[str, Any]] = Field(default_factory=list)
    music_url: str | None = None
    duration_seconds: float
    fps: int = 30


class PublishJob(BaseModel):
    publish_log_id: str
    platform: Platform
    render_id: str
    social_account_id: str


class Backoff(BaseModel):
    type: Literal["exponential"] = "exponential"
    initial_delay_ms: int = Field(default=0, ge=0)


class JobOptions(BaseModel):
    attempts: int = Field(default=1, ge=1)
    backoff: Backoff = Field(default_factory=Backoff)
    delay_ms: int | None = Field(default=None, ge=0)

    def retry_delay_ms(self, attempt: int) -> int:
        """Delay before re-running after failed attempt number `attempt` (1-based)."""
        return self.backoff.initial_delay_ms * (2 ** max(attempt - 1, 0))


# ── HTTP request bodies ─────────────────────────────────────

class IntakeRequest(BaseModel):
    urls: list[HttpUrl] = Field(min_length=1, max_length=50)


class ExtractRequest(_CamelModel):
    auto_seed_threshold: float | None = Field(default=None, ge=0, le=1)


class PublishRequest(_CamelModel):
    social_account_id: str
    caption: str | None = Field(default=None, max_length=2200)
    scheduled_at: datetime | None = None

    @field_validator("caption")
    @classmethod
    def strip_caption(cls, value: str | None) -> str | None:
        return value.strip() if value else value


# ── Status read models ──────────────────────────────────────

class CollectedVideoRead(BaseModel):
    id: str
    source_url: str
    platform: str
    status: str
    video_key: str | None = None
    title: str | None = None
    duration_seconds: float | None = None
    tags: list[str] | None = None
    error_code: str | None = None
    error_message: str | None = None
    analysis_status: str
    analysis_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class TemplateExtractionRead(BaseModel):
    id: str
    name: str
    extraction_status: str | None = None
    extraction_quality: ExtractionQuality | None = None
    extraction_error_code: str | None = None
    extraction_error: str | None = None
    is_published: bool
    published_at: datetime | None = None
    extracted_from_video_id: str | None = None
    schema_: dict | None = Field(default=None, alias="schema")

    class Config:
        from_attributes = True
        populate_by_name = True


class RenderRead(BaseModel):
    id: str
    project_id: str
    status: str
    job_id: str | None = None
    minio_key: str | None = None
    output_url: str | None = None
    file_size_bytes: int | None = None
    error_code: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class PublishLogRead(BaseModel):
    id: str
    project_id: str
    render_id: str
    social_account_id: str
    platform: str
    status: str
    caption: str | None = None
    job_id: str | None = None
    external_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    scheduled_at: datetime | None = None
    published_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True
