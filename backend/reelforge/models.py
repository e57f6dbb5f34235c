from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def _uuid() -> str:
    return str(uuid.uuid4())


class Platform(str, Enum):
    instagram = "instagram"
    tiktok = "tiktok"


class VideoStatus(str, Enum):
    pending = "PENDING"
    fetching = "FETCHING"
    ready = "READY"
    failed = "FAILED"


class AnalysisStatus(str, Enum):
    unanalyzed = "UNANALYZED"
    analyzing = "ANALYZING"
    analyzed = "ANALYZED"
    failed = "FAILED"


class ExtractionStatus(str, Enum):
    extracting = "EXTRACTING"
    completed = "COMPLETED"
    failed = "FAILED"
    rejected = "REJECTED"


class RenderStatus(str, Enum):
    pending = "PENDING"
    processing = "PROCESSING"
    done = "DONE"
    failed = "FAILED"


class PublishStatus(str, Enum):
    pending = "PENDING"
    uploading = "UPLOADING"
    published = "PUBLISHED"
    failed = "FAILED"


class ProjectStatus(str, Enum):
    draft = "draft"
    ready = "ready"
    done = "done"


class CollectedVideo(Base):
    __tablename__ = "collected_videos"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True, index=True)
    source_url: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=VideoStatus.pending.value, default=VideoStatus.pending.value
    )
    video_key: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    tags: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    analysis_status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=AnalysisStatus.unanalyzed.value,
        default=AnalysisStatus.unanalyzed.value,
    )
    analysis_result: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    analysis_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class Template(Base):
    __tablename__ = "templates"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    schema: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    extraction_status: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    extraction_quality: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    extraction_error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    extraction_error: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    is_published: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false(), default=False)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    extracted_from_video_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("collected_videos.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    template_id: Mapped[str] = mapped_column(sa.ForeignKey("templates.id", ondelete="RESTRICT"), nullable=False)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=ProjectStatus.draft.value, default=ProjectStatus.draft.value
    )
    slot_fills: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    music_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    template: Mapped[Template] = relationship()
    renders: Mapped[list["Render"]] = relationship(back_populates="project", passive_deletes=True)


ACTIVE_RENDER_STATUSES = (RenderStatus.pending.value, RenderStatus.processing.value)
_active_render_clause = sa.text("status IN ('PENDING', 'PROCESSING')")


class Render(Base):
    __tablename__ = "renders"
    __table_args__ = (
        # at most one PENDING/PROCESSING render per project
        sa.Index(
            "uq_renders_active_project",
            "project_id",
            unique=True,
            postgresql_where=_active_render_clause,
            sqlite_where=_active_render_clause,
        ),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=RenderStatus.pending.value, default=RenderStatus.pending.value
    )
    job_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    minio_key: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    output_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(sa.BigInteger(), nullable=True)
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    project: Mapped[Project] = relationship(back_populates="renders")


class SocialAccount(Base):
    __tablename__ = "social_accounts"
    __table_args__ = (
        sa.UniqueConstraint("platform", "platform_user_id", name="uq_social_accounts_platform_user"),
    )

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    platform_user_id: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    handle: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    encrypted_access_token: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    encrypted_refresh_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.true(), default=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )


class PublishLog(Base):
    __tablename__ = "publish_logs"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True, default=_uuid)
    project_id: Mapped[str] = mapped_column(sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    render_id: Mapped[str] = mapped_column(sa.ForeignKey("renders.id", ondelete="CASCADE"), nullable=False)
    social_account_id: Mapped[str] = mapped_column(
        sa.ForeignKey("social_accounts.id", ondelete="CASCADE"), nullable=False
    )
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, server_default=PublishStatus.pending.value, default=PublishStatus.pending.value
    )
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    job_id: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    external_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_code: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
