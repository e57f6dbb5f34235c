"""
Render worker: props document -> render CLI -> artifact in the blob store.

Only one render runs at a time (the Celery task holds the "render" Redis
semaphore around `process_render_job`). The working directory is removed
whatever the outcome.
"""
from __future__ import annotations

import json
import logging
import shlex
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.integrations.process import CmdResult, CmdRunner, run_cmd
from reelforge.integrations.storage import StorageService, get_storage, render_key
from reelforge.models import ProjectStatus, Render, RenderStatus
from reelforge.schemas import RenderJob
from reelforge.settings import Settings, get_settings
from reelforge.services.errors import RenderError
from reelforge.services.outcome import JobOutcome, RetryableFailure, Success, TerminalFailure, failure_from_error
from reelforge.services.state_machine import PROJECT, RENDER, transition

logger = logging.getLogger(__name__)


def build_props(job: RenderJob) -> dict[str, Any]:
    """Prop document handed to the renderer: slot id -> filled value."""
    slots: dict[str, Any] = {}
    for fill in job.slot_fills:
        slot_id = fill.get("slotId") or fill.get("slot_id")
        if slot_id:
            slots[slot_id] = fill.get("value")
    props: dict[str, Any] = {
        "duration": job.duration_seconds,
        "fps": job.fps,
        "slots": slots,
    }
    if job.music_url:
        props["musicUrl"] = job.music_url
    return props


def build_render_command(
    props_path: Path,
    output_path: Path,
    template_id: str,
    settings: Settings | None = None,
) -> list[str]:
    settings = settings or get_settings()
    return [
        *shlex.split(settings.render_command),
        "--props", str(props_path),
        "--output", str(output_path),
        "--timeout", str(settings.render_cli_timeout_sec),
        "--disable-logging",
        settings.render_entry_point,
        f"TemplateRenderer-{template_id}",
    ]


def classify_render_failure(result: CmdResult) -> RenderError:
    """Map a failed CLI run to a coded error.

    Timeouts, missing components and bad props mean the render definition is
    broken, so those are terminal; anything else is a retriable CLI failure.
    """
    text = result.output
    lower = text.lower()
    tail = text[-2000:] or f"exit code {result.returncode}"

    if result.timed_out or "timeout" in lower:
        return RenderError("RENDER_TIMEOUT", f"Render timed out: {tail}", retriable=False)
    if "component" in lower or "not found" in lower:
        return RenderError("COMPONENT_NOT_FOUND", f"Render component not found: {tail}", retriable=False)
    if "invalid props" in lower:
        return RenderError("INVALID_PROPS", f"Render props rejected: {tail}", retriable=False)
    return RenderError(
        "REMOTION_CLI_FAILED",
        f"Render CLI exited with code {result.returncode}: {tail}",
        retriable=True,
    )


async def mark_render_failed(session: AsyncSession, render_id: str, code: str, message: str) -> bool:
    return await transition(
        session, RENDER, render_id,
        to=RenderStatus.failed.value,
        error_code=code,
        error_message=message,
        completed_at=datetime.now(timezone.utc),
    )


async def process_render_job(
    session: AsyncSession,
    job: RenderJob,
    *,
    storage: StorageService | None = None,
    runner: CmdRunner = run_cmd,
    work_dir: Path | None = None,
) -> JobOutcome:
    settings = get_settings()
    storage = storage or get_storage()
    work_dir = (work_dir or Path(settings.work_dir)) / "render" / job.render_id

    render = await session.get(Render, job.render_id)
    if render is None:
        return TerminalFailure("RENDER_NOT_FOUND", f"Render {job.render_id} not found")

    if not await transition(
        session, RENDER, job.render_id,
        to=RenderStatus.processing.value,
        started_at=datetime.now(timezone.utc),
        error_code=None,
        error_message=None,
    ):
        return Success(result={"render_id": job.render_id}, skipped=True)

    logger.info(f"[render] render {job.render_id}: project {job.project_id}, template {job.template_id}")
    key = render_key(job.render_id)
    try:
        work_dir.mkdir(parents=True, exist_ok=True)
        props_path = work_dir / "props.json"
        output_path = work_dir / "output.mp4"
        props_path.write_text(json.dumps(build_props(job), indent=2), encoding="utf-8")

        cmd = build_render_command(props_path, output_path, job.template_id, settings)
        result = await runner(cmd, timeout=settings.render_kill_timeout_sec, cwd=settings.render_cwd)
        if result.timed_out or result.returncode != 0:
            raise classify_render_failure(result)
        if not output_path.exists():
            raise RenderError("REMOTION_CLI_FAILED", "Render CLI exited cleanly but produced no output file")

        file_size = output_path.stat().st_size
        await storage.upload_file(key, output_path, "video/mp4")
        output_url = await storage.presigned_get(key, settings.presign_expiry_sec)
    except Exception as exc:
        failure = failure_from_error(exc)
        if isinstance(failure, RetryableFailure):
            logger.warning(f"[render] render {job.render_id}: retriable {failure.code}: {failure.message}")
            return failure
        logger.error(f"[render] render {job.render_id}: {failure.code}: {failure.message}")
        await mark_render_failed(session, job.render_id, failure.code, failure.message)
        return failure
    finally:
        shutil.rmtree(work_dir, ignore_errors=True)

    if not await transition(
        session, RENDER, job.render_id,
        to=RenderStatus.done.value,
        minio_key=key,
        output_url=output_url,
        file_size_bytes=file_size,
        completed_at=datetime.now(timezone.utc),
    ):
        await storage.delete(key)
        return TerminalFailure("STATE_CONFLICT", "Render left PROCESSING while the CLI was running")

    await transition(session, PROJECT, job.project_id, to=ProjectStatus.done.value)
    logger.info(f"[render] render {job.render_id}: DONE ({file_size} bytes at {key})")
    return Success(result={"render_id": job.render_id, "minio_key": key, "file_size_bytes": file_size})
