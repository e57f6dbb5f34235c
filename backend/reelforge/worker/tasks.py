"""
Celery tasks, one per lane.

Each task runs its async worker in a new event loop (asyncio.run) on a
fresh engine, then maps the returned JobOutcome onto the queue:

    Success           -> task succeeds
    RetryableFailure  -> self.retry() with exponential countdown while attempts
                         remain; after the last attempt the entity is failed
                         with a [FINAL] message and TerminalJobError is raised
    TerminalFailure   -> TerminalJobError (never retried)
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import task_session_factory
from reelforge.schemas import AnalysisJob, ExtractionJob, IntakeJob, JobOptions, PublishJob, RenderJob
from reelforge.services import redis_semaphore
from reelforge.services.analysis_service import mark_analysis_failed, process_analysis_job
from reelforge.services.dispatcher import Lane, default_options
from reelforge.services.errors import TerminalJobError
from reelforge.services.extraction_service import mark_extraction_failed, process_extraction_job
from reelforge.services.intake_service import mark_video_failed, process_intake_job
from reelforge.services.outcome import (
    JobOutcome,
    RetryableFailure,
    Success,
    TerminalFailure,
    failure_from_error,
    final_message,
)
from reelforge.services.publish_service import mark_publish_failed, process_publish_job
from reelforge.services.render_service import mark_render_failed, process_render_job
from reelforge.settings import get_settings
from reelforge.worker.celery_app import celery_app

logger = logging.getLogger(__name__)

Processor = Callable[[AsyncSession], Awaitable[JobOutcome]]
FailFn = Callable[[AsyncSession, str, str, str], Awaitable[bool]]


async def _run_job(process: Processor, *, semaphore: tuple[str, int, int] | None = None) -> JobOutcome:
    """Run one worker call with a session on a fresh engine."""
    try:
        async with task_session_factory() as session_factory:
            async with session_factory() as session:
                if semaphore is None:
                    return await process(session)
                name, limit, ttl_sec = semaphore
                async with redis_semaphore.hold(name, limit, ttl_sec=ttl_sec):
                    return await process(session)
    finally:
        await redis_semaphore.reset_client()


async def _fail_entity(fail: FailFn, entity_id: str, code: str, message: str) -> None:
    async with task_session_factory() as session_factory:
        async with session_factory() as session:
            await fail(session, entity_id, code, message)


def _execute(
    task,
    lane: Lane,
    entity_id: str,
    options: dict | None,
    process: Processor,
    fail: FailFn,
    *,
    semaphore: tuple[str, int, int] | None = None,
) -> dict[str, Any]:
    opts = JobOptions.model_validate(options) if options else default_options(lane)
    attempt = task.request.retries + 1
    logger.info(
        f"[worker] {lane.value} {entity_id}: attempt {attempt}/{opts.attempts} (celery_id={task.request.id})"
    )

    try:
        outcome = asyncio.run(_run_job(process, semaphore=semaphore))
    except Exception as exc:
        # raised outside the worker's own handling (database, semaphore wait)
        outcome = failure_from_error(exc)
        logger.error(f"[worker] {lane.value} {entity_id}: unhandled {type(exc).__name__}: {exc}")
        if isinstance(outcome, TerminalFailure):
            asyncio.run(_fail_entity(fail, entity_id, outcome.code, outcome.message))

    if isinstance(outcome, Success):
        logger.info(f"[worker] {lane.value} {entity_id}: done (skipped={outcome.skipped})")
        return outcome.to_dict()

    if isinstance(outcome, TerminalFailure):
        logger.error(f"[worker] {lane.value} {entity_id}: failed {outcome.code}: {outcome.message}")
        raise TerminalJobError(outcome.code, outcome.message)

    if not isinstance(outcome, RetryableFailure):
        raise TypeError(f"{lane.value} {entity_id}: unexpected job outcome {outcome!r}")
    if attempt < opts.attempts:
        countdown = opts.retry_delay_ms(attempt) / 1000
        logger.warning(
            f"[worker] {lane.value} {entity_id}: {outcome.code}, retrying in {countdown:.1f}s "
            f"(attempt {attempt}/{opts.attempts})"
        )
        raise task.retry(countdown=countdown, max_retries=opts.attempts - 1)

    message = final_message(outcome.code, outcome.message)
    logger.error(f"[worker] {lane.value} {entity_id}: attempts exhausted, {message}")
    asyncio.run(_fail_entity(fail, entity_id, outcome.code, message))
    raise TerminalJobError(outcome.code, outcome.message)


@celery_app.task(bind=True, name="reelforge.intake", queue="intake", throws=(TerminalJobError,))
def intake_task(self, payload: dict, options: dict | None = None) -> dict:
    job = IntakeJob.model_validate(payload)
    return _execute(
        self, Lane.intake, job.video_id, options,
        lambda session: process_intake_job(session, job),
        mark_video_failed,
    )


@celery_app.task(bind=True, name="reelforge.analysis", queue="analysis", throws=(TerminalJobError,))
def analysis_task(self, payload: dict, options: dict | None = None) -> dict:
    job = AnalysisJob.model_validate(payload)
    return _execute(
        self, Lane.analysis, job.video_id, options,
        lambda session: process_analysis_job(session, job),
        mark_analysis_failed,
    )


@celery_app.task(bind=True, name="reelforge.extraction", queue="extraction", throws=(TerminalJobError,))
def extraction_task(self, payload: dict, options: dict | None = None) -> dict:
    job = ExtractionJob.model_validate(payload)
    return _execute(
        self, Lane.extraction, job.template_id, options,
        lambda session: process_extraction_job(session, job),
        mark_extraction_failed,
    )


@celery_app.task(bind=True, name="reelforge.render", queue="render", throws=(TerminalJobError,))
def render_task(self, payload: dict, options: dict | None = None) -> dict:
    """Renders are serialized process-wide through the "render" semaphore."""
    job = RenderJob.model_validate(payload)
    settings = get_settings()
    return _execute(
        self, Lane.render, job.render_id, options,
        lambda session: process_render_job(session, job),
        mark_render_failed,
        semaphore=("render", settings.render_concurrency, settings.render_semaphore_ttl_sec),
    )


@celery_app.task(bind=True, name="reelforge.publish", queue="publish", throws=(TerminalJobError,))
def publish_task(self, payload: dict, options: dict | None = None) -> dict:
    job = PublishJob.model_validate(payload)
    return _execute(
        self, Lane.publish, job.publish_log_id, options,
        lambda session: process_publish_job(session, job),
        mark_publish_failed,
    )
