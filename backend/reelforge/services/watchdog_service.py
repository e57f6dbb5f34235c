"""
Watchdog service: finds rows stuck in an in-flight state and fails them.

Stuck criteria (per entity): status is the in-flight state and
updated_at < now - threshold. A worker that died mid-job (OOM, killed
container, lost broker ack) would otherwise leave the row in FETCHING /
ANALYZING / EXTRACTING / PROCESSING / UPLOADING forever.

PENDING rows are swept too: a row whose job never reached the broker
stays PENDING with nothing to pick it up. Scheduled publishes only count
once their scheduled_at is older than the threshold.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.models import AnalysisStatus, ExtractionStatus, PublishLog, PublishStatus, RenderStatus, VideoStatus
from reelforge.settings import Settings, get_settings
from reelforge.services.state_machine import ANALYSIS, EXTRACTION, PUBLISH, RENDER, VIDEO, StateMachine, transition

logger = logging.getLogger(__name__)

STUCK_CODE = "STUCK"


@dataclass(frozen=True)
class _StuckRule:
    machine: StateMachine
    in_flight: str
    threshold: Callable[[Settings], int]
    failed: str
    failure_fields: Callable[[str, datetime], dict[str, Any]]
    extra_where: Callable[[datetime], tuple] = lambda cutoff: ()


def _error_fields(message: str, now: datetime) -> dict[str, Any]:
    return {"error_code": STUCK_CODE, "error_message": message}


def _render_fields(message: str, now: datetime) -> dict[str, Any]:
    return {"error_code": STUCK_CODE, "error_message": message, "completed_at": now}


def _publish_due(cutoff: datetime) -> tuple:
    return (or_(PublishLog.scheduled_at.is_(None), PublishLog.scheduled_at < cutoff),)


RULES = (
    _StuckRule(
        VIDEO, VideoStatus.fetching.value, lambda s: s.stuck_fetching_minutes,
        VideoStatus.failed.value, _error_fields,
    ),
    _StuckRule(
        ANALYSIS, AnalysisStatus.analyzing.value, lambda s: s.stuck_analyzing_minutes,
        AnalysisStatus.failed.value, lambda msg, now: {"analysis_error": f"{STUCK_CODE}: {msg}"},
    ),
    _StuckRule(
        EXTRACTION, ExtractionStatus.extracting.value, lambda s: s.stuck_extracting_minutes,
        ExtractionStatus.failed.value,
        lambda msg, now: {"extraction_error_code": STUCK_CODE, "extraction_error": msg},
    ),
    _StuckRule(
        RENDER, RenderStatus.processing.value, lambda s: s.stuck_processing_minutes,
        RenderStatus.failed.value, _render_fields,
    ),
    _StuckRule(
        PUBLISH, PublishStatus.uploading.value, lambda s: s.stuck_uploading_minutes,
        PublishStatus.failed.value, _error_fields,
    ),
    _StuckRule(
        VIDEO, VideoStatus.pending.value, lambda s: s.stuck_pending_minutes,
        VideoStatus.failed.value, _error_fields,
    ),
    _StuckRule(
        RENDER, RenderStatus.pending.value, lambda s: s.stuck_pending_minutes,
        RenderStatus.failed.value, _render_fields,
    ),
    _StuckRule(
        PUBLISH, PublishStatus.pending.value, lambda s: s.stuck_pending_minutes,
        PublishStatus.failed.value, _error_fields, _publish_due,
    ),
)


def _aware(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


async def run_watchdog(
    session: AsyncSession, *, dry_run: bool = False, now: datetime | None = None,
) -> dict[str, Any]:
    """Find stuck rows and mark them FAILED with code STUCK.

    Returns a report dict.
    """
    settings = get_settings()
    now = now or datetime.now(timezone.utc)

    report_items: list[dict] = []
    counts: dict[str, int] = {}

    for rule in RULES:
        model = rule.machine.model
        column = getattr(model, rule.machine.column)
        minutes = rule.threshold(settings)
        cutoff = now - timedelta(minutes=minutes)
        stale = (model.updated_at < cutoff, *rule.extra_where(cutoff))

        rows = (await session.execute(
            select(model.id, model.updated_at).where(and_(column == rule.in_flight, *stale))
        )).all()
        counts[rule.machine.name] = counts.get(rule.machine.name, 0) + len(rows)

        for row_id, updated_at in rows:
            age_minutes = (now - _aware(updated_at)).total_seconds() / 60
            error_msg = (
                f"watchdog: stuck {rule.in_flight} > {minutes}m (age={age_minutes:.0f}m)"
            )
            item = {
                "entity": rule.machine.name,
                "id": row_id,
                "old_status": rule.in_flight,
                "age_minutes": round(age_minutes),
                "error_message": error_msg,
            }
            if dry_run:
                item["action"] = "would_mark_failed"
            else:
                changed = await transition(
                    session, rule.machine, row_id,
                    to=rule.failed,
                    allowed_from=(rule.in_flight,),
                    where=stale,
                    commit=False,
                    **rule.failure_fields(error_msg, now),
                )
                item["action"] = "marked_failed" if changed else "skipped"
            report_items.append(item)

    if not dry_run and report_items:
        await session.commit()

    marked = sum(1 for it in report_items if it["action"] == "marked_failed")
    logger.info(f"[watchdog] Found {len(report_items)} stuck rows, marked {marked} (dry_run={dry_run})")

    return {
        "stuck_count": len(report_items),
        "marked_count": marked,
        "stuck_by_entity": counts,
        "items": report_items,
        "dry_run": dry_run,
        "run_at": now.isoformat(),
        "settings": {
            "stuck_fetching_minutes": settings.stuck_fetching_minutes,
            "stuck_analyzing_minutes": settings.stuck_analyzing_minutes,
            "stuck_extracting_minutes": settings.stuck_extracting_minutes,
            "stuck_processing_minutes": settings.stuck_processing_minutes,
            "stuck_uploading_minutes": settings.stuck_uploading_minutes,
            "stuck_pending_minutes": settings.stuck_pending_minutes,
        },
    }


async def get_health(session: AsyncSession) -> dict[str, Any]:
    """Entity counts by status per state machine."""
    settings = get_settings()
    counts: dict[str, dict[str, int]] = {}
    machines = {rule.machine.name: rule.machine for rule in RULES}
    for machine in machines.values():
        model = machine.model
        column = getattr(model, machine.column)
        rows = (await session.execute(select(column, func.count(model.id)).group_by(column))).all()
        counts[machine.name] = {str(state): n for state, n in rows}

    return {
        "counts": counts,
        "watchdog_enabled": settings.watchdog_enabled,
        "watchdog_interval_minutes": settings.watchdog_interval_minutes,
    }
