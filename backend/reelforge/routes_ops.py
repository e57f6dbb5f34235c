"""
Operations endpoints: preflight health, watchdog, status counts.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import get_session

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ops"])

SessionDep = Depends(get_session)


@router.get("/health")
async def health_endpoint(force: bool = Query(default=False)):
    """Preflight checks: database, Redis, ffmpeg/ffprobe, yt-dlp, required keys."""
    from reelforge.services.preflight import run_preflight
    return await run_preflight(force=force)


@router.post("/api/ops/watchdog")
async def run_watchdog_endpoint(
    dry_run: bool = Query(default=True),
    session: AsyncSession = SessionDep,
):
    """Run watchdog to find and fail stuck rows."""
    from reelforge.services.watchdog_service import run_watchdog
    return await run_watchdog(session, dry_run=dry_run)


@router.get("/api/ops/status")
async def status_endpoint(session: AsyncSession = SessionDep):
    """Row counts by status for every state machine."""
    from reelforge.services.watchdog_service import get_health
    return await get_health(session)
