from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import get_session
from reelforge.models import PublishLog
from reelforge.schemas import PublishLogRead, PublishRequest
from reelforge.services.dispatcher import enqueue_publish

router = APIRouter(prefix="/api", tags=["publishes"])

SessionDep = Depends(get_session)


@router.post("/projects/{project_id}/publish", response_model=PublishLogRead, status_code=status.HTTP_202_ACCEPTED)
async def publish_project(project_id: str, data: PublishRequest, session: AsyncSession = SessionDep):
    """Queue a publish now, or at `scheduledAt` when given."""
    return await enqueue_publish(
        session,
        project_id,
        data.social_account_id,
        caption=data.caption,
        scheduled_at=data.scheduled_at,
    )


@router.get("/publishes/{publish_log_id}", response_model=PublishLogRead)
async def get_publish(publish_log_id: str, session: AsyncSession = SessionDep):
    log = await session.get(PublishLog, publish_log_id, populate_existing=True)
    if not log:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Publish log not found", "code": "NOT_FOUND", "details": {"publish_log_id": publish_log_id}},
        )
    return log
