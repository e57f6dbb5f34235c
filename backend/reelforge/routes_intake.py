from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import get_session
from reelforge.models import CollectedVideo
from reelforge.schemas import CollectedVideoRead, ExtractRequest, IntakeRequest
from reelforge.services.dispatcher import enqueue_analysis, enqueue_extraction, enqueue_intake

router = APIRouter(prefix="/api/intake", tags=["intake"])

SessionDep = Depends(get_session)


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def fetch_videos(data: IntakeRequest, session: AsyncSession = SessionDep):
    return await enqueue_intake(session, [str(url) for url in data.urls])


@router.get("/{video_id}", response_model=CollectedVideoRead)
async def get_collected_video(video_id: str, session: AsyncSession = SessionDep):
    video = await session.get(CollectedVideo, video_id, populate_existing=True)
    if not video:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Collected video not found", "code": "NOT_FOUND", "details": {"video_id": video_id}},
        )
    return video


@router.post("/{video_id}/analyze", status_code=status.HTTP_202_ACCEPTED)
async def analyze_video(video_id: str, session: AsyncSession = SessionDep):
    return await enqueue_analysis(session, video_id)


@router.post("/{video_id}/extract", status_code=status.HTTP_202_ACCEPTED)
async def extract_template(
    video_id: str,
    data: ExtractRequest = Body(default_factory=ExtractRequest),
    session: AsyncSession = SessionDep,
):
    return await enqueue_extraction(session, video_id, data.auto_seed_threshold)
