from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import get_session
from reelforge.models import Render
from reelforge.schemas import RenderRead
from reelforge.services.dispatcher import trigger_render

router = APIRouter(prefix="/api", tags=["renders"])

SessionDep = Depends(get_session)


@router.post("/projects/{project_id}/render", response_model=RenderRead, status_code=status.HTTP_202_ACCEPTED)
async def render_project(project_id: str, session: AsyncSession = SessionDep):
    return await trigger_render(session, project_id)


@router.get("/renders/{render_id}", response_model=RenderRead)
async def get_render(render_id: str, session: AsyncSession = SessionDep):
    render = await session.get(Render, render_id, populate_existing=True)
    if not render:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "Render not found", "code": "NOT_FOUND", "details": {"render_id": render_id}},
        )
    return render
