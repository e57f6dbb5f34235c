from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelforge.db import get_session
from reelforge.models import Template
from reelforge.schemas import TemplateExtractionRead
from reelforge.services.extraction_service import publish_template, reject_template

router = APIRouter(prefix="/api/templates", tags=["templates"])

SessionDep = Depends(get_session)


def _not_found(template_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail={"error": "Template not found", "code": "NOT_FOUND", "details": {"template_id": template_id}},
    )


async def _load(session: AsyncSession, template_id: str) -> Template:
    template = await session.get(Template, template_id, populate_existing=True)
    if not template:
        raise _not_found(template_id)
    return template


@router.get("/{template_id}/extraction", response_model=TemplateExtractionRead, response_model_by_alias=True)
async def get_extraction(template_id: str, session: AsyncSession = SessionDep):
    return await _load(session, template_id)


@router.post("/{template_id}/publish", response_model=TemplateExtractionRead, response_model_by_alias=True)
async def publish_extracted_template(template_id: str, session: AsyncSession = SessionDep):
    template = await _load(session, template_id)
    if not await publish_template(session, template_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "Only an unpublished COMPLETED draft can be published",
                "code": "NOT_A_DRAFT",
                "details": {"extraction_status": template.extraction_status, "is_published": template.is_published},
            },
        )
    return await _load(session, template_id)


@router.post("/{template_id}/reject", response_model=TemplateExtractionRead, response_model_by_alias=True)
async def reject_extracted_template(
    template_id: str,
    reason: str | None = Body(default=None, embed=True),
    session: AsyncSession = SessionDep,
):
    template = await _load(session, template_id)
    if not await reject_template(session, template_id, reason):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error": "Only an unpublished COMPLETED draft can be rejected",
                "code": "NOT_A_DRAFT",
                "details": {"extraction_status": template.extraction_status, "is_published": template.is_published},
            },
        )
    return await _load(session, template_id)
