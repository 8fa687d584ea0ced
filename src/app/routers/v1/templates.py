# src/app/routers/v1/templates.py
"""
CRUD routes for the caller's conversion templates.
"""
from __future__ import annotations

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from starlette.concurrency import run_in_threadpool

from src.app.deps import CurrentUser, get_template_service, rate_limited
from src.app.domain.models import PolicyName
from src.app.schemas.templates import TemplateRequest, TemplateResponse
from src.app.services.template_service import TemplateService

router = APIRouter(prefix="/api/v1/templates", tags=["templates"])

standard_policy = rate_limited(PolicyName.STANDARD)


@router.get("/", response_model=list[TemplateResponse])
async def list_templates(
    target_format: Optional[str] = Query(default=None, alias="targetFormat"),
    user: CurrentUser = Depends(standard_policy),
    templates: TemplateService = Depends(get_template_service),
) -> list[TemplateResponse]:
    records = await run_in_threadpool(templates.list_templates, user.user_id, target_format)
    return [TemplateResponse.from_template(record) for record in records]


@router.get("/{template_id}", response_model=TemplateResponse)
async def get_template(
    template_id: UUID,
    user: CurrentUser = Depends(standard_policy),
    templates: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    record = await run_in_threadpool(templates.get_template, user.user_id, template_id)
    return TemplateResponse.from_template(record)


@router.post("/", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
async def create_template(
    payload: TemplateRequest,
    user: CurrentUser = Depends(standard_policy),
    templates: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    record = await run_in_threadpool(
        templates.create_template,
        user.user_id,
        payload.name,
        payload.target_format,
        payload.options.to_domain(),
        payload.description,
    )
    return TemplateResponse.from_template(record)


@router.put("/{template_id}", response_model=TemplateResponse)
async def update_template(
    template_id: UUID,
    payload: TemplateRequest,
    user: CurrentUser = Depends(standard_policy),
    templates: TemplateService = Depends(get_template_service),
) -> TemplateResponse:
    record = await run_in_threadpool(
        templates.update_template,
        user.user_id,
        template_id,
        payload.name,
        payload.target_format,
        payload.options.to_domain(),
        payload.description,
    )
    return TemplateResponse.from_template(record)


@router.delete("/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_template(
    template_id: UUID,
    user: CurrentUser = Depends(standard_policy),
    templates: TemplateService = Depends(get_template_service),
) -> Response:
    await run_in_threadpool(templates.delete_template, user.user_id, template_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
