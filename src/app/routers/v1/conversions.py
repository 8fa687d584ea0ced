# src/app/routers/v1/conversions.py
"""
Conversion routes. Each POST runs the conversion synchronously and returns
the job descriptor; a job that failed after creation is still a 200 with
status Failed and an error_message.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from src.app.deps import (
    CurrentUser,
    get_batch_service,
    get_conversion_service,
    get_job_query_service,
    rate_limited,
)
from src.app.domain.models import PolicyName
from src.app.schemas.conversions import (
    BatchConversionRequest,
    BatchConversionResponse,
    ConversionJobResponse,
    DocumentConversionRequest,
    HtmlConversionRequest,
    HtmlToImageRequest,
    ImageConversionRequest,
    JobHistoryResponse,
    MarkdownConversionRequest,
    PdfToImageRequest,
    to_conversion_request,
)
from src.app.services.batch_service import BatchConversionService
from src.app.services.conversion_service import ConversionService
from src.app.services.job_service import JobQueryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/convert", tags=["conversions"])

conversion_policy = rate_limited(PolicyName.CONVERSION)
standard_policy = rate_limited(PolicyName.STANDARD)


async def _submit(
    service: ConversionService,
    user: CurrentUser,
    conversion_type: str,
    payload: BaseModel,
) -> ConversionJobResponse:
    request = to_conversion_request(payload, conversion_type)
    job = await service.submit(user.user_id, conversion_type, request)
    return ConversionJobResponse.from_job(job)


@router.post("/html-to-pdf", response_model=ConversionJobResponse)
async def html_to_pdf(
    payload: HtmlConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "html-to-pdf", payload)


@router.post("/html-to-image", response_model=ConversionJobResponse)
async def html_to_image(
    payload: HtmlToImageRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "html-to-image", payload)


@router.post("/markdown-to-pdf", response_model=ConversionJobResponse)
async def markdown_to_pdf(
    payload: MarkdownConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "markdown-to-pdf", payload)


@router.post("/markdown-to-html", response_model=ConversionJobResponse)
async def markdown_to_html(
    payload: MarkdownConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "markdown-to-html", payload)


@router.post("/image", response_model=ConversionJobResponse)
async def convert_image(
    payload: ImageConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "image", payload)


@router.post("/pdf-to-image", response_model=ConversionJobResponse)
async def pdf_to_image(
    payload: PdfToImageRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "pdf-to-image", payload)


@router.post("/docx-to-pdf", response_model=ConversionJobResponse)
async def docx_to_pdf(
    payload: DocumentConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "docx-to-pdf", payload)


@router.post("/xlsx-to-pdf", response_model=ConversionJobResponse)
async def xlsx_to_pdf(
    payload: DocumentConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: ConversionService = Depends(get_conversion_service),
) -> ConversionJobResponse:
    return await _submit(service, user, "xlsx-to-pdf", payload)


@router.post("/batch", response_model=BatchConversionResponse)
async def convert_batch(
    payload: BatchConversionRequest,
    user: CurrentUser = Depends(conversion_policy),
    service: BatchConversionService = Depends(get_batch_service),
) -> BatchConversionResponse:
    items = [to_conversion_request(item) for item in payload.items]
    result = await service.process(user.user_id, items, payload.webhook_url)
    return BatchConversionResponse.from_result(result)


# Registered before /{job_id} so "history" is not parsed as an id.
@router.get("/history", response_model=JobHistoryResponse)
async def job_history(
    page: int = Query(default=1),
    page_size: int = Query(default=20),
    user: CurrentUser = Depends(standard_policy),
    jobs: JobQueryService = Depends(get_job_query_service),
) -> JobHistoryResponse:
    paged = await run_in_threadpool(jobs.list_jobs, user.user_id, page, page_size)
    return JobHistoryResponse.from_page(paged)


@router.get("/{job_id}", response_model=ConversionJobResponse)
async def get_job(
    job_id: UUID,
    user: CurrentUser = Depends(standard_policy),
    jobs: JobQueryService = Depends(get_job_query_service),
) -> ConversionJobResponse:
    job = await run_in_threadpool(jobs.get_job, user.user_id, job_id)
    return ConversionJobResponse.from_job(job)


@router.get("/{job_id}/download")
async def download_job_output(
    job_id: UUID,
    user: CurrentUser = Depends(standard_policy),
    jobs: JobQueryService = Depends(get_job_query_service),
) -> Response:
    result = await run_in_threadpool(jobs.download, user.user_id, job_id)
    return Response(
        content=result.content,
        media_type=result.content_type,
        headers={"Content-Disposition": f'attachment; filename="{result.file_name}"'},
    )
