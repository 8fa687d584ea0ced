# src/app/schemas/conversions.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.app.domain.models import (
    BatchConversionResult,
    ConversionJob,
    ConversionOptions,
    PagedResult,
)
from src.app.services.conversion_service import ConversionRequest


class ConversionOptionsModel(BaseModel):
    page_size: Optional[str] = None
    landscape: Optional[bool] = None
    margin_top: Optional[str] = None
    margin_bottom: Optional[str] = None
    margin_left: Optional[str] = None
    margin_right: Optional[str] = None
    header_template: Optional[str] = None
    footer_template: Optional[str] = None
    wait_for_javascript: Optional[bool] = None
    javascript_timeout_ms: Optional[int] = Field(default=None, ge=0)
    image_width: Optional[int] = Field(default=None, gt=0)
    image_height: Optional[int] = Field(default=None, gt=0)
    image_quality: Optional[int] = Field(default=None, ge=1, le=100)
    full_page: Optional[bool] = None
    viewport_width: Optional[int] = Field(default=None, gt=0)
    viewport_height: Optional[int] = Field(default=None, gt=0)
    dpi: Optional[int] = Field(default=None, gt=0)
    page_number: Optional[int] = Field(default=None, ge=1)
    pdf_password: Optional[str] = None

    def to_domain(self) -> ConversionOptions:
        return ConversionOptions(**self.model_dump())


class _ConversionBase(BaseModel):
    file_name: Optional[str] = Field(default=None, max_length=255)
    options: ConversionOptionsModel = Field(default_factory=ConversionOptionsModel)
    webhook_url: Optional[str] = None
    template_id: Optional[UUID] = None


class HtmlConversionRequest(_ConversionBase):
    html_content: Optional[str] = None
    url: Optional[str] = None


class HtmlToImageRequest(HtmlConversionRequest):
    target_format: Optional[str] = None


class MarkdownConversionRequest(_ConversionBase):
    markdown: Optional[str] = None


class ImageConversionRequest(_ConversionBase):
    data: Optional[str] = Field(default=None, description="Base64 encoded image")
    source_format: Optional[str] = None
    target_format: Optional[str] = None


class PdfToImageRequest(_ConversionBase):
    data: Optional[str] = Field(default=None, description="Base64 encoded PDF")
    target_format: Optional[str] = None


class DocumentConversionRequest(_ConversionBase):
    data: Optional[str] = Field(default=None, description="Base64 encoded document")


class BatchItemRequest(_ConversionBase):
    """One batch entry; `type` selects which of the other fields are read."""
    type: Optional[str] = None
    html_content: Optional[str] = None
    url: Optional[str] = None
    markdown: Optional[str] = None
    data: Optional[str] = None
    source_format: Optional[str] = None
    target_format: Optional[str] = None


class BatchConversionRequest(BaseModel):
    items: list[BatchItemRequest] = Field(default_factory=list)
    webhook_url: Optional[str] = None


def to_conversion_request(payload: BaseModel, conversion_type: Optional[str] = None) -> ConversionRequest:
    """Flatten any of the request models above into the service input."""
    fields = payload.model_dump(exclude={"options"})
    if conversion_type is not None:
        fields["type"] = conversion_type
    return ConversionRequest(options=payload.options.to_domain(), **fields)


# =============================================================================
# Responses
# =============================================================================

class ConversionJobResponse(BaseModel):
    id: UUID
    status: str
    source_format: str
    target_format: str
    input_file_name: str
    output_file_name: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ConversionJob) -> "ConversionJobResponse":
        return cls(
            id=job.id,
            status=job.status.value,
            source_format=job.source_format,
            target_format=job.target_format,
            input_file_name=job.input_file_name,
            output_file_name=job.output_file_name,
            error_message=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


class BatchItemResponse(BaseModel):
    index: int
    success: bool
    job: Optional[ConversionJobResponse] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class BatchConversionResponse(BaseModel):
    total_items: int
    success_count: int
    failure_count: int
    results: list[BatchItemResponse]

    @classmethod
    def from_result(cls, result: BatchConversionResult) -> "BatchConversionResponse":
        return cls(
            total_items=result.total_items,
            success_count=result.success_count,
            failure_count=result.failure_count,
            results=[
                BatchItemResponse(
                    index=item.index,
                    success=item.success,
                    job=ConversionJobResponse.from_job(item.job) if item.job else None,
                    error_code=item.error_code,
                    error_message=item.error_message,
                )
                for item in result.results
            ],
        )


class JobHistoryResponse(BaseModel):
    items: list[ConversionJobResponse]
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_previous_page: bool
    has_next_page: bool

    @classmethod
    def from_page(cls, paged: PagedResult[ConversionJob]) -> "JobHistoryResponse":
        return cls(
            items=[ConversionJobResponse.from_job(job) for job in paged.items],
            page=paged.page,
            page_size=paged.page_size,
            total_count=paged.total_count,
            total_pages=paged.total_pages,
            has_previous_page=paged.has_previous_page,
            has_next_page=paged.has_next_page,
        )
