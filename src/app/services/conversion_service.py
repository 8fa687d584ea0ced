# src/app/services/conversion_service.py
"""
Conversion job orchestration.

One handler per conversion type drives a job through its whole life:
validate, create, process, store the output, notify, record metrics.
ConversionService wraps the handlers with the monthly quota gate.
"""
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse
from uuid import UUID

import anyio
from starlette.concurrency import run_in_threadpool

from src.app.config import InputValidationSettings
from src.app.domain.errors import (
    ConversionFailedError,
    InvalidFormatError,
    InvalidInputError,
    StorageError,
    TemplateNotFoundError,
    UnauthorizedError,
    UnsupportedConversionError,
    ValidationError,
)
from src.app.domain.models import (
    ConversionJob,
    ConversionOptions,
    ConversionStatus,
    normalize_format,
)
from src.app.infra.converters.base import Converter, ConverterRegistry
from src.app.infra.db.base import ConversionJobRepository
from src.app.infra.metrics import ConversionMetrics
from src.app.infra.storage.base import CloudStorageProvider, content_type_for
from src.app.infra.webhooks import WebhookSender
from src.app.services.input_validation import InputValidator, decoded_base64_size
from src.app.services.quota_service import QuotaService
from src.app.services.template_service import TemplateService

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Conversion was cancelled."
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

RENDERED_IMAGE_FORMATS = ("png", "jpeg", "webp")
SUPPORTED_IMAGE_FORMATS = ("png", "jpeg", "webp", "gif", "bmp")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def change_extension(file_name: str, extension: str) -> str:
    stem, dot, _ = file_name.rpartition(".")
    base = stem if dot and stem else file_name
    return f"{base}.{extension}"


@dataclass
class ConversionRequest:
    """
    Input for one conversion. Which fields matter depends on the type:
    HTML types read html_content or url, markdown types read markdown and
    binary types read base64 data plus the declared formats. A template_id
    pulls default options from one of the user's templates.
    """
    type: Optional[str] = None
    html_content: Optional[str] = None
    url: Optional[str] = None
    markdown: Optional[str] = None
    data: Optional[str] = None
    source_format: Optional[str] = None
    target_format: Optional[str] = None
    file_name: Optional[str] = None
    options: ConversionOptions = field(default_factory=ConversionOptions)
    webhook_url: Optional[str] = None
    template_id: Optional[UUID] = None


# =============================================================================
# Handlers
# =============================================================================

class ConversionHandler(ABC):
    conversion_type = ""
    file_prefix = "document"

    def __init__(
        self,
        job_repository: ConversionJobRepository,
        converters: ConverterRegistry,
        storage: CloudStorageProvider,
        webhooks: Optional[WebhookSender] = None,
        metrics: Optional[ConversionMetrics] = None,
        validator: Optional[InputValidator] = None,
        now: Callable[[], datetime] = _now_utc,
    ):
        self._jobs = job_repository
        self._converters = converters
        self._storage = storage
        self._webhooks = webhooks
        self._metrics = metrics or ConversionMetrics()
        self._validator = validator or InputValidator(InputValidationSettings())
        self._now = now

    @abstractmethod
    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        """
        Validate the request and return the normalized (source, target) pair.

        Raises:
            ValidationError: If required input is missing or a format is invalid
        """
        pass

    @abstractmethod
    def read_input(self, request: ConversionRequest) -> bytes:
        """
        Turn the request payload into converter input.

        Raises:
            InvalidInputError: If the payload cannot be decoded
        """
        pass

    def default_file_name(self, source_format: str) -> str:
        return f"{self.file_prefix}_{self._now().strftime(TIMESTAMP_FORMAT)}.{source_format}"

    async def handle(self, user_id: Optional[UUID], request: ConversionRequest) -> ConversionJob:
        """
        Run one conversion to a terminal job state.

        Authorization, validation and unsupported format pairs raise before
        any job exists. After that every failure is recorded on the returned
        job as status Failed.
        """
        if user_id is None:
            raise UnauthorizedError()

        source_format, target_format = self.resolve_formats(request)
        if not self._converters.is_supported(source_format, target_format):
            raise UnsupportedConversionError(source_format, target_format)
        converter = self._converters.get(source_format, target_format)

        job = ConversionJob.create(
            user_id=user_id,
            source_format=source_format,
            target_format=target_format,
            input_file_name=request.file_name or self.default_file_name(source_format),
            webhook_url=request.webhook_url,
            now=self._now(),
        )
        await run_in_threadpool(self._jobs.add, job)

        job.mark_processing()
        await run_in_threadpool(self._jobs.update, job)

        logger.info(
            "Starting %s conversion: job=%s, user=%s",
            self.conversion_type, job.id, user_id,
        )
        started = time.monotonic()
        self._record_metric("record_started", job.source_format, job.target_format)

        try:
            await self._process(job, converter, request)
        except asyncio.CancelledError:
            await self._abandon(job, CANCELLED_MESSAGE, started)
            raise
        except (MemoryError, RecursionError) as error:
            await self._abandon(job, f"Conversion aborted: {type(error).__name__}", started)
            raise
        except Exception as error:
            logger.exception("Conversion job %s failed with exception", job.id)
            if not job.is_terminal:
                job.mark_failed(str(error) or type(error).__name__, now=self._now())

        await self._finish(job, started)
        return job

    async def _process(self, job: ConversionJob, converter: Converter, request: ConversionRequest) -> None:
        try:
            data = self.read_input(request)
        except InvalidInputError as error:
            job.mark_failed(error.message, now=self._now())
            return

        try:
            output = await run_in_threadpool(converter.convert, data, request.options)
        except ConversionFailedError as error:
            job.mark_failed(error.message, now=self._now())
            return

        output_file_name = change_extension(job.input_file_name, job.target_format)

        if not self._storage.is_enabled:
            job.mark_completed(output_file_name, output, now=self._now())
            return

        object_key = self._storage.generate_output_key(job.user_id, job.id, output_file_name)
        try:
            await run_in_threadpool(
                self._storage.upload,
                output,
                object_key,
                content_type_for(job.target_format),
            )
        except StorageError as error:
            job.mark_failed(f"Cloud storage upload failed: {error.message}", now=self._now())
            return

        job.mark_completed_in_cloud(output_file_name, object_key, len(output), now=self._now())

    async def _finish(self, job: ConversionJob, started: float) -> None:
        await run_in_threadpool(self._jobs.update, job)

        if self._webhooks is not None and job.webhook_url:
            try:
                await self._webhooks.notify(job)
            except Exception as error:
                logger.warning("Webhook notification for job %s raised: %s", job.id, error)

        elapsed = time.monotonic() - started
        if job.status == ConversionStatus.COMPLETED:
            self._record_metric("record_completed", job.source_format, job.target_format, elapsed)
            logger.info("Conversion job %s completed in %.2fs", job.id, elapsed)
        else:
            self._record_metric("record_failed", job.source_format, job.target_format, elapsed)
            logger.warning("Conversion job %s failed: %s", job.id, job.error_message)

    async def _abandon(self, job: ConversionJob, message: str, started: float) -> None:
        # Called from an except block; the caller re-raises afterwards.
        if not job.is_terminal:
            job.mark_failed(message, now=self._now())
        try:
            # Shielded so an enclosing cancel scope cannot interrupt the final write.
            with anyio.CancelScope(shield=True):
                await run_in_threadpool(self._jobs.update, job)
        except Exception as error:
            logger.error("Could not persist abandoned job %s: %s", job.id, error)
        self._record_metric("record_failed", job.source_format, job.target_format, time.monotonic() - started)
        logger.warning("Conversion job %s abandoned: %s", job.id, message)

    def _record_metric(self, name: str, *args) -> None:
        try:
            getattr(self._metrics, name)(*args)
        except Exception as error:
            logger.warning("Metric %s failed for %s -> %s: %s", name, args[0], args[1], error)


class _HtmlInputHandler(ConversionHandler):
    def _validate_html_input(self, request: ConversionRequest) -> None:
        if not (request.html_content and request.html_content.strip()) and not (request.url and request.url.strip()):
            raise ValidationError("Either HtmlContent or Url must be provided.", code="Conversion.MissingContent")
        if request.url and request.url.strip():
            parsed = urlparse(request.url.strip())
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                raise ValidationError("Url must be a valid HTTP or HTTPS URL.", code="Conversion.InvalidUrl")
            self._validator.validate_url(request.url.strip())
        self._validator.validate_html_content(request.html_content)

    def read_input(self, request: ConversionRequest) -> bytes:
        content = request.html_content or request.url or ""
        return content.encode("utf-8")


class HtmlToPdfHandler(_HtmlInputHandler):
    conversion_type = "html-to-pdf"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        self._validate_html_input(request)
        return "html", "pdf"


class HtmlToImageHandler(_HtmlInputHandler):
    conversion_type = "html-to-image"
    file_prefix = "screenshot"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        target = normalize_format(request.target_format or "png")
        if target not in RENDERED_IMAGE_FORMATS:
            raise InvalidFormatError(
                "Conversion.UnsupportedFormat",
                f"Unsupported target format '{request.target_format}'. Supported formats: png, jpeg, webp.",
            )
        self._validate_html_input(request)
        return "html", target


class _MarkdownInputHandler(ConversionHandler):
    target_format = ""

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        if not (request.markdown and request.markdown.strip()):
            raise ValidationError("Markdown content is required.", code="Conversion.MissingContent")
        self._validator.validate_markdown_content(request.markdown)
        return "markdown", self.target_format

    def default_file_name(self, source_format: str) -> str:
        return f"{self.file_prefix}_{self._now().strftime(TIMESTAMP_FORMAT)}.md"

    def read_input(self, request: ConversionRequest) -> bytes:
        return (request.markdown or "").encode("utf-8")


class MarkdownToPdfHandler(_MarkdownInputHandler):
    conversion_type = "markdown-to-pdf"
    target_format = "pdf"


class MarkdownToHtmlHandler(_MarkdownInputHandler):
    conversion_type = "markdown-to-html"
    target_format = "html"


class _Base64InputHandler(ConversionHandler):
    input_label = "Input"

    def _require_data(self, request: ConversionRequest) -> None:
        if not (request.data and request.data.strip()):
            raise ValidationError(f"{self.input_label} data is required.", code="Conversion.MissingContent")
        self._validator.validate_file_size(decoded_base64_size(request.data))

    def read_input(self, request: ConversionRequest) -> bytes:
        try:
            return base64.b64decode(request.data or "", validate=True)
        except (binascii.Error, ValueError) as error:
            raise InvalidInputError(
                f"{self.input_label} data is not valid base64.",
                code="Conversion.InvalidBase64",
            ) from error


class ImageConversionHandler(_Base64InputHandler):
    conversion_type = "image"
    file_prefix = "image"
    input_label = "Image"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        source = normalize_format(request.source_format or "")
        target = normalize_format(request.target_format or "")
        supported = ", ".join(SUPPORTED_IMAGE_FORMATS)

        if source not in SUPPORTED_IMAGE_FORMATS:
            raise InvalidFormatError(
                "Conversion.InvalidSourceFormat",
                f"Source format '{request.source_format}' is not supported. Supported formats: {supported}",
            )
        if target not in SUPPORTED_IMAGE_FORMATS:
            raise InvalidFormatError(
                "Conversion.InvalidTargetFormat",
                f"Target format '{request.target_format}' is not supported. Supported formats: {supported}",
            )
        if source == target:
            raise InvalidFormatError("Conversion.SameFormat", "Source and target formats cannot be the same.")

        self._require_data(request)
        return source, target


class PdfToImageHandler(_Base64InputHandler):
    conversion_type = "pdf-to-image"
    input_label = "PDF"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        target = normalize_format(request.target_format or "png")
        if target not in RENDERED_IMAGE_FORMATS:
            raise InvalidFormatError(
                "Conversion.UnsupportedFormat",
                f"Unsupported target format '{request.target_format}'. Supported formats: png, jpeg, webp.",
            )
        self._require_data(request)
        return "pdf", target


class DocxToPdfHandler(_Base64InputHandler):
    conversion_type = "docx-to-pdf"
    input_label = "DOCX"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        self._require_data(request)
        return "docx", "pdf"


class XlsxToPdfHandler(_Base64InputHandler):
    conversion_type = "xlsx-to-pdf"
    file_prefix = "spreadsheet"
    input_label = "XLSX"

    def resolve_formats(self, request: ConversionRequest) -> tuple[str, str]:
        self._require_data(request)
        return "xlsx", "pdf"


HANDLER_TYPES: tuple[type[ConversionHandler], ...] = (
    HtmlToPdfHandler,
    HtmlToImageHandler,
    MarkdownToPdfHandler,
    MarkdownToHtmlHandler,
    ImageConversionHandler,
    PdfToImageHandler,
    DocxToPdfHandler,
    XlsxToPdfHandler,
)


# =============================================================================
# Quota-gated entry point
# =============================================================================

class ConversionService:
    """
    Entry point for single conversions.

    Checks the monthly quota before the handler runs and records usage
    (output size) only when the job completes.
    """

    def __init__(
        self,
        handlers: Iterable[ConversionHandler],
        quota_service: QuotaService,
        template_service: Optional[TemplateService] = None,
    ):
        self._handlers = {handler.conversion_type: handler for handler in handlers}
        self._quota = quota_service
        self._templates = template_service

    @property
    def supported_types(self) -> list[str]:
        return sorted(self._handlers)

    def handler_for(self, conversion_type: str) -> Optional[ConversionHandler]:
        return self._handlers.get(conversion_type.strip().lower())

    async def submit(
        self,
        user_id: Optional[UUID],
        conversion_type: str,
        request: ConversionRequest,
    ) -> ConversionJob:
        """
        Run one conversion behind the quota gate.

        Raises:
            UnauthorizedError: If there is no authenticated user
            ValidationError: If the type is unknown or the request is invalid
            TemplateNotFoundError: If template_id names no template of the user
            QuotaExceededError: If the user's monthly quota is used up
        """
        if user_id is None:
            raise UnauthorizedError()

        handler = self.handler_for(conversion_type)
        if handler is None:
            raise ValidationError(
                f"Unknown conversion type '{conversion_type}'.",
                code="Conversion.UnknownType",
            )

        if request.template_id is not None:
            if self._templates is None:
                raise TemplateNotFoundError(request.template_id)
            request = await run_in_threadpool(self._templates.apply, user_id, request)

        await run_in_threadpool(self._quota.check_quota, user_id)

        job = await handler.handle(user_id, request)

        if job.status == ConversionStatus.COMPLETED:
            await run_in_threadpool(self._quota.record_usage, user_id, job.output_size_bytes)

        return job


def create_handlers(
    job_repository: ConversionJobRepository,
    converters: ConverterRegistry,
    storage: CloudStorageProvider,
    webhooks: Optional[WebhookSender] = None,
    metrics: Optional[ConversionMetrics] = None,
    validator: Optional[InputValidator] = None,
) -> list[ConversionHandler]:
    metrics = metrics or ConversionMetrics()
    validator = validator or InputValidator(InputValidationSettings())
    return [
        handler_type(job_repository, converters, storage, webhooks, metrics, validator)
        for handler_type in HANDLER_TYPES
    ]
