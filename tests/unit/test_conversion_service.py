from __future__ import annotations

import asyncio
import base64
import pytest
from datetime import datetime, timezone
from uuid import uuid4

from src.app.config import InputValidationSettings, UsageQuotaSettings
from src.app.domain.errors import (
    ConversionsQuotaExceededError,
    RepositoryError,
    TemplateNotFoundError,
    UnauthorizedError,
    UnsupportedConversionError,
    ValidationError,
)
from src.app.domain.models import (
    ConversionOptions,
    ConversionStatus,
    ConversionTemplate,
    StorageLocation,
    UsageQuota,
)
from src.app.services import conversion_service
from src.app.services.conversion_service import (
    CANCELLED_MESSAGE,
    ConversionRequest,
    ConversionService,
    HtmlToImageHandler,
    HtmlToPdfHandler,
    ImageConversionHandler,
    MarkdownToHtmlHandler,
    MarkdownToPdfHandler,
    PdfToImageHandler,
    change_extension,
    create_handlers,
)
from src.app.services.input_validation import InputValidator
from src.app.services.quota_service import QuotaService
from src.app.services.template_service import TemplateService
from tests.unit.stubs import (
    CancellingConverter,
    ConversionJobRepositoryStub,
    ConversionTemplateRepositoryStub,
    MetricsStub,
    StorageProviderStub,
    UsageQuotaRepositoryStub,
    UserRepositoryStub,
    WebhookSenderStub,
    create_converter_registry,
    failing_converter,
    only_job,
)

NOW = datetime(2026, 2, 3, 4, 5, 6, tzinfo=timezone.utc)


def encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class HandlerHarness:
    def __init__(self, storage_enabled: bool = False) -> None:
        self.jobs = ConversionJobRepositoryStub()
        self.converters = create_converter_registry()
        self.storage = StorageProviderStub(enabled=storage_enabled)
        self.webhooks = WebhookSenderStub()
        self.metrics = MetricsStub()
        self.resolved: dict[str, list[str]] = {}
        self.validator = InputValidator(
            InputValidationSettings(max_file_size_bytes=64, max_markdown_content_bytes=64),
            resolver=lambda host: self.resolved.get(host, ["93.184.216.34"]),
        )

    def handler(self, handler_type):
        return handler_type(
            self.jobs,
            self.converters,
            self.storage,
            self.webhooks,
            self.metrics,
            self.validator,
            now=lambda: NOW,
        )


class TestChangeExtension:
    def test_replaces_last_extension(self) -> None:
        assert change_extension("report.final.docx", "pdf") == "report.final.pdf"

    def test_appends_when_missing(self) -> None:
        assert change_extension("README", "html") == "README.html"


class TestHandlerPreJobFailures:
    @pytest.mark.asyncio
    async def test_missing_user_raises(self) -> None:
        harness = HandlerHarness()

        with pytest.raises(UnauthorizedError):
            await harness.handler(HtmlToPdfHandler).handle(None, ConversionRequest(html_content="<p>x</p>"))

        assert harness.jobs.jobs == {}

    @pytest.mark.asyncio
    async def test_missing_content_raises_without_job(self) -> None:
        harness = HandlerHarness()

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest())

        assert exc_info.value.code == "Conversion.MissingContent"
        assert harness.jobs.jobs == {}

    @pytest.mark.asyncio
    async def test_invalid_url_rejected(self) -> None:
        harness = HandlerHarness()

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(url="ftp://example.com"))

        assert exc_info.value.code == "Conversion.InvalidUrl"

    @pytest.mark.asyncio
    async def test_same_image_format_rejected(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(data=encode(b"img"), source_format="jpg", target_format="JPEG")

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(ImageConversionHandler).handle(uuid4(), request)

        assert exc_info.value.code == "Conversion.SameFormat"

    @pytest.mark.asyncio
    async def test_unsupported_pair_raises_before_job_exists(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(data=encode(b"img"), source_format="gif", target_format="png")

        with pytest.raises(UnsupportedConversionError):
            await harness.handler(ImageConversionHandler).handle(uuid4(), request)

        assert harness.jobs.jobs == {}
        assert harness.metrics.started == []

    @pytest.mark.asyncio
    async def test_unsupported_screenshot_format(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(html_content="<p/>", target_format="gif")

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(HtmlToImageHandler).handle(uuid4(), request)

        assert exc_info.value.code == "Conversion.UnsupportedFormat"


class TestHandlerSuccess:
    @pytest.mark.asyncio
    async def test_inline_completion(self) -> None:
        harness = HandlerHarness()
        user_id = uuid4()

        job = await harness.handler(HtmlToPdfHandler).handle(
            user_id, ConversionRequest(html_content="<h1>Hello</h1>", file_name="hello.html")
        )

        assert job.status == ConversionStatus.COMPLETED
        assert job.output_file_name == "hello.pdf"
        assert job.output_data == b"converted:html->pdf"
        stored = only_job(harness.jobs)
        assert stored.status == ConversionStatus.COMPLETED
        assert stored.storage_location == StorageLocation.DATABASE
        assert harness.metrics.completed == [("html", "pdf")]

    @pytest.mark.asyncio
    async def test_formats_normalized_to_lowercase(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(data=encode(b"img"), source_format="PNG", target_format="JPG")

        job = await harness.handler(ImageConversionHandler).handle(uuid4(), request)

        assert job.source_format == "png"
        assert job.target_format == "jpeg"
        assert job.status == ConversionStatus.COMPLETED
        assert harness.converters.get("png", "jpeg").received == [b"img"]

    @pytest.mark.asyncio
    async def test_default_file_name_uses_timestamp(self) -> None:
        harness = HandlerHarness()

        job = await harness.handler(MarkdownToHtmlHandler).handle(uuid4(), ConversionRequest(markdown="# Title"))

        assert job.input_file_name == "document_20260203040506.md"
        assert job.output_file_name == "document_20260203040506.html"

    @pytest.mark.asyncio
    async def test_cloud_storage_completion(self) -> None:
        harness = HandlerHarness(storage_enabled=True)
        user_id = uuid4()

        job = await harness.handler(HtmlToPdfHandler).handle(
            user_id, ConversionRequest(html_content="<p/>", file_name="page.html")
        )

        assert job.status == ConversionStatus.COMPLETED
        assert job.cloud_storage_key == f"{user_id}/{job.id}/page.pdf"
        assert job.output_data is None
        assert harness.storage.objects[job.cloud_storage_key] == b"converted:html->pdf"
        assert job.output_size_bytes == len(b"converted:html->pdf")

    @pytest.mark.asyncio
    async def test_webhook_notified_with_terminal_job(self) -> None:
        harness = HandlerHarness()

        job = await harness.handler(HtmlToPdfHandler).handle(
            uuid4(), ConversionRequest(html_content="<p/>", webhook_url="https://hooks.test/done")
        )

        assert [notified.id for notified in harness.webhooks.notified] == [job.id]
        assert harness.webhooks.notified[0].status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_no_webhook_without_url(self) -> None:
        harness = HandlerHarness()

        await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert harness.webhooks.notified == []


class TestHandlerCapturedFailures:
    @pytest.mark.asyncio
    async def test_invalid_base64_fails_job(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(data="not base64!!", source_format="png", target_format="webp")

        job = await harness.handler(ImageConversionHandler).handle(uuid4(), request)

        assert job.status == ConversionStatus.FAILED
        assert job.error_message == "Image data is not valid base64."
        assert only_job(harness.jobs).status == ConversionStatus.FAILED
        assert harness.metrics.failed == [("png", "webp")]

    @pytest.mark.asyncio
    async def test_converter_failure_fails_job(self) -> None:
        harness = HandlerHarness()
        harness.converters.register(failing_converter("html", "pdf", "Renderer crashed"))

        job = await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert job.status == ConversionStatus.FAILED
        assert job.error_message == "Renderer crashed"
        assert job.completed_at == NOW

    @pytest.mark.asyncio
    async def test_upload_failure_leaves_no_output(self) -> None:
        harness = HandlerHarness(storage_enabled=True)
        harness.storage.should_fail_upload = True

        job = await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert job.status == ConversionStatus.FAILED
        assert job.error_message.startswith("Cloud storage upload failed: ")
        stored = only_job(harness.jobs)
        assert stored.output is None
        assert stored.output_data is None
        assert stored.cloud_storage_key is None

    @pytest.mark.asyncio
    async def test_unexpected_exception_fails_job(self) -> None:
        harness = HandlerHarness()
        converter = harness.converters.get("html", "pdf")
        converter.error = RuntimeError("disk full")

        job = await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert job.status == ConversionStatus.FAILED
        assert job.error_message == "disk full"

    @pytest.mark.asyncio
    async def test_webhook_exception_does_not_change_outcome(self) -> None:
        harness = HandlerHarness()

        async def broken_notify(job):
            raise RuntimeError("webhook exploded")

        harness.webhooks.notify = broken_notify

        job = await harness.handler(HtmlToPdfHandler).handle(
            uuid4(), ConversionRequest(html_content="<p/>", webhook_url="https://hooks.test/done")
        )

        assert only_job(harness.jobs).status == ConversionStatus.COMPLETED
        assert job.status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancellation_persists_failed_job_and_propagates(self, monkeypatch) -> None:
        async def run_inline(func, *args, **kwargs):
            return func(*args, **kwargs)

        monkeypatch.setattr(conversion_service, "run_in_threadpool", run_inline)
        harness = HandlerHarness()
        harness.converters.register(CancellingConverter("html", "pdf"))

        with pytest.raises(asyncio.CancelledError):
            await harness.handler(HtmlToPdfHandler).handle(
                uuid4(), ConversionRequest(html_content="<p/>", webhook_url="https://hooks.test/done")
            )

        stored = only_job(harness.jobs)
        assert stored.status == ConversionStatus.FAILED
        assert stored.error_message == CANCELLED_MESSAGE
        assert harness.webhooks.notified == []
        assert harness.metrics.failed == [("html", "pdf")]


class TestConversionService:
    def create_service(
        self,
        harness: HandlerHarness,
        quota_repo: UsageQuotaRepositoryStub,
        templates: TemplateService | None = None,
        **quota,
    ) -> ConversionService:
        settings = UsageQuotaSettings(
            enabled=True,
            exempt_admins=True,
            default_monthly_conversions=quota.get("conversions", 10),
            default_monthly_bytes=quota.get("bytes", 10_000),
        )
        handlers = create_handlers(
            harness.jobs, harness.converters, harness.storage, harness.webhooks, harness.metrics, harness.validator
        )
        return ConversionService(
            handlers,
            QuotaService(quota_repo, UserRepositoryStub(), settings, now=lambda: NOW),
            templates,
        )

    def test_supported_types(self) -> None:
        service = self.create_service(HandlerHarness(), UsageQuotaRepositoryStub())

        assert service.supported_types == [
            "docx-to-pdf",
            "html-to-image",
            "html-to-pdf",
            "image",
            "markdown-to-html",
            "markdown-to-pdf",
            "pdf-to-image",
            "xlsx-to-pdf",
        ]

    @pytest.mark.asyncio
    async def test_completed_job_records_usage(self) -> None:
        harness = HandlerHarness()
        quota_repo = UsageQuotaRepositoryStub()
        user_id = uuid4()

        job = await self.create_service(harness, quota_repo).submit(
            user_id, "docx-to-pdf", ConversionRequest(data=encode(b"docx"))
        )

        quota = quota_repo.get_by_user_and_month(user_id, 2026, 2)
        assert quota.conversions_used == 1
        assert quota.bytes_used == job.output_size_bytes

    @pytest.mark.asyncio
    async def test_failed_job_records_no_usage(self) -> None:
        harness = HandlerHarness()
        harness.converters.register(failing_converter("docx", "pdf", "Corrupt document"))
        quota_repo = UsageQuotaRepositoryStub()
        user_id = uuid4()

        job = await self.create_service(harness, quota_repo).submit(
            user_id, "docx-to-pdf", ConversionRequest(data=encode(b"docx"))
        )

        assert job.status == ConversionStatus.FAILED
        assert quota_repo.get_by_user_and_month(user_id, 2026, 2).conversions_used == 0

    @pytest.mark.asyncio
    async def test_exhausted_quota_blocks_before_job(self) -> None:
        harness = HandlerHarness()
        quota_repo = UsageQuotaRepositoryStub()
        user_id = uuid4()
        quota = UsageQuota.create(user_id, 2026, 2, conversions_limit=1, bytes_limit=10_000)
        quota.record_usage(10)
        quota_repo.update(quota)

        with pytest.raises(ConversionsQuotaExceededError):
            await self.create_service(harness, quota_repo).submit(
                user_id, "html-to-pdf", ConversionRequest(html_content="<p/>")
            )

        assert harness.jobs.jobs == {}

    @pytest.mark.asyncio
    async def test_unknown_type(self) -> None:
        service = self.create_service(HandlerHarness(), UsageQuotaRepositoryStub())

        with pytest.raises(ValidationError) as exc_info:
            await service.submit(uuid4(), "pptx-to-pdf", ConversionRequest())

        assert exc_info.value.code == "Conversion.UnknownType"


class TestHandlerInputLimits:
    @pytest.mark.asyncio
    async def test_private_url_rejected_before_job_exists(self) -> None:
        harness = HandlerHarness()
        harness.resolved["intranet.example.com"] = ["10.20.30.40"]

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(HtmlToPdfHandler).handle(
                uuid4(), ConversionRequest(url="https://intranet.example.com/report")
            )

        assert exc_info.value.code == "InputValidation.PrivateIpBlocked"
        assert harness.jobs.jobs == {}
        assert harness.metrics.started == []

    @pytest.mark.asyncio
    async def test_loopback_literal_rejected(self) -> None:
        harness = HandlerHarness()

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(HtmlToImageHandler).handle(
                uuid4(), ConversionRequest(url="http://127.0.0.1:8080/", target_format="png")
            )

        assert exc_info.value.code == "InputValidation.PrivateIpBlocked"
        assert harness.jobs.jobs == {}

    @pytest.mark.asyncio
    async def test_oversized_file_rejected_before_job_exists(self) -> None:
        harness = HandlerHarness()
        request = ConversionRequest(data=encode(b"%PDF" + b"x" * 100), target_format="png")

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(PdfToImageHandler).handle(uuid4(), request)

        assert exc_info.value.code == "InputValidation.FileTooLarge"
        assert harness.jobs.jobs == {}

    @pytest.mark.asyncio
    async def test_oversized_markdown_rejected(self) -> None:
        harness = HandlerHarness()

        with pytest.raises(ValidationError) as exc_info:
            await harness.handler(MarkdownToPdfHandler).handle(uuid4(), ConversionRequest(markdown="#" * 65))

        assert exc_info.value.code == "InputValidation.MarkdownContentTooLarge"
        assert harness.jobs.jobs == {}


class RaisingMetricsStub(MetricsStub):
    def record_started(self, source_format: str, target_format: str) -> None:
        raise RuntimeError("meter provider gone")

    def record_completed(self, source_format: str, target_format: str, duration_seconds: float) -> None:
        raise RuntimeError("meter provider gone")

    def record_failed(self, source_format: str, target_format: str, duration_seconds: float = 0.0) -> None:
        raise RuntimeError("meter provider gone")


class FailingUpdateJobRepositoryStub(ConversionJobRepositoryStub):
    """Accepts the Processing update, then fails every later write."""

    def update(self, job) -> None:
        if self.update_calls >= 1:
            self.update_calls += 1
            raise RepositoryError("update_job", "connection reset")
        super().update(job)


class TestHandlerSideEffectIsolation:
    @pytest.mark.asyncio
    async def test_webhook_notified_for_failed_job(self) -> None:
        harness = HandlerHarness()
        harness.converters.register(failing_converter("html", "pdf", "Renderer crashed"))

        job = await harness.handler(HtmlToPdfHandler).handle(
            uuid4(), ConversionRequest(html_content="<p/>", webhook_url="https://hooks.test/done")
        )

        assert job.status == ConversionStatus.FAILED
        assert len(harness.webhooks.notified) == 1
        assert harness.webhooks.notified[0].status == ConversionStatus.FAILED
        assert harness.webhooks.notified[0].error_message == "Renderer crashed"

    @pytest.mark.asyncio
    async def test_metrics_exception_does_not_change_outcome(self) -> None:
        harness = HandlerHarness()
        harness.metrics = RaisingMetricsStub()

        job = await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert job.status == ConversionStatus.COMPLETED
        assert only_job(harness.jobs).status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_metrics_exception_on_failure_path(self) -> None:
        harness = HandlerHarness()
        harness.metrics = RaisingMetricsStub()
        harness.converters.register(failing_converter("html", "pdf", "Renderer crashed"))

        job = await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert job.status == ConversionStatus.FAILED
        assert only_job(harness.jobs).error_message == "Renderer crashed"

    @pytest.mark.asyncio
    async def test_cancellation_propagates_when_final_write_fails(self, monkeypatch) -> None:
        async def run_inline(func, *args, **kwargs):
            return func(*args, **kwargs)

        monkeypatch.setattr(conversion_service, "run_in_threadpool", run_inline)
        harness = HandlerHarness()
        harness.jobs = FailingUpdateJobRepositoryStub()
        harness.converters.register(CancellingConverter("html", "pdf"))

        with pytest.raises(asyncio.CancelledError):
            await harness.handler(HtmlToPdfHandler).handle(uuid4(), ConversionRequest(html_content="<p/>"))

        assert harness.jobs.update_calls == 2
        assert only_job(harness.jobs).status == ConversionStatus.PROCESSING
        assert harness.metrics.failed == [("html", "pdf")]


class TestConversionServiceTemplates:
    create_service = TestConversionService.create_service

    def create_templates(self, user_id, **template) -> tuple[TemplateService, ConversionTemplate]:
        repo = ConversionTemplateRepositoryStub()
        record = ConversionTemplate.create(
            user_id,
            template.get("name", "Letter landscape"),
            template.get("target_format", "pdf"),
            template.get("options", ConversionOptions(page_size="A4", landscape=True, margin_top="2cm")),
        )
        repo.add(record)
        return TemplateService(repo, now=lambda: NOW), record

    @pytest.mark.asyncio
    async def test_request_options_win_over_template(self) -> None:
        harness = HandlerHarness()
        user_id = uuid4()
        templates, record = self.create_templates(user_id)
        service = self.create_service(harness, UsageQuotaRepositoryStub(), templates)

        job = await service.submit(
            user_id,
            "html-to-pdf",
            ConversionRequest(html_content="<p/>", options=ConversionOptions(page_size="Letter"), template_id=record.id),
        )

        assert job.status == ConversionStatus.COMPLETED
        received = harness.converters.get("html", "pdf").options[-1]
        assert received.page_size == "Letter"
        assert received.landscape is True
        assert received.margin_top == "2cm"

    @pytest.mark.asyncio
    async def test_template_supplies_missing_target_format(self) -> None:
        harness = HandlerHarness()
        user_id = uuid4()
        templates, record = self.create_templates(
            user_id, target_format="webp", options=ConversionOptions(dpi=300)
        )
        service = self.create_service(harness, UsageQuotaRepositoryStub(), templates)

        job = await service.submit(
            user_id, "pdf-to-image", ConversionRequest(data=encode(b"%PDF"), template_id=record.id)
        )

        assert job.target_format == "webp"
        assert harness.converters.get("pdf", "webp").options[-1].dpi == 300

    @pytest.mark.asyncio
    async def test_foreign_template_rejected_before_quota_and_job(self) -> None:
        harness = HandlerHarness()
        quota_repo = UsageQuotaRepositoryStub()
        templates, record = self.create_templates(uuid4())
        service = self.create_service(harness, quota_repo, templates)

        with pytest.raises(TemplateNotFoundError):
            await service.submit(
                uuid4(), "html-to-pdf", ConversionRequest(html_content="<p/>", template_id=record.id)
            )

        assert harness.jobs.jobs == {}
        assert quota_repo.added == []

    @pytest.mark.asyncio
    async def test_template_reference_without_template_store(self) -> None:
        service = self.create_service(HandlerHarness(), UsageQuotaRepositoryStub())

        with pytest.raises(TemplateNotFoundError):
            await service.submit(uuid4(), "html-to-pdf", ConversionRequest(html_content="<p/>", template_id=uuid4()))
