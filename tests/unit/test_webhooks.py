from __future__ import annotations

import json

import httpx
import pytest
from uuid import uuid4

from src.app.config import WebhookSettings
from src.app.domain.errors import StorageError
from src.app.domain.models import ConversionJob
from src.app.infra.webhooks import WebhookSender, build_payload
from tests.unit.stubs import StorageProviderStub


def completed_job(webhook_url: str | None = "https://hooks.test/done") -> ConversionJob:
    job = ConversionJob.create(uuid4(), "markdown", "pdf", "notes.md", webhook_url=webhook_url)
    job.mark_processing()
    job.mark_completed("notes.pdf", b"%PDF")
    return job


def create_sender(handler, max_retries: int = 3, storage: StorageProviderStub | None = None) -> WebhookSender:
    settings = WebhookSettings(timeout_seconds=5, max_retries=max_retries, retry_delay_milliseconds=0)
    return WebhookSender(
        settings,
        transport=httpx.MockTransport(handler),
        storage=storage,
        signed_url_expiry_seconds=900,
    )


class TestBuildPayload:
    def test_payload_fields(self) -> None:
        job = completed_job()

        payload = build_payload(job)

        assert payload["jobId"] == str(job.id)
        assert payload["status"] == "Completed"
        assert payload["outputFileName"] == "notes.pdf"
        assert payload["errorMessage"] is None
        assert payload["downloadUrl"] == f"/api/v1/convert/{job.id}/download"


class TestWebhookSender:
    @pytest.mark.asyncio
    async def test_successful_delivery(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        job = completed_job()
        assert await create_sender(handler).notify(job)
        assert received[0]["jobId"] == str(job.id)

    @pytest.mark.asyncio
    async def test_retries_until_success(self) -> None:
        statuses = iter([500, 502, 204])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        assert await create_sender(handler).notify(completed_job())

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("connection refused", request=request)

        assert not await create_sender(handler, max_retries=2).notify(completed_job())
        assert calls == 2

    @pytest.mark.asyncio
    async def test_no_url_no_request(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        assert not await create_sender(handler).notify(completed_job(webhook_url=None))

    @pytest.mark.asyncio
    async def test_unexpected_error_swallowed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise ValueError("bad transport")

        assert not await create_sender(handler).notify(completed_job())


def cloud_job() -> ConversionJob:
    job = ConversionJob.create(uuid4(), "html", "pdf", "page.html", webhook_url="https://hooks.test/done")
    job.mark_processing()
    job.mark_completed_in_cloud("page.pdf", f"{job.user_id}/{job.id}/page.pdf", 4)
    return job


class SigningFailsStorageStub(StorageProviderStub):
    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        raise StorageError("signing key unavailable")


class TestSignedDownloadUrl:
    @pytest.mark.asyncio
    async def test_cloud_output_gets_presigned_url(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        job = cloud_job()
        assert await create_sender(handler, storage=StorageProviderStub(enabled=True)).notify(job)

        assert received[0]["downloadUrl"] == f"https://storage.test/{job.cloud_storage_key}?expires=900"

    @pytest.mark.asyncio
    async def test_inline_output_uses_api_route(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        job = completed_job()
        await create_sender(handler, storage=StorageProviderStub(enabled=True)).notify(job)

        assert received[0]["downloadUrl"] == f"/api/v1/convert/{job.id}/download"

    @pytest.mark.asyncio
    async def test_signing_failure_falls_back_to_api_route(self) -> None:
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        job = cloud_job()
        assert await create_sender(handler, storage=SigningFailsStorageStub(enabled=True)).notify(job)

        assert received[0]["downloadUrl"] == f"/api/v1/convert/{job.id}/download"
