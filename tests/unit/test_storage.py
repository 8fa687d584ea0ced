from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError
from uuid import uuid4

from src.app.config import CloudStorageSettings
from src.app.domain.errors import StorageDownloadError, StorageError, StorageUploadError
from src.app.infra.storage.base import content_type_for
from src.app.infra.storage.s3_provider import (
    DisabledStorageProvider,
    S3StorageProvider,
    create_storage_provider,
)


def client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class S3ClientStub:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_with: ClientError | None = None

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: str) -> None:
        if self.fail_with:
            raise self.fail_with
        self.objects[Key] = Body

    def get_object(self, Bucket: str, Key: str) -> dict:
        if self.fail_with:
            raise self.fail_with
        if Key not in self.objects:
            raise client_error("NoSuchKey", "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def delete_object(self, Bucket: str, Key: str) -> None:
        if self.fail_with:
            raise self.fail_with
        self.objects.pop(Key, None)

    def generate_presigned_url(self, ClientMethod: str, Params: dict, ExpiresIn: int) -> str:
        return f"https://storage.test/{Params['Bucket']}/{Params['Key']}?expires={ExpiresIn}"


def create_provider() -> tuple[S3StorageProvider, S3ClientStub]:
    client = S3ClientStub()
    settings = CloudStorageSettings(enabled=True, bucket_name="outputs")
    return S3StorageProvider(settings, client=client), client


class TestS3StorageProvider:
    def test_upload_then_download(self) -> None:
        provider, _ = create_provider()

        key = provider.upload(b"%PDF", "u/j/out.pdf", "application/pdf")

        assert key == "u/j/out.pdf"
        assert provider.download(key) == b"%PDF"

    def test_upload_failure_wrapped(self) -> None:
        provider, client = create_provider()
        client.fail_with = client_error("AccessDenied", "PutObject")

        with pytest.raises(StorageUploadError) as exc_info:
            provider.upload(b"x", "k", "text/plain")

        assert exc_info.value.code == "Storage.UploadFailed"
        assert isinstance(exc_info.value.__cause__, ClientError)

    def test_missing_object(self) -> None:
        provider, _ = create_provider()

        with pytest.raises(StorageDownloadError) as exc_info:
            provider.download("missing")

        assert exc_info.value.reason == "Object not found"

    def test_delete_failure_returns_false(self) -> None:
        provider, client = create_provider()
        client.fail_with = client_error("InternalError", "DeleteObject")

        assert provider.delete("k") is False

    def test_signed_url(self) -> None:
        provider, _ = create_provider()

        url = provider.generate_signed_get_url("u/j/out.pdf", expires_seconds=120)

        assert url == "https://storage.test/outputs/u/j/out.pdf?expires=120"

    def test_output_key_layout(self) -> None:
        provider, _ = create_provider()
        user_id, job_id = uuid4(), uuid4()

        key = provider.generate_output_key(user_id, job_id, "report.pdf")

        assert key.startswith(f"{user_id}/{job_id}/")
        assert key.endswith("report.pdf")

    def test_missing_bucket_rejected(self) -> None:
        with pytest.raises(StorageError):
            S3StorageProvider(CloudStorageSettings(enabled=True, bucket_name=""), client=S3ClientStub())


class TestDisabledStorageProvider:
    def test_factory_returns_disabled_provider(self) -> None:
        provider = create_storage_provider(CloudStorageSettings(enabled=False))

        assert isinstance(provider, DisabledStorageProvider)
        assert not provider.is_enabled

    def test_operations_refused(self) -> None:
        provider = DisabledStorageProvider()

        with pytest.raises(StorageUploadError):
            provider.upload(b"x", "k", "text/plain")
        assert provider.delete("k") is False


def test_content_type_for_known_and_unknown_formats() -> None:
    assert content_type_for("pdf") == "application/pdf"
    assert content_type_for("weird") == "application/octet-stream"
