# src/app/infra/storage/s3_provider.py
"""
S3-compatible storage provider for conversion outputs.
Works against AWS S3, MinIO or Cloudflare R2 through a custom endpoint.
"""
from __future__ import annotations

import logging

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from src.app.config import CloudStorageSettings
from src.app.domain.errors import StorageDownloadError, StorageError, StorageUploadError
from src.app.infra.storage.base import CloudStorageProvider

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = ("404", "NoSuchKey")


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


class S3StorageProvider(CloudStorageProvider):
    """
    Cloud storage provider using boto3.

    Configured through CloudStorageSettings (CLOUD_STORAGE_* variables):
    service URL, bucket, access key, secret key, region and path style.
    """

    def __init__(self, settings: CloudStorageSettings, client=None):
        if not settings.bucket_name:
            raise StorageError("Missing cloud storage configuration. Required: CLOUD_STORAGE_BUCKET_NAME")

        self.bucket_name = settings.bucket_name
        self._client = client or boto3.client(
            "s3",
            endpoint_url=settings.service_url,
            aws_access_key_id=settings.access_key,
            aws_secret_access_key=settings.secret_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
                s3={"addressing_style": "path" if settings.force_path_style else "auto"},
            ),
            region_name=settings.region,
        )

        logger.info(
            "S3StorageProvider initialized: bucket=%s, endpoint=%s",
            self.bucket_name,
            settings.service_url or "aws",
        )

    @property
    def is_enabled(self) -> bool:
        return True

    def upload(self, data: bytes, object_key: str, content_type: str) -> str:
        try:
            self._client.put_object(
                Bucket=self.bucket_name,
                Key=object_key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to upload to cloud storage: key=%s, error=%s", object_key, e)
            raise StorageUploadError(object_key, str(e)) from e

        logger.info("Uploaded object: key=%s, size=%d bytes", object_key, len(data))
        return object_key

    def download(self, object_key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket_name, Key=object_key)
            content = response["Body"].read()
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                raise StorageDownloadError(object_key, "Object not found") from e
            logger.error("Failed to download from cloud storage: %s", e)
            raise StorageDownloadError(object_key, str(e)) from e
        except BotoCoreError as e:
            logger.error("Failed to download from cloud storage: %s", e)
            raise StorageDownloadError(object_key, str(e)) from e

        logger.debug("Downloaded object: key=%s, size=%d bytes", object_key, len(content))
        return content

    def delete(self, object_key: str) -> bool:
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=object_key)
            logger.info("Deleted object: key=%s", object_key)
            return True

        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to delete object: key=%s, error=%s", object_key, e)
            return False

    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self.bucket_name, "Key": object_key},
                ExpiresIn=expires_seconds,
            )
        except ClientError as e:
            logger.error("Failed to generate signed GET URL: %s", e)
            raise StorageError(f"Failed to generate download URL: {e}") from e


class DisabledStorageProvider(CloudStorageProvider):
    """Placeholder used when CLOUD_STORAGE_ENABLED is false."""

    @property
    def is_enabled(self) -> bool:
        return False

    def upload(self, data: bytes, object_key: str, content_type: str) -> str:
        raise StorageUploadError(object_key, "Cloud storage is disabled")

    def download(self, object_key: str) -> bytes:
        raise StorageDownloadError(object_key, "Cloud storage is disabled")

    def delete(self, object_key: str) -> bool:
        return False

    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        raise StorageError("Cloud storage is disabled")


def create_storage_provider(settings: CloudStorageSettings) -> CloudStorageProvider:
    if not settings.enabled:
        return DisabledStorageProvider()
    return S3StorageProvider(settings)
