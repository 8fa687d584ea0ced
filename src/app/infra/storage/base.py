# src/app/infra/storage/base.py
"""
Abstract base class for conversion output storage.
This interface allows swapping object stores (S3, MinIO, R2, ...) or turning
cloud storage off entirely, in which case outputs stay inline on the job.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from uuid import UUID

CONTENT_TYPES = {
    "pdf": "application/pdf",
    "html": "text/html",
    "md": "text/markdown",
    "markdown": "text/markdown",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def content_type_for(format_name: str) -> str:
    return CONTENT_TYPES.get(format_name.lower(), DEFAULT_CONTENT_TYPE)


class CloudStorageProvider(ABC):
    """
    Abstract interface for object storage operations.

    Implementations:
    - S3StorageProvider: any S3-compatible store via boto3
    - DisabledStorageProvider: cloud storage switched off
    """

    @property
    @abstractmethod
    def is_enabled(self) -> bool:
        """Whether completed outputs should be uploaded instead of kept inline."""
        pass

    @abstractmethod
    def upload(self, data: bytes, object_key: str, content_type: str) -> str:
        """
        Upload bytes under the given key.

        Args:
            data: Object content
            object_key: Destination key
            content_type: MIME type stored with the object

        Returns:
            The key the object was stored under

        Raises:
            StorageUploadError: If the store rejects the upload
        """
        pass

    @abstractmethod
    def download(self, object_key: str) -> bytes:
        """
        Download an object's content.

        Raises:
            StorageDownloadError: If the object is missing or unreadable
        """
        pass

    @abstractmethod
    def delete(self, object_key: str) -> bool:
        """
        Delete an object from storage.

        Returns:
            True if deletion was successful
        """
        pass

    @abstractmethod
    def generate_signed_get_url(self, object_key: str, expires_seconds: int = 3600) -> str:
        pass

    def generate_output_key(self, user_id: UUID, job_id: UUID, file_name: str) -> str:
        """
        Build the key for a job's output.

        Format: {user_id}/{job_id}/{file_name}
        """
        return f"{user_id}/{job_id}/{file_name}"
