# src/app/infra/webhooks.py
"""
Webhook notifications for finished conversion jobs.
Delivery is best effort: every failure is logged and swallowed.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from src.app.config import WebhookSettings
from src.app.domain.errors import StorageError
from src.app.domain.models import ConversionJob
from src.app.infra.storage.base import CloudStorageProvider

logger = logging.getLogger(__name__)

DOWNLOAD_URL_TEMPLATE = "/api/v1/convert/{job_id}/download"


def build_payload(job: ConversionJob, download_url: Optional[str] = None) -> dict[str, Any]:
    return {
        "jobId": str(job.id),
        "status": job.status.value,
        "sourceFormat": job.source_format,
        "targetFormat": job.target_format,
        "inputFileName": job.input_file_name,
        "outputFileName": job.output_file_name,
        "errorMessage": job.error_message,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
        "downloadUrl": download_url or DOWNLOAD_URL_TEMPLATE.format(job_id=job.id),
    }


class WebhookSender:
    def __init__(
        self,
        settings: WebhookSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storage: Optional[CloudStorageProvider] = None,
        signed_url_expiry_seconds: int = 3600,
    ):
        self.settings = settings
        self._transport = transport
        self._storage = storage
        self._signed_url_expiry_seconds = signed_url_expiry_seconds

    async def notify(self, job: ConversionJob) -> bool:
        """
        POST the job summary to its webhook URL, retrying on failure.

        Returns:
            True if any attempt got a 2xx response. Never raises.
        """
        if not job.webhook_url:
            return False

        try:
            return await self._deliver(job)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            logger.error("Webhook delivery crashed for job %s: %s", job.id, error)
            return False

    async def _deliver(self, job: ConversionJob) -> bool:
        payload = build_payload(job, self._signed_download_url(job))
        attempts = self.settings.max_retries
        delay = self.settings.retry_delay_milliseconds / 1000

        async with httpx.AsyncClient(timeout=self.settings.timeout_seconds, transport=self._transport) as client:
            for attempt in range(1, attempts + 1):
                logger.debug(
                    "Sending webhook for job %s to %s (attempt %d/%d)",
                    job.id, job.webhook_url, attempt, attempts,
                )
                try:
                    response = await client.post(job.webhook_url, json=payload)
                    if response.is_success:
                        logger.info("Webhook sent for job %s to %s", job.id, job.webhook_url)
                        return True
                    logger.warning(
                        "Webhook for job %s returned status %d",
                        job.id, response.status_code,
                    )
                except httpx.TimeoutException as error:
                    logger.warning(
                        "Webhook timed out for job %s (attempt %d/%d): %s",
                        job.id, attempt, attempts, error,
                    )
                except httpx.HTTPError as error:
                    logger.warning(
                        "Webhook request failed for job %s (attempt %d/%d): %s",
                        job.id, attempt, attempts, error,
                    )

                if attempt < attempts and delay > 0:
                    await asyncio.sleep(delay)

        logger.error("All webhook attempts failed for job %s to %s", job.id, job.webhook_url)
        return False

    def _signed_download_url(self, job: ConversionJob) -> Optional[str]:
        """Presigned URL for cloud outputs; None falls back to the API download route."""
        if self._storage is None or not self._storage.is_enabled or not job.cloud_storage_key:
            return None
        try:
            return self._storage.generate_signed_get_url(job.cloud_storage_key, self._signed_url_expiry_seconds)
        except StorageError as error:
            logger.warning("Could not sign download URL for job %s: %s", job.id, error)
            return None
