# src/app/services/batch_service.py
"""
Batch conversions: a bounded list of heterogeneous items run one after the
other, each isolated so a failing item never stops its siblings.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional, Sequence
from uuid import UUID

from src.app.domain.errors import (
    MAX_BATCH_SIZE,
    BatchValidationError,
    ConversionApiError,
    UnauthorizedError,
)
from src.app.domain.models import (
    BatchConversionResult,
    BatchItemResult,
    ConversionJob,
    ConversionStatus,
)
from src.app.services.conversion_service import ConversionRequest, ConversionService

logger = logging.getLogger(__name__)

FAILED_JOB_CODE = "ConversionJob.ConversionFailed"


class BatchConversionService:
    def __init__(self, conversion_service: ConversionService, max_batch_size: int = MAX_BATCH_SIZE):
        self._conversions = conversion_service
        self.max_batch_size = max_batch_size

    async def process(
        self,
        user_id: Optional[UUID],
        items: Sequence[ConversionRequest],
        webhook_url: Optional[str] = None,
    ) -> BatchConversionResult:
        """
        Run every item and collect one result per item, in request order.

        Args:
            user_id: The authenticated user
            items: Conversion requests tagged with their type
            webhook_url: Used for items that do not carry their own

        Returns:
            BatchConversionResult with per-item outcomes and counts

        Raises:
            UnauthorizedError: If there is no authenticated user
            BatchValidationError: If the batch is empty or too large
        """
        if user_id is None:
            raise UnauthorizedError()
        if not items:
            raise BatchValidationError.empty()
        if len(items) > self.max_batch_size:
            raise BatchValidationError.too_many(self.max_batch_size)

        logger.info("Processing batch: user=%s, items=%d", user_id, len(items))

        results = [
            await self._process_item(user_id, index, item, webhook_url)
            for index, item in enumerate(items)
        ]
        batch = BatchConversionResult(results=results)

        logger.info(
            "Batch finished: user=%s, total=%d, succeeded=%d, failed=%d",
            user_id, batch.total_items, batch.success_count, batch.failure_count,
        )
        return batch

    async def _process_item(
        self,
        user_id: UUID,
        index: int,
        item: ConversionRequest,
        webhook_url: Optional[str],
    ) -> BatchItemResult:
        if not item.type or not item.type.strip():
            return _failure(index, "Batch.MissingType", "Conversion type is required.")

        if self._conversions.handler_for(item.type) is None:
            return _failure(
                index,
                "Batch.InvalidType",
                f"Invalid conversion type '{item.type}'. Supported types: "
                f"{', '.join(self._conversions.supported_types)}.",
            )

        if not item.webhook_url and webhook_url:
            item = replace(item, webhook_url=webhook_url)

        try:
            job = await self._conversions.submit(user_id, item.type, item)
        except ConversionApiError as error:
            return _failure(index, error.code, error.message)
        except (MemoryError, RecursionError):
            raise
        except Exception as error:
            logger.exception("Batch item %d failed unexpectedly", index)
            return _failure(index, "Batch.ProcessingFailed", f"Processing failed: {error}")

        return _from_job(index, job)


def _failure(index: int, code: str, message: str) -> BatchItemResult:
    return BatchItemResult(index=index, success=False, error_code=code, error_message=message)


def _from_job(index: int, job: ConversionJob) -> BatchItemResult:
    if job.status == ConversionStatus.COMPLETED:
        return BatchItemResult(index=index, success=True, job=job)
    return BatchItemResult(
        index=index,
        success=False,
        job=job,
        error_code=FAILED_JOB_CODE,
        error_message=job.error_message,
    )
