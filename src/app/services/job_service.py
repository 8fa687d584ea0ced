# src/app/services/job_service.py
"""
Read side of conversion jobs: lookup, history, output download and
system-wide statistics.
"""
from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from src.app.domain.errors import (
    JobNotCompletedError,
    JobNotFoundError,
    NoOutputAvailableError,
    ValidationError,
)
from src.app.domain.models import (
    CloudStorageOutput,
    ConversionJob,
    ConversionStatus,
    FileDownloadResult,
    InlineOutput,
    JobStatistics,
    PagedResult,
)
from src.app.infra.db.base import ConversionJobRepository, UserRepository
from src.app.infra.storage.base import CloudStorageProvider, content_type_for

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class JobQueryService:
    def __init__(
        self,
        job_repository: ConversionJobRepository,
        storage: CloudStorageProvider,
        user_repository: Optional[UserRepository] = None,
    ):
        self._jobs = job_repository
        self._storage = storage
        self._users = user_repository

    def get_job(self, user_id: UUID, job_id: UUID) -> ConversionJob:
        """
        Get a job owned by the user.

        Raises:
            JobNotFoundError: If the job does not exist or belongs to someone else
        """
        job = self._jobs.get_by_id_for_user(job_id, user_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, user_id: UUID, page: int = 1, page_size: int = 20) -> PagedResult[ConversionJob]:
        if page < 1:
            raise ValidationError("Page must be at least 1.", code="Pagination.InvalidPage")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(
                f"Page size must be between 1 and {MAX_PAGE_SIZE}.",
                code="Pagination.InvalidPageSize",
            )
        return self._jobs.get_by_user(user_id, page, page_size)

    def download(self, user_id: UUID, job_id: UUID) -> FileDownloadResult:
        """
        Fetch a completed job's output bytes, from the job row or cloud storage.

        Raises:
            JobNotFoundError: If the job is not visible to the user
            JobNotCompletedError: If the job has not completed
            NoOutputAvailableError: If a completed job has no output
            StorageDownloadError: If the stored object cannot be read
        """
        job = self.get_job(user_id, job_id)

        if job.status != ConversionStatus.COMPLETED:
            raise JobNotCompletedError(job.id, job.status.value)

        if isinstance(job.output, CloudStorageOutput):
            content = self._storage.download(job.output.key)
        elif isinstance(job.output, InlineOutput):
            content = job.output.data
        else:
            raise NoOutputAvailableError(job.id)

        logger.info("Serving download: job=%s, size=%d bytes", job.id, len(content))

        return FileDownloadResult(
            content=content,
            file_name=job.output_file_name or f"{job.id}.{job.target_format}",
            content_type=content_type_for(job.target_format),
        )

    def get_statistics(self) -> JobStatistics:
        """Counts across all users, for the admin dashboard."""
        by_status = self._jobs.count_by_status()
        pending = by_status.get(ConversionStatus.PENDING, 0) + by_status.get(ConversionStatus.PROCESSING, 0)
        return JobStatistics(
            total_jobs=sum(by_status.values()),
            completed_jobs=by_status.get(ConversionStatus.COMPLETED, 0),
            failed_jobs=by_status.get(ConversionStatus.FAILED, 0),
            pending_jobs=pending,
            total_users=self._users.count() if self._users else 0,
            jobs_by_format=self._jobs.count_by_format(),
        )
