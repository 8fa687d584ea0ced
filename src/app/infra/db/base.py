# src/app/infra/db/base.py
"""
Abstract repositories for jobs, templates, quotas, rate-limit settings
and users.
Services depend only on these interfaces so backends can be swapped.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional
from uuid import UUID

from src.app.domain.models import (
    ConversionJob,
    ConversionStatus,
    ConversionTemplate,
    PagedResult,
    UsageQuota,
    UserAccount,
    UserRateLimitSettings,
)


class ConversionJobRepository(ABC):
    """
    Persistence for conversion jobs.

    Implementations:
    - SupabaseConversionJobRepository: Postgres table via Supabase
    """

    @abstractmethod
    def add(self, job: ConversionJob) -> None:
        """
        Persist a newly created job.

        Args:
            job: Job in Pending status
        """
        pass

    @abstractmethod
    def update(self, job: ConversionJob) -> None:
        """
        Persist the current state of an existing job.

        Args:
            job: Job whose status or outcome changed
        """
        pass

    @abstractmethod
    def get_by_id(self, job_id: UUID) -> Optional[ConversionJob]:
        pass

    @abstractmethod
    def get_by_id_for_user(self, job_id: UUID, user_id: UUID) -> Optional[ConversionJob]:
        """
        Get a job only if it is owned by the given user.

        Args:
            job_id: The job ID
            user_id: Expected owner

        Returns:
            The job, or None if absent or owned by someone else
        """
        pass

    @abstractmethod
    def get_by_user(self, user_id: UUID, page: int, page_size: int) -> PagedResult[ConversionJob]:
        """
        Get a page of a user's jobs, newest first.

        Args:
            user_id: The owner
            page: 1-based page number
            page_size: Items per page

        Returns:
            PagedResult with the page items and the user's total job count
        """
        pass

    @abstractmethod
    def get_expired(
        self,
        status: ConversionStatus,
        completed_before: datetime,
        limit: int,
    ) -> list[ConversionJob]:
        """
        Get terminal jobs that finished before a cutoff.

        Args:
            status: Completed or Failed
            completed_before: Retention cutoff
            limit: Max jobs to return

        Returns:
            Oldest matching jobs first
        """
        pass

    @abstractmethod
    def delete_many(self, job_ids: list[UUID]) -> int:
        """Delete jobs by ID and return how many were removed."""
        pass

    @abstractmethod
    def count_by_status(self) -> dict[ConversionStatus, int]:
        """Count all jobs per status. Statuses without jobs may be absent."""
        pass

    @abstractmethod
    def count_by_format(self) -> dict[str, int]:
        """Count all jobs per "source-to-target" format pair."""
        pass


class ConversionTemplateRepository(ABC):
    """
    Persistence for user-owned conversion templates.

    Implementations:
    - SupabaseConversionTemplateRepository: Postgres table via Supabase
    """

    @abstractmethod
    def add(self, template: ConversionTemplate) -> None:
        pass

    @abstractmethod
    def update(self, template: ConversionTemplate) -> None:
        pass

    @abstractmethod
    def delete(self, template_id: UUID) -> None:
        pass

    @abstractmethod
    def get_by_id_for_user(self, template_id: UUID, user_id: UUID) -> Optional[ConversionTemplate]:
        """
        Get a template only if it is owned by the given user.

        Returns:
            The template, or None if absent or owned by someone else
        """
        pass

    @abstractmethod
    def get_by_user(self, user_id: UUID, target_format: Optional[str] = None) -> list[ConversionTemplate]:
        """
        Get a user's templates ordered by name.

        Args:
            user_id: The owner
            target_format: Only templates for this format, when given
        """
        pass

    @abstractmethod
    def name_exists(self, user_id: UUID, name: str, exclude_id: Optional[UUID] = None) -> bool:
        """Whether the user already has a template with this name, ignoring `exclude_id`."""
        pass


class UsageQuotaRepository(ABC):
    """
    Persistence for monthly usage quotas.
    """

    @abstractmethod
    def add_if_absent(self, quota: UsageQuota) -> bool:
        """
        Insert the record unless one already exists for its user and month.

        Returns:
            True if this call inserted the record, False if another writer
            got there first
        """
        pass

    @abstractmethod
    def update(self, quota: UsageQuota) -> None:
        pass

    @abstractmethod
    def get_by_user_and_month(self, user_id: UUID, year: int, month: int) -> Optional[UsageQuota]:
        """
        Get the quota record for one calendar month.

        Args:
            user_id: The user
            year: Four-digit year
            month: 1-12

        Returns:
            The record, or None if the user had no activity that month
        """
        pass

    @abstractmethod
    def get_by_user(self, user_id: UUID) -> list[UsageQuota]:
        """Get every monthly record for a user in no particular order."""
        pass


class RateLimitSettingsRepository(ABC):
    """
    Persistence for per-user rate-limit tiers and overrides.
    """

    @abstractmethod
    def get_by_user(self, user_id: UUID) -> Optional[UserRateLimitSettings]:
        pass

    @abstractmethod
    def add_if_absent(self, settings: UserRateLimitSettings) -> bool:
        """Insert unless the user already has settings. Returns True if inserted."""
        pass

    @abstractmethod
    def update(self, settings: UserRateLimitSettings) -> None:
        pass


class UserRepository(ABC):

    @abstractmethod
    def get_by_id(self, user_id: UUID) -> Optional[UserAccount]:
        pass

    @abstractmethod
    def count(self) -> int:
        pass
