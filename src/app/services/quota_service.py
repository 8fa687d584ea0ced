# src/app/services/quota_service.py
"""
Quota management service.
Handles monthly conversion and byte limits per user.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from src.app.config import UsageQuotaSettings
from src.app.domain.errors import (
    BytesQuotaExceededError,
    ConversionsQuotaExceededError,
    RepositoryError,
    ValidationError,
)
from src.app.domain.models import UsageQuota
from src.app.infra.db.base import UsageQuotaRepository, UserRepository

logger = logging.getLogger(__name__)

# Stored limit used when an admin limit of 0 means "unlimited".
UNLIMITED = 2**63 - 1


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class QuotaService:
    """
    Service for managing monthly usage quotas.

    Responsibilities:
    - Gate conversions before they start (check_quota)
    - Record consumption after a successful conversion (record_usage)
    - Administrative limit changes and usage history

    The check and the record are separate calls around the conversion, so
    concurrent requests from one user can both pass the check and overshoot
    the limit by the number of in-flight conversions. The overshoot is
    bounded and accepted; the gate is advisory.
    """

    def __init__(
        self,
        repository: UsageQuotaRepository,
        user_repository: UserRepository,
        settings: UsageQuotaSettings,
        now: Callable[[], datetime] = _now_utc,
    ):
        self._repo = repository
        self._users = user_repository
        self.settings = settings
        self._now = now

    def check_quota(self, user_id: UUID) -> Optional[UsageQuota]:
        """
        Check whether the user may start another conversion this month.

        Args:
            user_id: The user to check

        Returns:
            The current month's quota, or None when quotas do not apply
            (disabled, or an exempt admin)

        Raises:
            ConversionsQuotaExceededError: If the conversion count is used up
            BytesQuotaExceededError: If the byte allowance is used up
        """
        if not self.settings.enabled:
            return None

        if self._is_exempt_admin(user_id):
            logger.debug("Quota check skipped for admin user %s", user_id)
            return None

        quota = self.get_current_quota(user_id)

        if quota.is_conversions_quota_exceeded:
            logger.warning(
                "Conversions quota exceeded: user=%s, used=%d, limit=%d",
                user_id, quota.conversions_used, quota.conversions_limit,
            )
            raise ConversionsQuotaExceededError(quota.conversions_used, quota.conversions_limit)

        if quota.is_bytes_quota_exceeded:
            logger.warning(
                "Bytes quota exceeded: user=%s, used=%d, limit=%d",
                user_id, quota.bytes_used, quota.bytes_limit,
            )
            raise BytesQuotaExceededError(quota.bytes_used, quota.bytes_limit)

        return quota

    def record_usage(self, user_id: UUID, bytes_processed: int) -> Optional[UsageQuota]:
        """
        Count one finished conversion against the current month.

        Args:
            user_id: The user
            bytes_processed: Size of the conversion output

        Returns:
            The updated quota, or None when quotas are disabled
        """
        if not self.settings.enabled:
            return None

        quota = self.get_current_quota(user_id)
        quota.record_usage(bytes_processed, now=self._now())
        self._repo.update(quota)

        logger.info(
            "Usage recorded: user=%s, bytes=%d, conversions=%d/%d",
            user_id, bytes_processed, quota.conversions_used, quota.conversions_limit,
        )
        return quota

    def get_current_quota(self, user_id: UUID) -> UsageQuota:
        """
        Get the current month's quota, creating it from defaults if absent.

        Concurrent first requests may both try to create the record; the
        repository keeps the first insert and the loser reads it back.
        """
        now = self._now()
        quota = self._repo.get_by_user_and_month(user_id, now.year, now.month)
        if quota is not None:
            return quota

        conversions_limit, bytes_limit = self._default_limits(user_id)
        quota = UsageQuota.create(
            user_id=user_id,
            year=now.year,
            month=now.month,
            conversions_limit=conversions_limit,
            bytes_limit=bytes_limit,
            now=now,
        )
        if not self._repo.add_if_absent(quota):
            existing = self._repo.get_by_user_and_month(user_id, now.year, now.month)
            if existing is None:
                raise RepositoryError("add_quota", "record neither inserted nor found")
            logger.debug("Usage quota created concurrently: user=%s", user_id)
            return existing

        logger.info(
            "Created usage quota: user=%s, period=%04d-%02d, conversions_limit=%d, bytes_limit=%d",
            user_id, quota.year, quota.month, conversions_limit, bytes_limit,
        )
        return quota

    def update_limits(self, user_id: UUID, conversions_limit: int, bytes_limit: int) -> UsageQuota:
        """
        Overwrite the current month's limits, leaving usage untouched.

        Raises:
            ValidationError: If either limit is negative
        """
        if conversions_limit < 0 or bytes_limit < 0:
            raise ValidationError("Quota limits cannot be negative.", code="Quota.InvalidLimits")

        quota = self.get_current_quota(user_id)
        quota.update_limits(conversions_limit, bytes_limit, now=self._now())
        self._repo.update(quota)

        logger.info(
            "Quota limits updated: user=%s, conversions_limit=%d, bytes_limit=%d",
            user_id, conversions_limit, bytes_limit,
        )
        return quota

    def get_history(self, user_id: UUID, months: int = 12) -> list[UsageQuota]:
        """
        Get up to `months` most recent monthly records, newest first.

        Months without a record are simply absent from the result.
        """
        if months < 1:
            raise ValidationError("Months must be at least 1.", code="Quota.InvalidMonths")

        records = sorted(
            self._repo.get_by_user(user_id),
            key=lambda quota: (quota.year, quota.month),
            reverse=True,
        )
        return records[:months]

    def _is_exempt_admin(self, user_id: UUID) -> bool:
        if not self.settings.exempt_admins:
            return False
        user = self._users.get_by_id(user_id)
        return bool(user and user.is_admin)

    def _default_limits(self, user_id: UUID) -> tuple[int, int]:
        if self._is_exempt_admin(user_id):
            return (
                self.settings.admin_monthly_conversions or UNLIMITED,
                self.settings.admin_monthly_bytes or UNLIMITED,
            )
        return self.settings.default_monthly_conversions, self.settings.default_monthly_bytes
