# src/app/schemas/usage.py
from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from src.app.domain.models import (
    EffectiveRateLimits,
    JobStatistics,
    PolicyOverride,
    UsageQuota,
    UserRateLimitSettings,
)


class UsageQuotaResponse(BaseModel):
    user_id: UUID
    year: int
    month: int
    conversions_used: int
    conversions_limit: int
    remaining_conversions: int
    bytes_used: int
    bytes_limit: int
    remaining_bytes: int
    is_quota_exceeded: bool
    updated_at: Optional[datetime] = None

    @classmethod
    def from_quota(cls, quota: UsageQuota) -> "UsageQuotaResponse":
        return cls(
            user_id=quota.user_id,
            year=quota.year,
            month=quota.month,
            conversions_used=quota.conversions_used,
            conversions_limit=quota.conversions_limit,
            remaining_conversions=quota.remaining_conversions,
            bytes_used=quota.bytes_used,
            bytes_limit=quota.bytes_limit,
            remaining_bytes=quota.remaining_bytes,
            is_quota_exceeded=quota.is_quota_exceeded,
            updated_at=quota.updated_at,
        )


class UpdateQuotaRequest(BaseModel):
    conversions_limit: int
    bytes_limit: int


class UpdateTierRequest(BaseModel):
    tier: str = Field(..., min_length=1)


class PolicyOverrideRequest(BaseModel):
    """Both values set replaces the override; both null clears it."""
    permit_limit: Optional[int] = None
    window_minutes: Optional[int] = None


class PolicyOverrideResponse(BaseModel):
    permit_limit: int
    window_minutes: int


class EffectiveLimitsResponse(BaseModel):
    permit_limit: int
    window_seconds: int
    bypass: bool
    source: str

    @classmethod
    def from_limits(cls, limits: EffectiveRateLimits) -> "EffectiveLimitsResponse":
        return cls(
            permit_limit=limits.permit_limit,
            window_seconds=int(limits.window.total_seconds()),
            bypass=limits.bypass,
            source=limits.source,
        )


class RateLimitSettingsResponse(BaseModel):
    user_id: UUID
    tier: str
    standard_override: Optional[PolicyOverrideResponse] = None
    conversion_override: Optional[PolicyOverrideResponse] = None
    effective_standard: Optional[EffectiveLimitsResponse] = None
    effective_conversion: Optional[EffectiveLimitsResponse] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_settings(
        cls,
        user_settings: UserRateLimitSettings,
        standard: Optional[EffectiveRateLimits] = None,
        conversion: Optional[EffectiveRateLimits] = None,
    ) -> "RateLimitSettingsResponse":
        return cls(
            user_id=user_settings.user_id,
            tier=user_settings.tier.value,
            standard_override=_override(user_settings.standard_override),
            conversion_override=_override(user_settings.conversion_override),
            effective_standard=EffectiveLimitsResponse.from_limits(standard) if standard else None,
            effective_conversion=EffectiveLimitsResponse.from_limits(conversion) if conversion else None,
            updated_at=user_settings.updated_at,
        )


def _override(override: Optional[PolicyOverride]) -> Optional[PolicyOverrideResponse]:
    if override is None:
        return None
    return PolicyOverrideResponse(
        permit_limit=override.permit_limit,
        window_minutes=override.window_minutes,
    )


class JobStatisticsResponse(BaseModel):
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    pending_jobs: int
    total_users: int
    success_rate: float
    jobs_by_format: dict[str, int]

    @classmethod
    def from_statistics(cls, stats: JobStatistics) -> "JobStatisticsResponse":
        return cls(
            total_jobs=stats.total_jobs,
            completed_jobs=stats.completed_jobs,
            failed_jobs=stats.failed_jobs,
            pending_jobs=stats.pending_jobs,
            total_users=stats.total_users,
            success_rate=stats.success_rate,
            jobs_by_format=stats.jobs_by_format,
        )
