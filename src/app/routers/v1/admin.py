# src/app/routers/v1/admin.py
"""
Administrative routes for a user's quota and rate-limit settings, plus
job statistics across all users.
Rate-limit changes also drop the user's live windows so they apply at once.
"""
from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from starlette.concurrency import run_in_threadpool

from src.app.deps import (
    CurrentUser,
    get_job_query_service,
    get_quota_service,
    get_rate_limit_service,
    get_rate_limiter,
    require_admin,
)
from src.app.infra.rate_limiter import FixedWindowRateLimiter
from src.app.schemas.usage import (
    JobStatisticsResponse,
    PolicyOverrideRequest,
    RateLimitSettingsResponse,
    UpdateQuotaRequest,
    UpdateTierRequest,
    UsageQuotaResponse,
)
from src.app.services.job_service import JobQueryService
from src.app.services.quota_service import QuotaService
from src.app.services.rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


@router.get("/users/{user_id}/quota", response_model=UsageQuotaResponse)
async def get_user_quota(
    user_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    quota: QuotaService = Depends(get_quota_service),
) -> UsageQuotaResponse:
    record = await run_in_threadpool(quota.get_current_quota, user_id)
    return UsageQuotaResponse.from_quota(record)


@router.put("/users/{user_id}/quota", response_model=UsageQuotaResponse)
async def update_user_quota(
    user_id: UUID,
    payload: UpdateQuotaRequest,
    admin: CurrentUser = Depends(require_admin),
    quota: QuotaService = Depends(get_quota_service),
) -> UsageQuotaResponse:
    record = await run_in_threadpool(
        quota.update_limits, user_id, payload.conversions_limit, payload.bytes_limit
    )
    logger.info("Admin %s updated quota limits for user %s", admin.id, user_id)
    return UsageQuotaResponse.from_quota(record)


@router.get("/users/{user_id}/quota/history", response_model=list[UsageQuotaResponse])
async def get_user_quota_history(
    user_id: UUID,
    months: int = Query(default=12),
    admin: CurrentUser = Depends(require_admin),
    quota: QuotaService = Depends(get_quota_service),
) -> list[UsageQuotaResponse]:
    records = await run_in_threadpool(quota.get_history, user_id, months)
    return [UsageQuotaResponse.from_quota(record) for record in records]


@router.get("/users/{user_id}/rate-limits", response_model=RateLimitSettingsResponse)
async def get_user_rate_limits(
    user_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    limits: RateLimitService = Depends(get_rate_limit_service),
) -> RateLimitSettingsResponse:
    user_settings, standard, conversion = await run_in_threadpool(limits.describe, user_id)
    return RateLimitSettingsResponse.from_settings(user_settings, standard, conversion)


@router.put("/users/{user_id}/rate-limits/tier", response_model=RateLimitSettingsResponse)
async def update_user_tier(
    user_id: UUID,
    payload: UpdateTierRequest,
    admin: CurrentUser = Depends(require_admin),
    limits: RateLimitService = Depends(get_rate_limit_service),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> RateLimitSettingsResponse:
    await run_in_threadpool(limits.update_tier, user_id, payload.tier)
    limiter.reset(user_id)
    logger.info("Admin %s set tier %s for user %s", admin.id, payload.tier, user_id)
    return RateLimitSettingsResponse.from_settings(*await run_in_threadpool(limits.describe, user_id))


@router.put("/users/{user_id}/rate-limits/overrides/{policy}", response_model=RateLimitSettingsResponse)
async def set_user_policy_override(
    user_id: UUID,
    policy: str,
    payload: PolicyOverrideRequest,
    admin: CurrentUser = Depends(require_admin),
    limits: RateLimitService = Depends(get_rate_limit_service),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> RateLimitSettingsResponse:
    await run_in_threadpool(
        limits.set_policy_override, user_id, policy, payload.permit_limit, payload.window_minutes
    )
    limiter.reset(user_id)
    return RateLimitSettingsResponse.from_settings(*await run_in_threadpool(limits.describe, user_id))


@router.delete("/users/{user_id}/rate-limits/overrides", response_model=RateLimitSettingsResponse)
async def clear_user_overrides(
    user_id: UUID,
    admin: CurrentUser = Depends(require_admin),
    limits: RateLimitService = Depends(get_rate_limit_service),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> RateLimitSettingsResponse:
    await run_in_threadpool(limits.clear_overrides, user_id)
    limiter.reset(user_id)
    logger.info("Admin %s cleared rate limit overrides for user %s", admin.id, user_id)
    return RateLimitSettingsResponse.from_settings(*await run_in_threadpool(limits.describe, user_id))


@router.get("/jobs/statistics", response_model=JobStatisticsResponse)
async def get_job_statistics(
    admin: CurrentUser = Depends(require_admin),
    jobs: JobQueryService = Depends(get_job_query_service),
) -> JobStatisticsResponse:
    stats = await run_in_threadpool(jobs.get_statistics)
    return JobStatisticsResponse.from_statistics(stats)
