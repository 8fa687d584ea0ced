# src/app/routers/v1/quota.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from starlette.concurrency import run_in_threadpool

from src.app.deps import CurrentUser, get_quota_service, rate_limited
from src.app.domain.models import PolicyName
from src.app.schemas.usage import UsageQuotaResponse
from src.app.services.quota_service import QuotaService

router = APIRouter(prefix="/api/v1/quota", tags=["quota"])


@router.get("/", response_model=UsageQuotaResponse)
async def current_quota(
    user: CurrentUser = Depends(rate_limited(PolicyName.STANDARD)),
    quota: QuotaService = Depends(get_quota_service),
) -> UsageQuotaResponse:
    record = await run_in_threadpool(quota.get_current_quota, user.user_id)
    return UsageQuotaResponse.from_quota(record)
