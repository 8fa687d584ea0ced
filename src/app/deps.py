# src/app/deps.py
"""
FastAPI dependencies: Supabase client, authenticated user and the service
graph. Settings are read once here and passed into services explicitly.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from typing import Callable
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from supabase import Client, create_client

from src.app.config import (
    cloud_storage_settings,
    input_validation_settings,
    quota_settings,
    rate_limit_settings,
    settings,
    webhook_settings,
)
from src.app.domain.errors import ForbiddenError, RateLimitExceededError
from src.app.domain.models import PolicyName
from src.app.infra.converters.base import ConverterRegistry, create_remote_registry
from src.app.infra.db.supabase_jobs_repo import (
    SupabaseConversionJobRepository,
    SupabaseConversionTemplateRepository,
    SupabaseRateLimitSettingsRepository,
    SupabaseUsageQuotaRepository,
    SupabaseUserRepository,
)
from src.app.infra.metrics import ConversionMetrics
from src.app.infra.rate_limiter import FixedWindowRateLimiter
from src.app.infra.storage.base import CloudStorageProvider
from src.app.infra.storage.s3_provider import create_storage_provider
from src.app.infra.webhooks import WebhookSender
from src.app.services.batch_service import BatchConversionService
from src.app.services.conversion_service import ConversionService, create_handlers
from src.app.services.input_validation import InputValidator
from src.app.services.job_service import JobQueryService
from src.app.services.quota_service import QuotaService
from src.app.services.rate_limit_service import RateLimitService
from src.app.services.template_service import TemplateService

logger = logging.getLogger(__name__)

_client: Client | None = None
_storage: CloudStorageProvider | None = None
_converters: ConverterRegistry | None = None
_metrics: ConversionMetrics | None = None
_validator: InputValidator | None = None
_rate_limit_service: RateLimitService | None = None
_rate_limiter = FixedWindowRateLimiter()


def get_supabase() -> Client:
    global _client
    if _client is None:
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
        _client = create_client(str(settings.SUPABASE_URL), settings.SUPABASE_SERVICE_ROLE_KEY)
    return _client


# =============================================================================
# Authentication
# =============================================================================

auth_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    email: str | None = None
    name: str | None = None

    @property
    def user_id(self) -> UUID:
        return UUID(self.id)


async def get_current_user(
    cred: HTTPAuthorizationCredentials | None = Depends(auth_scheme),
    supa: Client = Depends(get_supabase),
) -> CurrentUser:
    """
    Accept Authorization: Bearer <access_token> issued by Supabase,
    validate it against GoTrue and return the minimal user profile.
    """
    if cred is None or cred.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")

    token = cred.credentials
    try:
        res = supa.auth.get_user(token)
        user = res.user
        if not user:
            raise HTTPException(status_code=401, detail="Invalid token")

        name = None
        meta = getattr(user, "user_metadata", None) or {}
        if isinstance(meta, dict):
            name = meta.get("name")

        return CurrentUser(id=str(user.id), email=user.email, name=name)
    except HTTPException:
        raise
    except Exception as error:
        logger.info("Token validation failed: %s", error)
        raise HTTPException(status_code=401, detail="Invalid/expired token")


# =============================================================================
# Repositories and infrastructure
# =============================================================================

def get_user_repository(supa: Client = Depends(get_supabase)) -> SupabaseUserRepository:
    return SupabaseUserRepository(supa)


def get_job_repository(supa: Client = Depends(get_supabase)) -> SupabaseConversionJobRepository:
    return SupabaseConversionJobRepository(supa)


def get_storage() -> CloudStorageProvider:
    global _storage
    if _storage is None:
        _storage = create_storage_provider(cloud_storage_settings)
    return _storage


def get_converters() -> ConverterRegistry:
    global _converters
    if _converters is None:
        _converters = create_remote_registry(
            settings.CONVERTER_SERVICE_URL,
            settings.CONVERTER_TIMEOUT_SECONDS,
        )
    return _converters


def get_metrics() -> ConversionMetrics:
    global _metrics
    if _metrics is None:
        _metrics = ConversionMetrics()
    return _metrics


def get_input_validator() -> InputValidator:
    global _validator
    if _validator is None:
        _validator = InputValidator(input_validation_settings)
    return _validator


# =============================================================================
# Services
# =============================================================================

def get_quota_service(
    supa: Client = Depends(get_supabase),
    users: SupabaseUserRepository = Depends(get_user_repository),
) -> QuotaService:
    return QuotaService(SupabaseUsageQuotaRepository(supa), users, quota_settings)


def get_rate_limit_service(supa: Client = Depends(get_supabase)) -> RateLimitService:
    # One instance per process so the settings cache is shared.
    global _rate_limit_service
    if _rate_limit_service is None:
        _rate_limit_service = RateLimitService(
            SupabaseRateLimitSettingsRepository(supa),
            SupabaseUserRepository(supa),
            rate_limit_settings,
        )
    return _rate_limit_service


def get_template_service(supa: Client = Depends(get_supabase)) -> TemplateService:
    return TemplateService(SupabaseConversionTemplateRepository(supa))


def create_webhook_sender() -> WebhookSender:
    return WebhookSender(
        webhook_settings,
        storage=get_storage(),
        signed_url_expiry_seconds=cloud_storage_settings.presigned_url_expiration_minutes * 60,
    )


def get_conversion_service(
    jobs: SupabaseConversionJobRepository = Depends(get_job_repository),
    quota: QuotaService = Depends(get_quota_service),
    templates: TemplateService = Depends(get_template_service),
) -> ConversionService:
    handlers = create_handlers(
        jobs,
        get_converters(),
        get_storage(),
        create_webhook_sender(),
        get_metrics(),
        get_input_validator(),
    )
    return ConversionService(handlers, quota, templates)


def get_batch_service(
    conversions: ConversionService = Depends(get_conversion_service),
) -> BatchConversionService:
    return BatchConversionService(conversions)


def get_job_query_service(
    jobs: SupabaseConversionJobRepository = Depends(get_job_repository),
    users: SupabaseUserRepository = Depends(get_user_repository),
) -> JobQueryService:
    return JobQueryService(jobs, get_storage(), users)


def get_rate_limiter() -> FixedWindowRateLimiter:
    return _rate_limiter


# =============================================================================
# Guards
# =============================================================================

def require_admin(
    current_user: CurrentUser = Depends(get_current_user),
    users: SupabaseUserRepository = Depends(get_user_repository),
) -> CurrentUser:
    account = users.get_by_id(current_user.user_id)
    if account is None or not account.is_admin:
        raise ForbiddenError()
    return current_user


@lru_cache(maxsize=None)
def rate_limited(policy: PolicyName) -> Callable[..., CurrentUser]:
    """
    Dependency that admits the current user under the given policy or raises 429.
    One dependency object per policy, so overrides apply to every route using it.
    """

    def dependency(
        current_user: CurrentUser = Depends(get_current_user),
        limits: RateLimitService = Depends(get_rate_limit_service),
        limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
    ) -> CurrentUser:
        if not rate_limit_settings.enabled:
            return current_user

        effective = limits.get_effective_limits(current_user.user_id, policy)
        allowed, retry_after = limiter.try_acquire(current_user.user_id, policy, effective)
        if not allowed:
            logger.warning(
                "Rate limit exceeded: user=%s, policy=%s, source=%s",
                current_user.id, policy.value, effective.source,
            )
            raise RateLimitExceededError(policy.value, retry_after)
        return current_user

    return dependency
