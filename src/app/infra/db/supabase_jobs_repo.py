from __future__ import annotations

import base64
import json
import logging
import os
from datetime import datetime
from typing import Any
from uuid import UUID

from supabase import Client, create_client

from src.app.domain.errors import RepositoryError
from src.app.domain.models import (
    CloudStorageOutput,
    ConversionJob,
    ConversionOptions,
    ConversionStatus,
    ConversionTemplate,
    InlineOutput,
    JobOutput,
    PagedResult,
    PolicyOverride,
    RateLimitTier,
    StorageLocation,
    UsageQuota,
    UserAccount,
    UserRateLimitSettings,
)
from src.app.infra.db.base import (
    ConversionJobRepository,
    ConversionTemplateRepository,
    RateLimitSettingsRepository,
    UsageQuotaRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)

Row = dict[str, Any]

STATS_PAGE_SIZE = 1000


def _parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        return None

    try:
        normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
        return datetime.fromisoformat(normalized)
    except ValueError:
        return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _safe_int(value: object, default: int = 0) -> int:
    return int(value) if value else default


def _safe_str(value: object) -> str | None:
    return str(value) if value else None


def _first_row(data: object) -> Row | None:
    if isinstance(data, list):
        return data[0] if data else None
    if isinstance(data, dict):
        return data
    return None


def _create_supabase_client() -> Client:
    url = os.getenv("SUPABASE_URL")
    key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY required")
    return create_client(url, key)


# =============================================================================
# Row mapping
# =============================================================================

def _output_to_row(output: JobOutput | None) -> Row:
    if isinstance(output, InlineOutput):
        return {
            "storage_location": StorageLocation.DATABASE.value,
            "output_data": base64.b64encode(output.data).decode("ascii"),
            "cloud_storage_key": None,
            "output_size_bytes": output.size,
        }
    if isinstance(output, CloudStorageOutput):
        return {
            "storage_location": StorageLocation.CLOUD_STORAGE.value,
            "output_data": None,
            "cloud_storage_key": output.key,
            "output_size_bytes": output.size,
        }
    return {
        "storage_location": None,
        "output_data": None,
        "cloud_storage_key": None,
        "output_size_bytes": None,
    }


def _row_to_output(row: Row) -> JobOutput | None:
    size = _safe_int(row.get("output_size_bytes"))
    if row.get("cloud_storage_key"):
        return CloudStorageOutput(key=str(row["cloud_storage_key"]), size=size)
    if row.get("output_data") is not None:
        return InlineOutput(data=base64.b64decode(str(row["output_data"])))
    return None


def _job_to_row(job: ConversionJob) -> Row:
    return {
        "id": str(job.id),
        "user_id": str(job.user_id),
        "source_format": job.source_format,
        "target_format": job.target_format,
        "status": job.status.value,
        "input_file_name": job.input_file_name,
        "output_file_name": job.output_file_name,
        "webhook_url": job.webhook_url,
        "error_message": job.error_message,
        "created_at": _iso(job.created_at),
        "completed_at": _iso(job.completed_at),
        **_output_to_row(job.output),
    }


def _row_to_job(row: Row) -> ConversionJob:
    return ConversionJob(
        id=UUID(str(row["id"])),
        user_id=UUID(str(row["user_id"])),
        source_format=str(row["source_format"]),
        target_format=str(row["target_format"]),
        input_file_name=str(row["input_file_name"]),
        status=ConversionStatus(str(row["status"])),
        webhook_url=_safe_str(row.get("webhook_url")),
        created_at=_parse_datetime(row.get("created_at")),
        output_file_name=_safe_str(row.get("output_file_name")),
        output=_row_to_output(row),
        error_message=_safe_str(row.get("error_message")),
        completed_at=_parse_datetime(row.get("completed_at")),
    )


def _template_to_row(template: ConversionTemplate) -> Row:
    return {
        "id": str(template.id),
        "user_id": str(template.user_id),
        "name": template.name,
        "description": template.description,
        "target_format": template.target_format,
        "options_json": template.options.to_dict(),
        "created_at": _iso(template.created_at),
        "updated_at": _iso(template.updated_at),
    }


def _row_to_template(row: Row) -> ConversionTemplate:
    options = row.get("options_json")
    if isinstance(options, str):
        options = json.loads(options) if options else None
    return ConversionTemplate(
        id=UUID(str(row["id"])),
        user_id=UUID(str(row["user_id"])),
        name=str(row["name"]),
        description=_safe_str(row.get("description")),
        target_format=str(row["target_format"]),
        options=ConversionOptions.from_dict(options),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def _row_to_quota(row: Row) -> UsageQuota:
    return UsageQuota(
        id=UUID(str(row["id"])),
        user_id=UUID(str(row["user_id"])),
        year=int(row["year"]),
        month=int(row["month"]),
        conversions_used=_safe_int(row.get("conversions_used")),
        conversions_limit=_safe_int(row.get("conversions_limit")),
        bytes_used=_safe_int(row.get("bytes_used")),
        bytes_limit=_safe_int(row.get("bytes_limit")),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def _quota_to_row(quota: UsageQuota) -> Row:
    return {
        "id": str(quota.id),
        "user_id": str(quota.user_id),
        "year": quota.year,
        "month": quota.month,
        "conversions_used": quota.conversions_used,
        "conversions_limit": quota.conversions_limit,
        "bytes_used": quota.bytes_used,
        "bytes_limit": quota.bytes_limit,
        "created_at": _iso(quota.created_at),
        "updated_at": _iso(quota.updated_at),
    }


def _row_to_override(row: Row, prefix: str) -> PolicyOverride | None:
    permit_limit = row.get(f"{prefix}_permit_limit")
    window_minutes = row.get(f"{prefix}_window_minutes")
    # Half-populated override columns read as no override.
    if permit_limit is None or window_minutes is None:
        return None
    return PolicyOverride(permit_limit=int(permit_limit), window_minutes=int(window_minutes))


def _override_to_row(override: PolicyOverride | None, prefix: str) -> Row:
    return {
        f"{prefix}_permit_limit": override.permit_limit if override else None,
        f"{prefix}_window_minutes": override.window_minutes if override else None,
    }


def _row_to_rate_limit_settings(row: Row) -> UserRateLimitSettings:
    return UserRateLimitSettings(
        id=UUID(str(row["id"])),
        user_id=UUID(str(row["user_id"])),
        tier=RateLimitTier.parse(str(row.get("tier") or RateLimitTier.FREE.value)),
        standard_override=_row_to_override(row, "standard_policy"),
        conversion_override=_row_to_override(row, "conversion_policy"),
        created_at=_parse_datetime(row.get("created_at")),
        updated_at=_parse_datetime(row.get("updated_at")),
    )


def _rate_limit_settings_to_row(settings: UserRateLimitSettings) -> Row:
    return {
        "id": str(settings.id),
        "user_id": str(settings.user_id),
        "tier": settings.tier.value,
        **_override_to_row(settings.standard_override, "standard_policy"),
        **_override_to_row(settings.conversion_override, "conversion_policy"),
        "created_at": _iso(settings.created_at),
        "updated_at": _iso(settings.updated_at),
    }


# =============================================================================
# Repositories
# =============================================================================

class _SupabaseRepository:
    TABLE_NAME = ""

    def __init__(self, client: Client | None = None):
        self._client = client or _create_supabase_client()
        logger.info("%s initialized", type(self).__name__)

    def _table(self):
        return self._client.table(self.TABLE_NAME)

    def _insert(self, row: Row, operation: str) -> None:
        try:
            result = self._table().insert(row).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error during %s: %s", operation, error)
            raise RepositoryError(operation, str(error)) from error

        if not result.data:
            raise RepositoryError(operation, "no row returned")

    def _insert_if_absent(self, row: Row, on_conflict: str, operation: str) -> bool:
        """Insert relying on the table's unique key; an existing row wins."""
        try:
            result = (
                self._table()
                .upsert(row, on_conflict=on_conflict, ignore_duplicates=True)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error during %s: %s", operation, error)
            raise RepositoryError(operation, str(error)) from error

        return bool(result.data)

    def _count(self, operation: str, **filters: str) -> int:
        query = self._table().select("id", count="exact")
        for column, value in filters.items():
            query = query.eq(column, value)
        try:
            result = query.limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error during %s: %s", operation, error)
            raise RepositoryError(operation, str(error)) from error

        return result.count or 0

    def _update(self, row: Row, operation: str) -> None:
        try:
            result = self._table().update(row).eq("id", row["id"]).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error during %s: %s", operation, error)
            raise RepositoryError(operation, str(error)) from error

        if not result.data:
            raise RepositoryError(operation, f"row {row['id']} not found")


class SupabaseConversionJobRepository(_SupabaseRepository, ConversionJobRepository):
    TABLE_NAME = "conversion_jobs"

    def add(self, job: ConversionJob) -> None:
        self._insert(_job_to_row(job), "add_job")
        logger.info(
            "Created conversion job: id=%s, user=%s, %s->%s",
            job.id, job.user_id, job.source_format, job.target_format,
        )

    def update(self, job: ConversionJob) -> None:
        self._update(_job_to_row(job), "update_job")

    def get_by_id(self, job_id: UUID) -> ConversionJob | None:
        try:
            result = self._table().select("*").eq("id", str(job_id)).limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting job: %s", error)
            raise RepositoryError("get_job", str(error)) from error

        row = _first_row(result.data)
        return _row_to_job(row) if row else None

    def get_by_id_for_user(self, job_id: UUID, user_id: UUID) -> ConversionJob | None:
        try:
            result = (
                self._table()
                .select("*")
                .eq("id", str(job_id))
                .eq("user_id", str(user_id))
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting job: %s", error)
            raise RepositoryError("get_job", str(error)) from error

        row = _first_row(result.data)
        return _row_to_job(row) if row else None

    def get_by_user(self, user_id: UUID, page: int, page_size: int) -> PagedResult[ConversionJob]:
        offset = (page - 1) * page_size

        try:
            result = (
                self._table()
                .select("*", count="exact")
                .eq("user_id", str(user_id))
                .order("created_at", desc=True)
                .range(offset, offset + page_size - 1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting jobs for user: %s", error)
            raise RepositoryError("list_jobs", str(error)) from error

        jobs = [_row_to_job(row) for row in (result.data or [])]
        total = result.count if result.count is not None else offset + len(jobs)
        return PagedResult(items=jobs, page=page, page_size=page_size, total_count=total)

    def get_expired(
        self,
        status: ConversionStatus,
        completed_before: datetime,
        limit: int,
    ) -> list[ConversionJob]:
        try:
            result = (
                self._table()
                .select("*")
                .eq("status", status.value)
                .lt("completed_at", completed_before.isoformat())
                .order("completed_at")
                .limit(limit)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error finding expired jobs: %s", error)
            raise RepositoryError("find_expired_jobs", str(error)) from error

        return [_row_to_job(row) for row in (result.data or [])]

    def delete_many(self, job_ids: list[UUID]) -> int:
        if not job_ids:
            return 0

        try:
            result = self._table().delete().in_("id", [str(job_id) for job_id in job_ids]).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error deleting jobs: %s", error)
            raise RepositoryError("delete_jobs", str(error)) from error

        return len(result.data or [])

    def count_by_status(self) -> dict[ConversionStatus, int]:
        return {
            status: self._count("count_jobs", status=status.value)
            for status in ConversionStatus
        }

    def count_by_format(self) -> dict[str, int]:
        # Retention keeps the table bounded, so a paged column scan is fine.
        counts: dict[str, int] = {}
        offset = 0
        while True:
            try:
                result = (
                    self._table()
                    .select("source_format, target_format")
                    .order("id")
                    .range(offset, offset + STATS_PAGE_SIZE - 1)
                    .execute()
                )
            except (ConnectionError, TimeoutError) as error:
                logger.error("Network error counting jobs by format: %s", error)
                raise RepositoryError("count_jobs_by_format", str(error)) from error

            rows = result.data or []
            for row in rows:
                key = f"{row['source_format']}-to-{row['target_format']}"
                counts[key] = counts.get(key, 0) + 1
            if len(rows) < STATS_PAGE_SIZE:
                return counts
            offset += STATS_PAGE_SIZE


class SupabaseConversionTemplateRepository(_SupabaseRepository, ConversionTemplateRepository):
    TABLE_NAME = "conversion_templates"

    def add(self, template: ConversionTemplate) -> None:
        self._insert(_template_to_row(template), "add_template")
        logger.info("Created conversion template: id=%s, user=%s", template.id, template.user_id)

    def update(self, template: ConversionTemplate) -> None:
        self._update(_template_to_row(template), "update_template")

    def delete(self, template_id: UUID) -> None:
        try:
            self._table().delete().eq("id", str(template_id)).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error deleting template: %s", error)
            raise RepositoryError("delete_template", str(error)) from error

    def get_by_id_for_user(self, template_id: UUID, user_id: UUID) -> ConversionTemplate | None:
        try:
            result = (
                self._table()
                .select("*")
                .eq("id", str(template_id))
                .eq("user_id", str(user_id))
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting template: %s", error)
            raise RepositoryError("get_template", str(error)) from error

        row = _first_row(result.data)
        return _row_to_template(row) if row else None

    def get_by_user(self, user_id: UUID, target_format: str | None = None) -> list[ConversionTemplate]:
        query = self._table().select("*").eq("user_id", str(user_id))
        if target_format:
            query = query.eq("target_format", target_format)
        try:
            result = query.order("name").execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error listing templates: %s", error)
            raise RepositoryError("list_templates", str(error)) from error

        return [_row_to_template(row) for row in (result.data or [])]

    def name_exists(self, user_id: UUID, name: str, exclude_id: UUID | None = None) -> bool:
        query = self._table().select("id").eq("user_id", str(user_id)).eq("name", name)
        if exclude_id is not None:
            query = query.neq("id", str(exclude_id))
        try:
            result = query.limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error checking template name: %s", error)
            raise RepositoryError("check_template_name", str(error)) from error

        return bool(result.data)


class SupabaseUsageQuotaRepository(_SupabaseRepository, UsageQuotaRepository):
    TABLE_NAME = "usage_quotas"

    def add_if_absent(self, quota: UsageQuota) -> bool:
        return self._insert_if_absent(_quota_to_row(quota), "user_id,year,month", "add_quota")

    def update(self, quota: UsageQuota) -> None:
        self._update(_quota_to_row(quota), "update_quota")

    def get_by_user_and_month(self, user_id: UUID, year: int, month: int) -> UsageQuota | None:
        try:
            result = (
                self._table()
                .select("*")
                .eq("user_id", str(user_id))
                .eq("year", year)
                .eq("month", month)
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting quota: %s", error)
            raise RepositoryError("get_quota", str(error)) from error

        row = _first_row(result.data)
        return _row_to_quota(row) if row else None

    def get_by_user(self, user_id: UUID) -> list[UsageQuota]:
        try:
            result = self._table().select("*").eq("user_id", str(user_id)).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting quota history: %s", error)
            raise RepositoryError("get_quota_history", str(error)) from error

        return [_row_to_quota(row) for row in (result.data or [])]


class SupabaseRateLimitSettingsRepository(_SupabaseRepository, RateLimitSettingsRepository):
    TABLE_NAME = "user_rate_limit_settings"

    def get_by_user(self, user_id: UUID) -> UserRateLimitSettings | None:
        try:
            result = self._table().select("*").eq("user_id", str(user_id)).limit(1).execute()
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting rate limit settings: %s", error)
            raise RepositoryError("get_rate_limit_settings", str(error)) from error

        row = _first_row(result.data)
        return _row_to_rate_limit_settings(row) if row else None

    def add_if_absent(self, settings: UserRateLimitSettings) -> bool:
        return self._insert_if_absent(
            _rate_limit_settings_to_row(settings),
            "user_id",
            "add_rate_limit_settings",
        )

    def update(self, settings: UserRateLimitSettings) -> None:
        self._update(_rate_limit_settings_to_row(settings), "update_rate_limit_settings")


class SupabaseUserRepository(_SupabaseRepository, UserRepository):
    TABLE_NAME = "profiles"

    def get_by_id(self, user_id: UUID) -> UserAccount | None:
        try:
            result = (
                self._table()
                .select("id, email, is_admin, is_active")
                .eq("id", str(user_id))
                .limit(1)
                .execute()
            )
        except (ConnectionError, TimeoutError) as error:
            logger.error("Network error getting user: %s", error)
            raise RepositoryError("get_user", str(error)) from error

        row = _first_row(result.data)
        if not row:
            return None

        return UserAccount(
            id=UUID(str(row["id"])),
            email=_safe_str(row.get("email")),
            is_admin=bool(row.get("is_admin")),
            is_active=row.get("is_active") is not False,
        )

    def count(self) -> int:
        return self._count("count_users")
