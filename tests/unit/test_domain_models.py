from __future__ import annotations

import pytest
from datetime import datetime, timezone
from uuid import uuid4

from src.app.domain.errors import (
    InvalidJobTransitionError,
    InvalidPolicyNameError,
    InvalidTemplateError,
    InvalidTierError,
)
from src.app.domain.models import (
    BatchConversionResult,
    BatchItemResult,
    ConversionJob,
    ConversionOptions,
    ConversionStatus,
    ConversionTemplate,
    JobStatistics,
    PagedResult,
    PolicyName,
    PolicyOverride,
    RateLimitTier,
    StorageLocation,
    UsageQuota,
    UserRateLimitSettings,
    normalize_format,
)

NOW = datetime(2026, 1, 15, 10, 30, tzinfo=timezone.utc)


def create_job() -> ConversionJob:
    return ConversionJob.create(uuid4(), "HTML", "PDF", "page.html", now=NOW)


class TestNormalizeFormat:
    def test_lowercases_and_strips(self) -> None:
        assert normalize_format("  PNG ") == "png"

    def test_jpg_alias(self) -> None:
        assert normalize_format("JPG") == "jpeg"


class TestConversionStatus:
    def test_status_values(self) -> None:
        assert ConversionStatus.PENDING.value == "Pending"
        assert ConversionStatus.PROCESSING.value == "Processing"
        assert ConversionStatus.COMPLETED.value == "Completed"
        assert ConversionStatus.FAILED.value == "Failed"

    def test_terminal_statuses(self) -> None:
        assert ConversionStatus.COMPLETED.is_terminal
        assert ConversionStatus.FAILED.is_terminal
        assert not ConversionStatus.PENDING.is_terminal
        assert not ConversionStatus.PROCESSING.is_terminal


class TestConversionJobLifecycle:
    def test_create_normalizes_formats(self) -> None:
        job = create_job()

        assert job.source_format == "html"
        assert job.target_format == "pdf"
        assert job.status == ConversionStatus.PENDING
        assert job.completed_at is None
        assert job.output is None

    def test_complete_inline(self) -> None:
        job = create_job()
        job.mark_processing()
        job.mark_completed("page.pdf", b"%PDF-1.7", now=NOW)

        assert job.status == ConversionStatus.COMPLETED
        assert job.storage_location == StorageLocation.DATABASE
        assert job.output_data == b"%PDF-1.7"
        assert job.output_size_bytes == 8
        assert job.cloud_storage_key is None
        assert job.completed_at == NOW

    def test_complete_in_cloud(self) -> None:
        job = create_job()
        job.mark_processing()
        job.mark_completed_in_cloud("page.pdf", "user/job/page.pdf", 4096, now=NOW)

        assert job.storage_location == StorageLocation.CLOUD_STORAGE
        assert job.cloud_storage_key == "user/job/page.pdf"
        assert job.output_data is None
        assert job.output_size_bytes == 4096

    def test_fail_from_pending(self) -> None:
        job = create_job()
        job.mark_failed("Invalid input", now=NOW)

        assert job.status == ConversionStatus.FAILED
        assert job.error_message == "Invalid input"
        assert job.completed_at == NOW
        assert job.storage_location is None

    def test_complete_requires_processing(self) -> None:
        job = create_job()

        with pytest.raises(InvalidJobTransitionError):
            job.mark_completed("page.pdf", b"data")

    def test_terminal_job_cannot_fail_again(self) -> None:
        job = create_job()
        job.mark_processing()
        job.mark_completed("page.pdf", b"data")

        with pytest.raises(InvalidJobTransitionError) as exc_info:
            job.mark_failed("late failure")

        assert exc_info.value.current == "Completed"
        assert job.status == ConversionStatus.COMPLETED
        assert job.error_message is None

    def test_processing_cannot_restart(self) -> None:
        job = create_job()
        job.mark_processing()

        with pytest.raises(InvalidJobTransitionError):
            job.mark_processing()


class TestUsageQuota:
    def test_create_rejects_invalid_month(self) -> None:
        with pytest.raises(ValueError):
            UsageQuota.create(uuid4(), 2026, 13, 10, 100)

    def test_create_rejects_negative_limits(self) -> None:
        with pytest.raises(ValueError):
            UsageQuota.create(uuid4(), 2026, 1, -1, 100)

    def test_record_usage_increments_counters(self) -> None:
        quota = UsageQuota.create(uuid4(), 2026, 1, 10, 1000, now=NOW)
        quota.record_usage(250, now=NOW)
        quota.record_usage(100, now=NOW)

        assert quota.conversions_used == 2
        assert quota.bytes_used == 350
        assert quota.remaining_conversions == 8
        assert quota.remaining_bytes == 650
        assert quota.updated_at == NOW

    def test_record_usage_rejects_negative_bytes(self) -> None:
        quota = UsageQuota.create(uuid4(), 2026, 1, 10, 1000)

        with pytest.raises(ValueError):
            quota.record_usage(-1)

    def test_exceeded_at_limit(self) -> None:
        quota = UsageQuota.create(uuid4(), 2026, 1, 1, 1000)
        assert not quota.is_quota_exceeded

        quota.record_usage(10)

        assert quota.is_conversions_quota_exceeded
        assert not quota.is_bytes_quota_exceeded
        assert quota.is_quota_exceeded

    def test_remaining_never_negative(self) -> None:
        quota = UsageQuota.create(uuid4(), 2026, 1, 1, 100)
        quota.record_usage(500)

        assert quota.remaining_bytes == 0
        assert quota.is_bytes_quota_exceeded


class TestRateLimitTier:
    def test_parse_is_case_insensitive(self) -> None:
        assert RateLimitTier.parse("premium") is RateLimitTier.PREMIUM

    def test_parse_unknown_raises(self) -> None:
        with pytest.raises(InvalidTierError):
            RateLimitTier.parse("Gold")

    def test_rank_orders_by_allowance(self) -> None:
        ranks = [tier.rank for tier in RateLimitTier]
        assert ranks == sorted(ranks)
        assert RateLimitTier.UNLIMITED.rank > RateLimitTier.FREE.rank


class TestPolicyName:
    def test_parse(self) -> None:
        assert PolicyName.parse(" Conversion ") is PolicyName.CONVERSION

    def test_parse_unknown_raises(self) -> None:
        with pytest.raises(InvalidPolicyNameError):
            PolicyName.parse("burst")


class TestPolicyOverride:
    def test_zero_permits_allowed(self) -> None:
        assert PolicyOverride(permit_limit=0, window_minutes=1).permit_limit == 0

    def test_zero_window_rejected(self) -> None:
        with pytest.raises(ValueError):
            PolicyOverride(permit_limit=5, window_minutes=0)


class TestUserRateLimitSettings:
    def test_overrides_per_policy(self) -> None:
        user_settings = UserRateLimitSettings.create(uuid4())
        override = PolicyOverride(permit_limit=5, window_minutes=10)

        user_settings.set_override(PolicyName.CONVERSION, override)

        assert user_settings.override_for(PolicyName.CONVERSION) == override
        assert user_settings.override_for(PolicyName.STANDARD) is None
        assert user_settings.has_any_override

    def test_clear_overrides(self) -> None:
        user_settings = UserRateLimitSettings.create(uuid4(), RateLimitTier.BASIC)
        user_settings.set_override(PolicyName.STANDARD, PolicyOverride(10, 5))

        user_settings.clear_overrides()

        assert not user_settings.has_any_override
        assert user_settings.tier is RateLimitTier.BASIC

    def test_snapshot_is_independent(self) -> None:
        user_settings = UserRateLimitSettings.create(uuid4())
        copy = user_settings.snapshot()

        copy.update_tier(RateLimitTier.PREMIUM)

        assert user_settings.tier is RateLimitTier.FREE


class TestConversionOptions:
    def test_to_dict_drops_unset(self) -> None:
        options = ConversionOptions(landscape=True, dpi=150)
        assert options.to_dict() == {"landscape": True, "dpi": 150}


class TestPagedResult:
    def test_page_navigation(self) -> None:
        paged = PagedResult(items=[1, 2], page=2, page_size=2, total_count=5)

        assert paged.total_pages == 3
        assert paged.has_previous_page
        assert paged.has_next_page

    def test_empty_result(self) -> None:
        paged = PagedResult(items=[], page=1, page_size=20, total_count=0)

        assert paged.total_pages == 0
        assert not paged.has_previous_page
        assert not paged.has_next_page


class TestBatchConversionResult:
    def test_counts(self) -> None:
        result = BatchConversionResult(
            results=[
                BatchItemResult(index=0, success=True),
                BatchItemResult(index=1, success=False, error_code="Batch.InvalidType"),
                BatchItemResult(index=2, success=True),
            ]
        )

        assert result.total_items == 3
        assert result.success_count == 2
        assert result.failure_count == 1


class TestConversionOptionsMerging:
    def test_own_values_win_and_gaps_filled(self) -> None:
        defaults = ConversionOptions(page_size="A4", landscape=True, dpi=150)
        merged = ConversionOptions(page_size="Letter", landscape=False).with_defaults(defaults)

        assert merged == ConversionOptions(page_size="Letter", landscape=False, dpi=150)

    def test_defaults_left_untouched(self) -> None:
        defaults = ConversionOptions(page_size="A4")

        ConversionOptions(page_size="Letter").with_defaults(defaults)

        assert defaults.page_size == "A4"

    def test_from_dict_ignores_unknown_keys(self) -> None:
        options = ConversionOptions.from_dict({"dpi": 300, "colour": "red"})

        assert options == ConversionOptions(dpi=300)
        assert ConversionOptions.from_dict(None) == ConversionOptions()


class TestConversionTemplate:
    def test_create_trims_name_and_normalizes_format(self) -> None:
        template = ConversionTemplate.create(uuid4(), "  Thumbs ", "JPG", now=NOW)

        assert template.name == "Thumbs"
        assert template.target_format == "jpeg"
        assert template.created_at == NOW
        assert template.updated_at is None

    @pytest.mark.parametrize("name", ["", "   ", "x" * 101])
    def test_invalid_name(self, name: str) -> None:
        with pytest.raises(InvalidTemplateError) as exc_info:
            ConversionTemplate.create(uuid4(), name, "pdf")

        assert exc_info.value.code == "Template.InvalidName"

    def test_invalid_target_format(self) -> None:
        with pytest.raises(InvalidTemplateError) as exc_info:
            ConversionTemplate.create(uuid4(), "Docs", "docx")

        assert exc_info.value.code == "Template.InvalidTargetFormat"

    def test_update_replaces_fields(self) -> None:
        template = ConversionTemplate.create(uuid4(), "Docs", "pdf", ConversionOptions(page_size="A4"))

        template.update("Docs v2", "html", now=NOW)

        assert (template.name, template.target_format) == ("Docs v2", "html")
        assert template.options == ConversionOptions()
        assert template.updated_at == NOW


class TestJobStatistics:
    def test_success_rate_rounded(self) -> None:
        stats = JobStatistics(total_jobs=3, completed_jobs=2, failed_jobs=1, pending_jobs=0, total_users=1)

        assert stats.success_rate == 66.67

    def test_empty_rate_is_zero(self) -> None:
        assert JobStatistics(0, 0, 0, 0, 0).success_rate == 0.0
