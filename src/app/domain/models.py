# src/app/domain/models.py
"""
Domain models for conversion jobs, usage quotas and rate-limit settings.
These are pure data structures with no infrastructure dependencies.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union
from uuid import UUID, uuid4

from src.app.domain.errors import (
    InvalidJobTransitionError,
    InvalidPolicyNameError,
    InvalidTemplateError,
    InvalidTierError,
)

T = TypeVar("T")

FORMAT_ALIASES = {"jpg": "jpeg"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_format(value: str) -> str:
    """Case-fold a format name and map aliases to their canonical form."""
    normalized = value.strip().lower()
    return FORMAT_ALIASES.get(normalized, normalized)


class ConversionStatus(str, Enum):
    """Status enum for conversion jobs."""
    PENDING = "Pending"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConversionStatus.COMPLETED, ConversionStatus.FAILED)


class StorageLocation(str, Enum):
    DATABASE = "database"
    CLOUD_STORAGE = "cloud_storage"


@dataclass(frozen=True)
class InlineOutput:
    """Output bytes kept alongside the job record."""
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CloudStorageOutput:
    """Reference to output bytes held in the object store."""
    key: str
    size: int = 0


JobOutput = Union[InlineOutput, CloudStorageOutput]


@dataclass
class ConversionJob:
    """
    One tracked attempt to convert a single input to a target format.

    Status only moves through the transition methods below:
    Pending -> Processing -> Completed | Failed, with Pending -> Failed
    allowed for inputs rejected before processing starts. Terminal
    states never change again.
    """
    id: UUID
    user_id: UUID
    source_format: str
    target_format: str
    input_file_name: str
    status: ConversionStatus = ConversionStatus.PENDING
    webhook_url: Optional[str] = None
    created_at: datetime = field(default_factory=_now_utc)

    # Outcome (populated on terminal transition)
    output_file_name: Optional[str] = None
    output: Optional[JobOutput] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: UUID,
        source_format: str,
        target_format: str,
        input_file_name: str,
        webhook_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversionJob:
        return cls(
            id=uuid4(),
            user_id=user_id,
            source_format=normalize_format(source_format),
            target_format=normalize_format(target_format),
            input_file_name=input_file_name,
            webhook_url=webhook_url or None,
            created_at=now or _now_utc(),
        )

    def mark_processing(self) -> None:
        self._require(ConversionStatus.PROCESSING, ConversionStatus.PENDING)
        self.status = ConversionStatus.PROCESSING

    def mark_completed(
        self,
        output_file_name: str,
        data: bytes,
        now: Optional[datetime] = None,
    ) -> None:
        self._complete(output_file_name, InlineOutput(data=data), now)

    def mark_completed_in_cloud(
        self,
        output_file_name: str,
        key: str,
        size: int,
        now: Optional[datetime] = None,
    ) -> None:
        self._complete(output_file_name, CloudStorageOutput(key=key, size=size), now)

    def mark_failed(self, error_message: str, now: Optional[datetime] = None) -> None:
        self._require(
            ConversionStatus.FAILED,
            ConversionStatus.PENDING,
            ConversionStatus.PROCESSING,
        )
        self.status = ConversionStatus.FAILED
        self.error_message = error_message or "Conversion failed."
        self.output = None
        self.output_file_name = None
        self.completed_at = now or _now_utc()

    def _complete(self, output_file_name: str, output: JobOutput, now: Optional[datetime]) -> None:
        self._require(ConversionStatus.COMPLETED, ConversionStatus.PROCESSING)
        self.status = ConversionStatus.COMPLETED
        self.output_file_name = output_file_name
        self.output = output
        self.error_message = None
        self.completed_at = now or _now_utc()

    def _require(self, target: ConversionStatus, *allowed: ConversionStatus) -> None:
        if self.status not in allowed:
            raise InvalidJobTransitionError(self.id, self.status.value, target.value)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def storage_location(self) -> Optional[StorageLocation]:
        if isinstance(self.output, InlineOutput):
            return StorageLocation.DATABASE
        if isinstance(self.output, CloudStorageOutput):
            return StorageLocation.CLOUD_STORAGE
        return None

    @property
    def output_data(self) -> Optional[bytes]:
        return self.output.data if isinstance(self.output, InlineOutput) else None

    @property
    def cloud_storage_key(self) -> Optional[str]:
        return self.output.key if isinstance(self.output, CloudStorageOutput) else None

    @property
    def output_size_bytes(self) -> int:
        return self.output.size if self.output is not None else 0


@dataclass
class UsageQuota:
    """Per-user, per-calendar-month conversion counters and limits."""
    id: UUID
    user_id: UUID
    year: int
    month: int
    conversions_limit: int
    bytes_limit: int
    conversions_used: int = 0
    bytes_used: int = 0
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: UUID,
        year: int,
        month: int,
        conversions_limit: int,
        bytes_limit: int,
        now: Optional[datetime] = None,
    ) -> UsageQuota:
        if not 1 <= month <= 12:
            raise ValueError(f"Month must be between 1 and 12, got {month}")
        _require_non_negative(conversions_limit=conversions_limit, bytes_limit=bytes_limit)
        return cls(
            id=uuid4(),
            user_id=user_id,
            year=year,
            month=month,
            conversions_limit=conversions_limit,
            bytes_limit=bytes_limit,
            created_at=now or _now_utc(),
        )

    def record_usage(self, bytes_processed: int, now: Optional[datetime] = None) -> None:
        _require_non_negative(bytes_processed=bytes_processed)
        self.conversions_used += 1
        self.bytes_used += bytes_processed
        self.updated_at = now or _now_utc()

    def update_limits(
        self,
        conversions_limit: int,
        bytes_limit: int,
        now: Optional[datetime] = None,
    ) -> None:
        _require_non_negative(conversions_limit=conversions_limit, bytes_limit=bytes_limit)
        self.conversions_limit = conversions_limit
        self.bytes_limit = bytes_limit
        self.updated_at = now or _now_utc()

    @property
    def is_conversions_quota_exceeded(self) -> bool:
        return self.conversions_used >= self.conversions_limit

    @property
    def is_bytes_quota_exceeded(self) -> bool:
        return self.bytes_used >= self.bytes_limit

    @property
    def is_quota_exceeded(self) -> bool:
        return self.is_conversions_quota_exceeded or self.is_bytes_quota_exceeded

    @property
    def remaining_conversions(self) -> int:
        return max(0, self.conversions_limit - self.conversions_used)

    @property
    def remaining_bytes(self) -> int:
        return max(0, self.bytes_limit - self.bytes_used)


def _require_non_negative(**values: int) -> None:
    for name, value in values.items():
        if value < 0:
            raise ValueError(f"{name} cannot be negative")


class RateLimitTier(str, Enum):
    """Rate-limit allowance levels, ordered by increasing allowance."""
    FREE = "Free"
    BASIC = "Basic"
    PREMIUM = "Premium"
    UNLIMITED = "Unlimited"

    @property
    def rank(self) -> int:
        return list(RateLimitTier).index(self)

    @classmethod
    def parse(cls, value: Union[str, RateLimitTier]) -> RateLimitTier:
        if isinstance(value, RateLimitTier):
            return value
        for tier in cls:
            if tier.value.lower() == str(value).strip().lower():
                return tier
        raise InvalidTierError(str(value))


class PolicyName(str, Enum):
    STANDARD = "standard"
    CONVERSION = "conversion"

    @classmethod
    def parse(cls, value: Union[str, PolicyName]) -> PolicyName:
        if isinstance(value, PolicyName):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidPolicyNameError(str(value)) from None


@dataclass(frozen=True)
class PolicyOverride:
    """A complete per-user replacement of a tier's permit limit and window."""
    permit_limit: int
    window_minutes: int

    def __post_init__(self) -> None:
        if self.permit_limit < 0:
            raise ValueError("permit_limit cannot be negative")
        if self.window_minutes <= 0:
            raise ValueError("window_minutes must be greater than zero")


@dataclass
class UserRateLimitSettings:
    """Per-user rate-limit tier plus optional per-policy overrides."""
    id: UUID
    user_id: UUID
    tier: RateLimitTier = RateLimitTier.FREE
    standard_override: Optional[PolicyOverride] = None
    conversion_override: Optional[PolicyOverride] = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: UUID,
        tier: RateLimitTier = RateLimitTier.FREE,
        now: Optional[datetime] = None,
    ) -> UserRateLimitSettings:
        return cls(id=uuid4(), user_id=user_id, tier=tier, created_at=now or _now_utc())

    def update_tier(self, tier: RateLimitTier, now: Optional[datetime] = None) -> None:
        self.tier = tier
        self.updated_at = now or _now_utc()

    def override_for(self, policy: PolicyName) -> Optional[PolicyOverride]:
        if policy is PolicyName.STANDARD:
            return self.standard_override
        return self.conversion_override

    def set_override(
        self,
        policy: PolicyName,
        override: Optional[PolicyOverride],
        now: Optional[datetime] = None,
    ) -> None:
        if policy is PolicyName.STANDARD:
            self.standard_override = override
        else:
            self.conversion_override = override
        self.updated_at = now or _now_utc()

    def clear_overrides(self, now: Optional[datetime] = None) -> None:
        self.standard_override = None
        self.conversion_override = None
        self.updated_at = now or _now_utc()

    @property
    def has_any_override(self) -> bool:
        return self.standard_override is not None or self.conversion_override is not None

    def snapshot(self) -> UserRateLimitSettings:
        # Overrides are frozen, so a shallow copy is fully independent.
        return replace(self)


@dataclass(frozen=True)
class EffectiveRateLimits:
    """Resolved admission limits for one user and policy."""
    permit_limit: int
    window: timedelta
    bypass: bool
    source: str

    SOURCE_ADMIN = "Admin"
    SOURCE_OVERRIDE = "Override"
    SOURCE_TIER = "Tier"


@dataclass
class UserAccount:
    id: UUID
    email: Optional[str] = None
    is_admin: bool = False
    is_active: bool = True


@dataclass
class ConversionOptions:
    """Rendering options passed through to the converter untouched."""
    page_size: Optional[str] = None
    landscape: Optional[bool] = None
    margin_top: Optional[str] = None
    margin_bottom: Optional[str] = None
    margin_left: Optional[str] = None
    margin_right: Optional[str] = None
    header_template: Optional[str] = None
    footer_template: Optional[str] = None
    wait_for_javascript: Optional[bool] = None
    javascript_timeout_ms: Optional[int] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    image_quality: Optional[int] = None
    full_page: Optional[bool] = None
    viewport_width: Optional[int] = None
    viewport_height: Optional[int] = None
    dpi: Optional[int] = None
    page_number: Optional[int] = None
    pdf_password: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in vars(self).items() if value is not None}

    def with_defaults(self, defaults: ConversionOptions) -> ConversionOptions:
        """Fill every unset option from `defaults`; options set here win."""
        return replace(defaults, **self.to_dict())

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> ConversionOptions:
        known = set(cls.__dataclass_fields__)
        return cls(**{key: value for key, value in (data or {}).items() if key in known})


TEMPLATE_TARGET_FORMATS = ("pdf", "html", "png", "jpeg", "webp", "gif", "bmp")
MAX_TEMPLATE_NAME_LENGTH = 100


@dataclass
class ConversionTemplate:
    """
    A named, user-owned set of conversion options for one target format.

    Conversions that reference a template use its options as defaults;
    options given on the request itself take precedence.
    """
    id: UUID
    user_id: UUID
    name: str
    target_format: str
    options: ConversionOptions = field(default_factory=ConversionOptions)
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_now_utc)
    updated_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        user_id: UUID,
        name: str,
        target_format: str,
        options: Optional[ConversionOptions] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ConversionTemplate:
        return cls(
            id=uuid4(),
            user_id=user_id,
            name=_template_name(name),
            target_format=_template_target(target_format),
            options=options or ConversionOptions(),
            description=description,
            created_at=now or _now_utc(),
        )

    def update(
        self,
        name: str,
        target_format: str,
        options: Optional[ConversionOptions] = None,
        description: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.name = _template_name(name)
        self.target_format = _template_target(target_format)
        self.options = options or ConversionOptions()
        self.description = description
        self.updated_at = now or _now_utc()


def _template_name(name: str) -> str:
    trimmed = (name or "").strip()
    if not trimmed:
        raise InvalidTemplateError("Template name is required.", code="Template.InvalidName")
    if len(trimmed) > MAX_TEMPLATE_NAME_LENGTH:
        raise InvalidTemplateError(
            f"Template name cannot exceed {MAX_TEMPLATE_NAME_LENGTH} characters.",
            code="Template.InvalidName",
        )
    return trimmed


def _template_target(target_format: str) -> str:
    normalized = normalize_format(target_format or "")
    if normalized not in TEMPLATE_TARGET_FORMATS:
        raise InvalidTemplateError(
            f"'{target_format}' is not a valid target format. "
            f"Valid values are: {', '.join(TEMPLATE_TARGET_FORMATS)}.",
            code="Template.InvalidTargetFormat",
        )
    return normalized


@dataclass
class JobStatistics:
    total_jobs: int
    completed_jobs: int
    failed_jobs: int
    # Pending plus Processing
    pending_jobs: int
    total_users: int
    jobs_by_format: dict[str, int] = field(default_factory=dict)

    @property
    def success_rate(self) -> float:
        """Percentage of all jobs that completed, to two decimals."""
        if self.total_jobs == 0:
            return 0.0
        return round(self.completed_jobs * 100 / self.total_jobs, 2)


@dataclass
class FileDownloadResult:
    content: bytes
    file_name: str
    content_type: str


@dataclass
class PagedResult(Generic[T]):
    items: list[T]
    page: int
    page_size: int
    total_count: int

    @property
    def total_pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return math.ceil(self.total_count / self.page_size)

    @property
    def has_previous_page(self) -> bool:
        return self.page > 1

    @property
    def has_next_page(self) -> bool:
        return self.page < self.total_pages


@dataclass
class BatchItemResult:
    """Outcome of one batch item, indexed like the request."""
    index: int
    success: bool
    job: Optional[ConversionJob] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class BatchConversionResult:
    results: list[BatchItemResult]

    @property
    def total_items(self) -> int:
        return len(self.results)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failure_count(self) -> int:
        return self.total_items - self.success_count
