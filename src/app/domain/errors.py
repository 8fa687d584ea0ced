from __future__ import annotations

from enum import Enum
from typing import Optional
from uuid import UUID

MAX_BATCH_SIZE = 20


class ErrorKind(str, Enum):
    AUTHORIZATION = "authorization"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    CONVERSION_FAILED = "conversion_failed"
    CONFIGURATION = "configuration"


class ConversionApiError(Exception):
    kind = ErrorKind.VALIDATION
    code = "Error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


# Authorization

class UnauthorizedError(ConversionApiError):
    kind = ErrorKind.AUTHORIZATION
    code = "Auth.Unauthorized"

    def __init__(self, message: str = "User is not authenticated."):
        super().__init__(message)


class ForbiddenError(ConversionApiError):
    kind = ErrorKind.AUTHORIZATION
    code = "Auth.Forbidden"

    def __init__(self, message: str = "Administrator privileges are required."):
        super().__init__(message)


# Validation

class ValidationError(ConversionApiError):
    kind = ErrorKind.VALIDATION
    code = "Validation.Failed"


class InvalidInputError(ValidationError):
    code = "Conversion.InvalidInput"


class InvalidFormatError(ValidationError):
    def __init__(self, code: str, message: str):
        super().__init__(message, code=code)


class UnsupportedConversionError(ValidationError):
    code = "ConversionJob.UnsupportedConversion"

    def __init__(self, source_format: str, target_format: str):
        super().__init__(f"Conversion from '{source_format}' to '{target_format}' is not supported.")
        self.source_format = source_format
        self.target_format = target_format


class InvalidPolicyNameError(ValidationError):
    code = "RateLimit.InvalidPolicyName"

    def __init__(self, policy_name: str):
        super().__init__(f"'{policy_name}' is not a valid policy name. Valid values are: standard, conversion.")
        self.policy_name = policy_name


class InvalidOverrideError(ValidationError):
    code = "RateLimit.InvalidOverride"


class InvalidTierError(ValidationError):
    code = "RateLimit.InvalidTier"

    def __init__(self, tier: str):
        super().__init__(f"'{tier}' is not a valid rate limit tier. Valid values are: Free, Basic, Premium, Unlimited.")
        self.tier = tier


class InvalidTemplateError(ValidationError):
    code = "Template.Invalid"


class BatchValidationError(ValidationError):
    @classmethod
    def empty(cls) -> BatchValidationError:
        return cls("At least one conversion item is required.", code="Batch.EmptyRequest")

    @classmethod
    def too_many(cls, max_items: int = MAX_BATCH_SIZE) -> BatchValidationError:
        return cls(f"Batch size cannot exceed {max_items} items.", code="Batch.TooManyItems")


# Not found / conflict

class JobNotFoundError(ConversionApiError):
    kind = ErrorKind.NOT_FOUND
    code = "ConversionJob.NotFound"

    def __init__(self, job_id: UUID | str):
        super().__init__(f"Conversion job with ID '{job_id}' was not found.")
        self.job_id = str(job_id)


class NoOutputAvailableError(ConversionApiError):
    kind = ErrorKind.NOT_FOUND
    code = "ConversionJob.NoOutputAvailable"

    def __init__(self, job_id: UUID | str):
        super().__init__("No output data is available for this conversion job.")
        self.job_id = str(job_id)


class TemplateNotFoundError(ConversionApiError):
    kind = ErrorKind.NOT_FOUND
    code = "Template.NotFound"

    def __init__(self, template_id: UUID | str):
        super().__init__(f"Conversion template with ID '{template_id}' was not found.")
        self.template_id = str(template_id)


class RateLimitSettingsNotFoundError(ConversionApiError):
    kind = ErrorKind.NOT_FOUND
    code = "RateLimit.SettingsNotFound"

    def __init__(self, user_id: UUID | str):
        super().__init__(f"Rate limit settings for user '{user_id}' were not found.")
        self.user_id = str(user_id)


class JobNotCompletedError(ConversionApiError):
    kind = ErrorKind.CONFLICT
    code = "ConversionJob.NotCompleted"

    def __init__(self, job_id: UUID | str, status: str):
        super().__init__(f"Conversion job is not completed yet (status: {status}).")
        self.job_id = str(job_id)
        self.status = status


class InvalidJobTransitionError(ConversionApiError):
    kind = ErrorKind.CONFLICT
    code = "ConversionJob.InvalidTransition"

    def __init__(self, job_id: UUID | str, current: str, target: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {target}.")
        self.job_id = str(job_id)
        self.current = current
        self.target = target


class TemplateNameExistsError(ConversionApiError):
    kind = ErrorKind.CONFLICT
    code = "Template.NameAlreadyExists"

    def __init__(self, name: str):
        super().__init__(f"A template named '{name}' already exists.")
        self.name = name


# Governance

class QuotaExceededError(ConversionApiError):
    kind = ErrorKind.QUOTA_EXCEEDED
    code = "Quota.Exceeded"

    def __init__(self, message: str, used: int, limit: int):
        super().__init__(message)
        self.used = used
        self.limit = limit


class ConversionsQuotaExceededError(QuotaExceededError):
    code = "Quota.ConversionsExceeded"

    def __init__(self, used: int, limit: int):
        super().__init__(
            f"Monthly conversions quota exceeded. Used: {used}, Limit: {limit}. "
            "Quota resets at the beginning of next month.",
            used=used,
            limit=limit,
        )


class BytesQuotaExceededError(QuotaExceededError):
    code = "Quota.BytesExceeded"

    def __init__(self, used: int, limit: int):
        super().__init__(
            f"Monthly bytes quota exceeded. Used: {format_bytes(used)}, Limit: {format_bytes(limit)}. "
            "Quota resets at the beginning of next month.",
            used=used,
            limit=limit,
        )


class RateLimitExceededError(ConversionApiError):
    kind = ErrorKind.RATE_LIMITED
    code = "RateLimit.Exceeded"

    def __init__(self, policy_name: str, retry_after_seconds: int):
        super().__init__(f"Rate limit exceeded for the '{policy_name}' policy. Retry after {retry_after_seconds}s.")
        self.policy_name = policy_name
        self.retry_after_seconds = retry_after_seconds


# Conversion / infrastructure

class ConversionFailedError(ConversionApiError):
    kind = ErrorKind.CONVERSION_FAILED
    code = "ConversionJob.ConversionFailed"


class StorageError(ConversionApiError):
    kind = ErrorKind.CONVERSION_FAILED
    code = "Storage.Error"


class StorageUploadError(StorageError):
    code = "Storage.UploadFailed"

    def __init__(self, object_key: str, reason: str = "Upload failed"):
        super().__init__(f"Failed to upload {object_key}: {reason}")
        self.object_key = object_key
        self.reason = reason


class StorageDownloadError(StorageError):
    code = "Storage.DownloadFailed"

    def __init__(self, object_key: str, reason: str = "Download failed"):
        super().__init__(f"Failed to download {object_key}: {reason}")
        self.object_key = object_key
        self.reason = reason


class RepositoryError(ConversionApiError):
    kind = ErrorKind.CONFIGURATION
    code = "Repository.Error"

    def __init__(self, operation: str, reason: str):
        super().__init__(f"Repository error during {operation}: {reason}")
        self.operation = operation
        self.reason = reason


class RateLimitConfigurationError(ConversionApiError):
    kind = ErrorKind.CONFIGURATION
    code = "RateLimit.MissingTier"

    def __init__(self, tier: str):
        super().__init__(f"No rate limit policies are configured for tier '{tier}'.")
        self.tier = tier


class WorkerConfigurationError(ConversionApiError):
    kind = ErrorKind.CONFIGURATION
    code = "Worker.Configuration"

    def __init__(self, errors: list[str]):
        super().__init__(f"Worker configuration errors: {', '.join(errors)}")
        self.errors = errors


_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def format_bytes(size: int) -> str:
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(_SIZE_UNITS) - 1:
        value /= 1024
        unit += 1
    return f"{value:.1f} {_SIZE_UNITS[unit]}"
