from __future__ import annotations

from pydantic import AnyUrl, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from src.app.domain.errors import RateLimitConfigurationError
from src.app.domain.models import RateLimitTier

GIB = 1024 * 1024 * 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    SUPABASE_URL: AnyUrl | None = None
    SUPABASE_SERVICE_ROLE_KEY: str | None = None
    APP_ENV: str = "local"
    FRONTEND_CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://localhost:3000"],
    )
    CONVERTER_SERVICE_URL: str = "http://localhost:8081"
    CONVERTER_TIMEOUT_SECONDS: float = 120.0


class UsageQuotaSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="QUOTA_",
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = True
    exempt_admins: bool = True
    default_monthly_conversions: int = Field(default=1000, ge=0)
    default_monthly_bytes: int = Field(default=GIB, ge=0)
    # 0 means unlimited
    admin_monthly_conversions: int = Field(default=0, ge=0)
    admin_monthly_bytes: int = Field(default=0, ge=0)


class RatePolicySettings(BaseModel):
    permit_limit: int = Field(ge=0)
    window_minutes: int = Field(gt=0)


class TierSettings(BaseModel):
    standard: RatePolicySettings
    conversion: RatePolicySettings


def _default_tiers() -> dict[str, TierSettings]:
    def tier(standard: int, conversion: int) -> TierSettings:
        return TierSettings(
            standard=RatePolicySettings(permit_limit=standard, window_minutes=60),
            conversion=RatePolicySettings(permit_limit=conversion, window_minutes=60),
        )

    return {
        RateLimitTier.FREE.value: tier(100, 20),
        RateLimitTier.BASIC.value: tier(500, 100),
        RateLimitTier.PREMIUM.value: tier(2000, 500),
        RateLimitTier.UNLIMITED.value: tier(100000, 10000),
    }


class RateLimitingSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = True
    exempt_admins: bool = True
    user_settings_cache_seconds: int = Field(default=300, ge=0)
    tiers: dict[str, TierSettings] = Field(default_factory=_default_tiers)

    def get_tier(self, tier: RateLimitTier) -> TierSettings:
        """Look up a tier's policies; a missing entry is a deployment error."""
        try:
            return self.tiers[tier.value]
        except KeyError:
            raise RateLimitConfigurationError(tier.value) from None

    def missing_tiers(self) -> list[str]:
        return [tier.value for tier in RateLimitTier if tier.value not in self.tiers]


class CloudStorageSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CLOUD_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = False
    service_url: str | None = None
    bucket_name: str = "conversions"
    access_key: str | None = None
    secret_key: str | None = None
    region: str = "us-east-1"
    force_path_style: bool = True
    presigned_url_expiration_minutes: int = Field(default=60, gt=0)


class WebhookSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    retry_delay_milliseconds: int = Field(default=1000, ge=0)


def _default_url_blocklist() -> list[str]:
    return [
        "localhost",
        "127.0.0.1",
        "::1",
        "0.0.0.0",
        "*.local",
        "*.localhost",
        "10.*",
        *(f"172.{octet}.*" for octet in range(16, 32)),
        "192.168.*",
        "169.254.*",
        "metadata.google.internal",
    ]


class InputValidationSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="INPUT_VALIDATION_",
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    enabled: bool = True
    max_file_size_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    max_html_content_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    max_markdown_content_bytes: int = Field(default=5 * 1024 * 1024, gt=0)

    # URL checks for HTML conversions that fetch a page
    url_validation_enabled: bool = True
    block_private_ip_addresses: bool = True
    use_allowlist: bool = False
    # Host patterns with * and ? wildcards, JSON lists in the environment
    allowlist: list[str] = Field(default_factory=list)
    blocklist: list[str] = Field(default_factory=_default_url_blocklist)


settings = Settings()
input_validation_settings = InputValidationSettings()
quota_settings = UsageQuotaSettings()
rate_limit_settings = RateLimitingSettings()
cloud_storage_settings = CloudStorageSettings()
webhook_settings = WebhookSettings()
