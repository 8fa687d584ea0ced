# src/app/services/rate_limit_service.py
"""
Rate-limit policy resolution.
Resolves the effective permit limit and window for a user and policy:
admin bypass first, then per-user override, then the tier default.
"""
from __future__ import annotations

import logging
import sys
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional, Union
from uuid import UUID

from src.app.config import RateLimitingSettings
from src.app.domain.errors import (
    InvalidOverrideError,
    RateLimitConfigurationError,
    RateLimitSettingsNotFoundError,
    RepositoryError,
)
from src.app.domain.models import (
    EffectiveRateLimits,
    PolicyName,
    PolicyOverride,
    RateLimitTier,
    UserRateLimitSettings,
)
from src.app.infra.db.base import RateLimitSettingsRepository, UserRepository

logger = logging.getLogger(__name__)

ADMIN_WINDOW = timedelta(hours=1)


@dataclass
class _CacheEntry:
    value: UserRateLimitSettings
    expires_at: float


class SettingsCache:
    """
    Per-user settings cache with TTL expiry and generation-checked writes.

    Every invalidation bumps the user's generation. A reader that loaded
    settings from the repository before an invalidation holds a stale
    generation and its write is dropped, so a mutation is never hidden by
    an older value. Values are copied in and out under the lock.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[UUID, _CacheEntry] = {}
        self._generations: dict[UUID, int] = {}

    def get(self, user_id: UUID) -> Optional[UserRateLimitSettings]:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[user_id]
                return None
            return entry.value.snapshot()

    def generation(self, user_id: UUID) -> int:
        with self._lock:
            return self._generations.get(user_id, 0)

    def put(self, user_id: UUID, value: UserRateLimitSettings, generation: int) -> bool:
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            if self._generations.get(user_id, 0) != generation:
                return False
            self._entries[user_id] = _CacheEntry(
                value=value.snapshot(),
                expires_at=self._clock() + self.ttl_seconds,
            )
            return True

    def invalidate(self, user_id: UUID) -> None:
        with self._lock:
            self._entries.pop(user_id, None)
            self._generations[user_id] = self._generations.get(user_id, 0) + 1


class RateLimitService:
    """
    Service for per-user rate-limit tiers and overrides.

    Every mutating call persists the change and invalidates the user's
    cache entry before returning, so the next resolution sees it.
    """

    def __init__(
        self,
        repository: RateLimitSettingsRepository,
        user_repository: UserRepository,
        settings: RateLimitingSettings,
        cache: Optional[SettingsCache] = None,
    ):
        missing = settings.missing_tiers()
        if missing:
            raise RateLimitConfigurationError(", ".join(missing))

        self._repo = repository
        self._users = user_repository
        self.settings = settings
        self._cache = cache or SettingsCache(settings.user_settings_cache_seconds)

    # =========================================================================
    # Resolution
    # =========================================================================

    def get_effective_limits(
        self,
        user_id: UUID,
        policy_name: Union[str, PolicyName],
    ) -> EffectiveRateLimits:
        """
        Resolve the limits that apply to a user for one policy.

        Args:
            user_id: The user
            policy_name: "standard" or "conversion"

        Returns:
            EffectiveRateLimits with the source that won ("Admin",
            "Override" or "Tier")

        Raises:
            InvalidPolicyNameError: For any other policy name
        """
        policy = PolicyName.parse(policy_name)

        if self.should_bypass(user_id):
            return EffectiveRateLimits(
                permit_limit=sys.maxsize,
                window=ADMIN_WINDOW,
                bypass=True,
                source=EffectiveRateLimits.SOURCE_ADMIN,
            )

        user_settings = self._load_cached(user_id)
        tier = user_settings.tier if user_settings else RateLimitTier.FREE

        override = user_settings.override_for(policy) if user_settings else None
        if override is not None:
            return EffectiveRateLimits(
                permit_limit=override.permit_limit,
                window=timedelta(minutes=override.window_minutes),
                bypass=False,
                source=EffectiveRateLimits.SOURCE_OVERRIDE,
            )

        tier_policies = self.settings.get_tier(tier)
        policy_settings = tier_policies.standard if policy is PolicyName.STANDARD else tier_policies.conversion
        return EffectiveRateLimits(
            permit_limit=policy_settings.permit_limit,
            window=timedelta(minutes=policy_settings.window_minutes),
            bypass=tier is RateLimitTier.UNLIMITED,
            source=EffectiveRateLimits.SOURCE_TIER,
        )

    def should_bypass(self, user_id: UUID) -> bool:
        if not self.settings.exempt_admins:
            return False
        user = self._users.get_by_id(user_id)
        return bool(user and user.is_admin)

    # =========================================================================
    # Settings
    # =========================================================================

    def get_settings(self, user_id: UUID) -> UserRateLimitSettings:
        """
        Raises:
            RateLimitSettingsNotFoundError: If the user has no settings yet
        """
        user_settings = self._load_cached(user_id)
        if user_settings is None:
            raise RateLimitSettingsNotFoundError(user_id)
        return user_settings

    def get_or_create_settings(self, user_id: UUID) -> UserRateLimitSettings:
        existing = self._repo.get_by_user(user_id)
        if existing is not None:
            return existing

        user_settings = UserRateLimitSettings.create(user_id)
        if not self._repo.add_if_absent(user_settings):
            existing = self._repo.get_by_user(user_id)
            if existing is None:
                raise RepositoryError("add_rate_limit_settings", "record neither inserted nor found")
            return existing
        self.invalidate_cache(user_id)

        logger.info(
            "Created rate limit settings: user=%s, tier=%s",
            user_id, user_settings.tier.value,
        )
        return user_settings

    def update_tier(self, user_id: UUID, tier: Union[str, RateLimitTier]) -> UserRateLimitSettings:
        """
        Replace the user's tier. Existing overrides are kept.

        Raises:
            InvalidTierError: If the tier name is unknown
        """
        new_tier = RateLimitTier.parse(tier)
        user_settings = self.get_or_create_settings(user_id)
        user_settings.update_tier(new_tier)
        self._save(user_settings)

        logger.info("Updated rate limit tier: user=%s, tier=%s", user_id, new_tier.value)
        return user_settings

    def set_policy_override(
        self,
        user_id: UUID,
        policy_name: Union[str, PolicyName],
        permit_limit: Optional[int],
        window_minutes: Optional[int],
    ) -> UserRateLimitSettings:
        """
        Set or clear one policy's override.

        Both values None clears the override; both set replaces it.

        Raises:
            InvalidPolicyNameError: If the policy name is unknown
            InvalidOverrideError: If only one value is given or a value is
                out of range
        """
        policy = PolicyName.parse(policy_name)
        override = _build_override(permit_limit, window_minutes)

        user_settings = self.get_or_create_settings(user_id)
        user_settings.set_override(policy, override)
        self._save(user_settings)

        if override is None:
            logger.info("Cleared %s override: user=%s", policy.value, user_id)
        else:
            logger.info(
                "Set %s override: user=%s, permit_limit=%d, window_minutes=%d",
                policy.value, user_id, override.permit_limit, override.window_minutes,
            )
        return user_settings

    def clear_overrides(self, user_id: UUID) -> UserRateLimitSettings:
        user_settings = self.get_or_create_settings(user_id)
        user_settings.clear_overrides()
        self._save(user_settings)

        logger.info("Cleared all rate limit overrides: user=%s", user_id)
        return user_settings

    def invalidate_cache(self, user_id: UUID) -> None:
        self._cache.invalidate(user_id)

    def describe(self, user_id: UUID) -> tuple[UserRateLimitSettings, EffectiveRateLimits, EffectiveRateLimits]:
        """Settings plus effective standard and conversion limits, for admin views."""
        user_settings = self.get_or_create_settings(user_id)
        return (
            user_settings,
            self.get_effective_limits(user_id, PolicyName.STANDARD),
            self.get_effective_limits(user_id, PolicyName.CONVERSION),
        )

    def _save(self, user_settings: UserRateLimitSettings) -> None:
        self._repo.update(user_settings)
        self.invalidate_cache(user_settings.user_id)

    def _load_cached(self, user_id: UUID) -> Optional[UserRateLimitSettings]:
        cached = self._cache.get(user_id)
        if cached is not None:
            return cached

        generation = self._cache.generation(user_id)
        loaded = self._repo.get_by_user(user_id)
        if loaded is None:
            return None

        self._cache.put(user_id, loaded, generation)
        return loaded.snapshot()


def _build_override(permit_limit: Optional[int], window_minutes: Optional[int]) -> Optional[PolicyOverride]:
    if permit_limit is None and window_minutes is None:
        return None
    if permit_limit is None or window_minutes is None:
        raise InvalidOverrideError("Both permit limit and window minutes must be provided, or neither.")
    try:
        return PolicyOverride(permit_limit=permit_limit, window_minutes=window_minutes)
    except ValueError as error:
        raise InvalidOverrideError(str(error)) from error
