"""
TaskGuard Subscription Service
Tier resolution, endpoint rate-limit resolution and daily API quota tracking.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import FrozenSet, Iterable, NamedTuple, Optional, Pattern, Tuple

from sqlalchemy.orm import Session

from taskguard.core.cache import RuleCacheKey, TierCacheKey, TTLCache
from taskguard.core.config import Settings, settings as default_settings
from taskguard.core.logging import LoggerMixin, get_logger
from taskguard.core.timeutils import (
    UNLIMITED_RESET_TIME, Clock, ensure_utc, next_utc_midnight, start_of_utc_day, utc_now
)
from taskguard.database.models import SubscriptionTier, UserQuota
from taskguard.database.repositories import SubscriptionRepository
from taskguard.security.alerts import QUOTA_WARNING, AlertSeverity, SecurityAlertDispatcher
from taskguard.security.schemas import QuotaStatus

logger = get_logger(__name__)

MAX_INT = 2147483647
UNLIMITED_WINDOW_SECONDS = 60
FREE_TIER_NAME = "Free"
SYSTEM_TIER_NAME = "System"


class SubscriptionServiceError(Exception):
    """Base exception for subscription service"""
    pass


class SubscriptionConfigurationError(SubscriptionServiceError):
    """No default tier can be resolved; requests cannot be served"""
    pass


@dataclass(frozen=True)
class TierInfo:
    """Immutable snapshot of a subscription tier, safe to share across sessions"""
    id: int
    name: str
    is_system_tier: bool
    bypass_standard_rate_limits: bool
    daily_api_quota: int
    default_rate_limit: int
    default_time_window_seconds: int

    @classmethod
    def from_model(cls, tier: SubscriptionTier) -> "TierInfo":
        return cls(
            id=tier.id,
            name=tier.name,
            is_system_tier=tier.is_system_tier,
            bypass_standard_rate_limits=tier.bypass_standard_rate_limits,
            daily_api_quota=tier.daily_api_quota,
            default_rate_limit=tier.default_rate_limit,
            default_time_window_seconds=tier.default_time_window_seconds,
        )


class RateLimit(NamedTuple):
    limit: int
    time_window_seconds: int


@lru_cache(maxsize=512)
def _compile_endpoint_pattern(endpoint_pattern: str) -> Optional[Pattern]:
    regex = endpoint_pattern.replace("*", ".*").replace("/", "\\/")
    try:
        return re.compile(f"^{regex}$", re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Ignoring invalid endpoint pattern '{endpoint_pattern}': {e}")
        return None


def endpoint_matches(endpoint_pattern: str, endpoint: str) -> bool:
    """Case-insensitive full match of an endpoint against a '*' wildcard pattern"""
    compiled = _compile_endpoint_pattern(endpoint_pattern)
    return compiled is not None and compiled.match(endpoint) is not None


class UserSubscriptionService(LoggerMixin):
    """
    Quota and rate-limit resolver.

    Tier and rule resolutions are cached for a fixed TTL with no invalidation
    on rule changes. Caches are meant to outlive the per-request session, so
    they only ever hold immutable snapshots.
    """

    def __init__(
        self,
        db: Session,
        trusted_accounts: Iterable[int] = (),
        app_settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        tier_cache: Optional[TTLCache] = None,
        rule_cache: Optional[TTLCache] = None,
        alerts: Optional[SecurityAlertDispatcher] = None
    ):
        self.db = db
        self.settings = app_settings or default_settings
        self.clock = clock or utc_now
        self.trusted_accounts: FrozenSet[int] = frozenset(trusted_accounts)
        self.tier_cache = tier_cache if tier_cache is not None else TTLCache(clock=self.clock)
        self.rule_cache = rule_cache if rule_cache is not None else TTLCache(clock=self.clock)
        self.alerts = alerts
        self.repository = SubscriptionRepository(db)
        self.tier_cache_ttl = timedelta(seconds=self.settings.TIER_CACHE_TTL_SECONDS)
        self.rule_cache_ttl = timedelta(seconds=self.settings.RATE_LIMIT_CACHE_TTL_SECONDS)

    @classmethod
    def from_settings(
        cls,
        db: Session,
        app_settings: Optional[Settings] = None,
        **kwargs
    ) -> "UserSubscriptionService":
        """Build a resolver whose trusted accounts come from configuration"""
        app_settings = app_settings or default_settings
        return cls(db, app_settings.trusted_system_account_ids, app_settings=app_settings, **kwargs)

    # =========================================================================
    # TIER AND RATE LIMIT RESOLUTION
    # =========================================================================

    def get_subscription_tier(self, user_id: int) -> TierInfo:
        """
        Effective tier of a user.

        Order: cache, trusted-account System tier, the tier linked to the
        user's quota, then the Free tier. Raises SubscriptionConfigurationError
        when not even the Free tier exists.
        """
        key = TierCacheKey(user_id)
        cached = self.tier_cache.get(key)
        if cached is not None:
            return cached

        if self.is_trusted_system_account(user_id):
            system_tier = self._resolve_system_tier()
            if system_tier is not None:
                return self._cache_tier(key, system_tier)

        quota = self.repository.get_user_quota(user_id)
        if quota is not None and quota.subscription_tier is not None:
            return self._cache_tier(key, quota.subscription_tier)

        free_tier = self._resolve_free_tier()
        if free_tier is None:
            self.logger.error("Default free tier not found")
            raise SubscriptionConfigurationError("Default subscription tier not configured correctly")

        return self._cache_tier(key, free_tier)

    def get_rate_limit(self, user_id: int, endpoint: str) -> RateLimit:
        """Highest-priority matching rule of the user's tier, else the tier default"""
        tier = self.get_subscription_tier(user_id)

        if tier.is_system_tier and tier.bypass_standard_rate_limits:
            return RateLimit(MAX_INT, UNLIMITED_WINDOW_SECONDS)

        key = RuleCacheKey(tier.id, endpoint)
        cached = self.rule_cache.get(key)

        if cached is not None:
            return cached

        resolved = RateLimit(tier.default_rate_limit, tier.default_time_window_seconds)
        for rule in self.repository.list_rate_limit_rules(tier.id):
            if endpoint_matches(rule.endpoint_pattern, endpoint):
                resolved = RateLimit(rule.rate_limit, rule.time_window_seconds)
                break

        self.rule_cache.set(key, resolved, self.rule_cache_ttl)
        return resolved

    def is_trusted_system_account(self, user_id: int) -> bool:
        if user_id in self.trusted_accounts:
            return True

        quota = self.repository.get_user_quota(user_id)
        return bool(quota and quota.subscription_tier and quota.subscription_tier.is_system_tier)

    # =========================================================================
    # DAILY QUOTA
    # =========================================================================

    def has_exceeded_daily_quota(self, user_id: int) -> bool:
        if self.is_trusted_system_account(user_id):
            return False

        now = self.clock()
        quota = self.get_or_create_user_quota(user_id)

        if quota.is_exempt_from_quota:
            return False

        if quota.needs_reset(now):
            self._reset_quota(quota, now)
            return False

        return quota.api_calls_used_today >= quota.max_daily_api_calls

    def increment_usage(self, user_id: int, count: int = 1) -> None:
        """
        Count API calls against the user's daily quota.

        A same-day increment is a single atomic ``counter + count`` update; the
        first increment of a new day resets the counter to ``count``.
        """
        if self.is_trusted_system_account(user_id):
            return

        now = self.clock()
        quota = self.get_or_create_user_quota(user_id)

        if quota.is_exempt_from_quota:
            return

        if quota.needs_reset(now):
            quota.api_calls_used_today = count
            quota.last_reset_time = start_of_utc_day(now)
            quota.has_received_quota_warning = False
            quota.last_updated_time = now
            self.repository.upsert_user_quota(quota)
        else:
            self.repository.add_usage(user_id, count, now)
            self.repository.refresh(quota)

        self._check_quota_warning(quota)

    def get_remaining_quota(self, user_id: int) -> Tuple[int, datetime]:
        """(remaining calls, reset time); unlimited accounts get (MAX_INT, datetime.max)"""
        if self.is_trusted_system_account(user_id):
            return MAX_INT, UNLIMITED_RESET_TIME

        now = self.clock()
        quota = self.get_or_create_user_quota(user_id)

        if quota.is_exempt_from_quota:
            return MAX_INT, UNLIMITED_RESET_TIME

        if quota.needs_reset(now):
            self._reset_quota(quota, now)

        remaining = max(0, quota.max_daily_api_calls - quota.api_calls_used_today)
        return remaining, next_utc_midnight(quota.last_reset_time)

    def get_or_create_user_quota(self, user_id: int) -> UserQuota:
        quota = self.repository.get_user_quota(user_id)
        if quota is not None:
            return quota

        tier = self.get_subscription_tier(user_id)
        now = self.clock()
        quota = UserQuota(
            user_id=user_id,
            subscription_tier_id=tier.id,
            api_calls_used_today=0,
            max_daily_api_calls=tier.daily_api_quota,
            last_reset_time=start_of_utc_day(now),
            last_updated_time=now,
            is_exempt_from_quota=tier.is_system_tier,
            has_received_quota_warning=False,
            quota_warning_threshold_percent=self.settings.QUOTA_WARNING_THRESHOLD_PERCENT,
        )
        self.logger.info(f"Created API quota for user {user_id} on tier '{tier.name}'")
        return self.repository.upsert_user_quota(quota)

    def update_user_subscription_tier(self, user_id: int, tier_id: int) -> bool:
        try:
            tier = self.repository.get_tier_by_id(tier_id)
            if tier is None:
                self.logger.warning(f"Cannot move user {user_id} to unknown tier {tier_id}")
                return False

            quota = self.get_or_create_user_quota(user_id)
            quota.subscription_tier_id = tier.id
            quota.max_daily_api_calls = tier.daily_api_quota
            quota.is_exempt_from_quota = tier.is_system_tier
            quota.last_updated_time = self.clock()
            self.repository.upsert_user_quota(quota)

            self.tier_cache.invalidate(TierCacheKey(user_id))
            self.logger.info(f"Moved user {user_id} to subscription tier '{tier.name}'")
            return True

        except Exception as e:
            self.logger.error(f"Error updating subscription tier for user {user_id}: {e}", exc_info=True)
            self.db.rollback()
            return False

    def reset_daily_usage(self, user_id: int) -> bool:
        try:
            quota = self.repository.get_user_quota(user_id)
            if quota is None:
                return False
            self._reset_quota(quota, self.clock())
            return True
        except Exception as e:
            self.logger.error(f"Error resetting daily usage for user {user_id}: {e}", exc_info=True)
            self.db.rollback()
            return False

    def get_quota_status(self, user_id: int) -> QuotaStatus:
        tier = self.get_subscription_tier(user_id)
        trusted = self.is_trusted_system_account(user_id)
        remaining, reset_time = self.get_remaining_quota(user_id)

        if trusted:
            return QuotaStatus(
                user_id=user_id,
                tier_name=tier.name,
                is_trusted_system_account=True,
                is_exempt=True,
                max_daily_api_calls=MAX_INT,
                remaining_calls=remaining,
                reset_time=reset_time,
            )

        quota = self.get_or_create_user_quota(user_id)
        return QuotaStatus(
            user_id=user_id,
            tier_name=tier.name,
            is_exempt=quota.is_exempt_from_quota,
            api_calls_used_today=quota.api_calls_used_today,
            max_daily_api_calls=quota.max_daily_api_calls,
            remaining_calls=remaining,
            reset_time=reset_time,
            has_received_quota_warning=quota.has_received_quota_warning,
        )

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _cache_tier(self, key: TierCacheKey, tier: SubscriptionTier) -> TierInfo:
        info = TierInfo.from_model(tier)
        self.tier_cache.set(key, info, self.tier_cache_ttl)
        return info

    def _resolve_system_tier(self) -> Optional[SubscriptionTier]:
        tier = None
        if self.settings.SYSTEM_TIER_ID > 0:
            tier = self.repository.get_tier_by_id(self.settings.SYSTEM_TIER_ID)
        return tier or self.repository.get_tier_by_name(SYSTEM_TIER_NAME, is_system_tier=True)

    def _resolve_free_tier(self) -> Optional[SubscriptionTier]:
        tier = None
        if self.settings.DEFAULT_FREE_TIER_ID > 0:
            tier = self.repository.get_tier_by_id(self.settings.DEFAULT_FREE_TIER_ID)
        return tier or self.repository.get_tier_by_name(FREE_TIER_NAME, is_system_tier=False)

    def _reset_quota(self, quota: UserQuota, now: datetime) -> None:
        quota.api_calls_used_today = 0
        quota.last_reset_time = start_of_utc_day(now)
        quota.has_received_quota_warning = False
        quota.last_updated_time = ensure_utc(now)
        self.repository.upsert_user_quota(quota)

    def _check_quota_warning(self, quota: UserQuota) -> None:
        if quota.has_received_quota_warning or quota.max_daily_api_calls <= 0:
            return

        threshold = quota.max_daily_api_calls * quota.quota_warning_threshold_percent // 100
        if quota.api_calls_used_today < threshold:
            return

        if not self.repository.mark_quota_warning(quota.user_id):
            return
        self.repository.refresh(quota)

        percent = quota.api_calls_used_today * 100 // quota.max_daily_api_calls
        self.logger.info(
            f"User {quota.user_id} has used {quota.api_calls_used_today}/{quota.max_daily_api_calls} "
            f"API calls ({percent}%)"
        )
        if self.alerts is not None:
            self.alerts.raise_alert(
                QUOTA_WARNING,
                AlertSeverity.MEDIUM,
                f"User {quota.user_id} reached {percent}% of daily API quota",
                f"{quota.api_calls_used_today} of {quota.max_daily_api_calls} calls used today",
                user_id=quota.user_id,
                used=quota.api_calls_used_today,
                limit=quota.max_daily_api_calls,
            )
