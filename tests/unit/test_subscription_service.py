"""
Unit tests for tier resolution, rate-limit resolution and daily quota tracking.
"""
from datetime import datetime, timedelta, timezone

import pytest

from taskguard.core.cache import RuleCacheKey, TierCacheKey
from taskguard.core.timeutils import UNLIMITED_RESET_TIME
from taskguard.database.models import RateLimitRule, SubscriptionTier, UserQuota
from taskguard.security.alerts import QUOTA_WARNING
from taskguard.services.subscription_service import (
    MAX_INT,
    RateLimit,
    SubscriptionConfigurationError,
    UserSubscriptionService,
    endpoint_matches,
)

TRUSTED_USER = 900
NEXT_MIDNIGHT = datetime(2024, 3, 13, tzinfo=timezone.utc)


def add_tier(db, name, rules, default_limit=100, window=60, daily=500):
    """Persist a custom tier with (pattern, limit, priority) rules"""
    tier = SubscriptionTier(
        name=name,
        daily_api_quota=daily,
        default_rate_limit=default_limit,
        default_time_window_seconds=window,
    )
    for pattern, limit, priority in rules:
        tier.rate_limit_rules.append(RateLimitRule(
            endpoint_pattern=pattern,
            rate_limit=limit,
            time_window_seconds=window,
            match_priority=priority,
        ))
    db.add(tier)
    db.commit()
    return tier


def quota_rows(db, user_id):
    return db.query(UserQuota).filter(UserQuota.user_id == user_id).count()


class TestEndpointMatching:

    @pytest.mark.parametrize("pattern,endpoint,expected", [
        ("/api/*/tasks*", "/api/v1/tasks/5", True),
        ("/api/*/auth/*", "/api/v1/auth/login", True),
        ("/api/v1/tasks", "/API/V1/Tasks", True),
        ("/api/*", "/apix", False),
        ("/health", "/health/ready", False),
        ("/api/(", "/api/(", False),
    ])
    def test_wildcard_full_match(self, pattern, endpoint, expected):
        assert endpoint_matches(pattern, endpoint) is expected


class TestTierResolution:

    def test_new_user_gets_free_tier(self, subscription_service, tiers):
        tier = subscription_service.get_subscription_tier(1)

        assert tier.name == "Free"
        assert tier.id == tiers["Free"].id
        assert tier.daily_api_quota == 1000
        assert TierCacheKey(1) in subscription_service.tier_cache

    def test_trusted_account_gets_system_tier(self, subscription_service):
        tier = subscription_service.get_subscription_tier(TRUSTED_USER)

        assert tier.name == "System"
        assert tier.is_system_tier is True
        assert subscription_service.is_trusted_system_account(TRUSTED_USER)

    def test_quota_on_system_tier_makes_account_trusted(self, subscription_service, tiers):
        assert subscription_service.update_user_subscription_tier(5, tiers["System"].id)

        assert subscription_service.is_trusted_system_account(5) is True
        assert subscription_service.get_or_create_user_quota(5).is_exempt_from_quota is True
        assert subscription_service.get_rate_limit(5, "/api/v1/tasks") == RateLimit(MAX_INT, 60)

    def test_missing_free_tier_is_a_configuration_error(self, db_session, test_settings, clock):
        service = UserSubscriptionService.from_settings(db_session, test_settings, clock=clock)

        with pytest.raises(SubscriptionConfigurationError):
            service.get_subscription_tier(1)

    def test_configured_free_tier_id_takes_precedence(self, db_session, test_settings, clock, tiers):
        test_settings.DEFAULT_FREE_TIER_ID = tiers["Premium"].id
        service = UserSubscriptionService.from_settings(db_session, test_settings, clock=clock)

        assert service.get_subscription_tier(1).name == "Premium"

    def test_update_tier_invalidates_cached_tier(self, subscription_service, tiers):
        assert subscription_service.get_subscription_tier(3).name == "Free"

        assert subscription_service.update_user_subscription_tier(3, tiers["Premium"].id) is True

        assert subscription_service.get_subscription_tier(3).name == "Premium"
        assert subscription_service.get_or_create_user_quota(3).max_daily_api_calls == 10000

    def test_update_to_unknown_tier(self, subscription_service):
        assert subscription_service.update_user_subscription_tier(3, 9999) is False
        assert subscription_service.get_subscription_tier(3).name == "Free"

    def test_cached_tier_is_served_until_ttl(self, subscription_service, db_session, tiers, clock):
        subscription_service.get_or_create_user_quota(4)
        assert subscription_service.get_subscription_tier(4).name == "Free"

        quota = db_session.query(UserQuota).filter(UserQuota.user_id == 4).one()
        quota.subscription_tier_id = tiers["Premium"].id
        db_session.commit()
        db_session.expire_all()

        clock.advance(minutes=10)
        assert subscription_service.get_subscription_tier(4).name == "Free"

        clock.advance(minutes=6)
        assert subscription_service.get_subscription_tier(4).name == "Premium"


class TestRateLimitResolution:

    @pytest.mark.parametrize("endpoint,expected", [
        ("/api/v1/auth/login", RateLimit(5, 60)),
        ("/api/v1/tasks/42", RateLimit(20, 30)),
        ("/api/v1/profile", RateLimit(60, 60)),
    ])
    def test_free_tier_rules(self, subscription_service, endpoint, expected):
        assert subscription_service.get_rate_limit(1, endpoint) == expected

    def test_no_rule_falls_back_to_cached_tier_default(self, subscription_service, tiers, monkeypatch):
        assert subscription_service.get_rate_limit(1, "/health") == RateLimit(60, 60)
        assert subscription_service.rule_cache.get(RuleCacheKey(tiers["Free"].id, "/health")) == RateLimit(60, 60)

        def no_rules(tier_id):
            raise AssertionError("rules queried for a cached endpoint")

        monkeypatch.setattr(subscription_service.repository, "list_rate_limit_rules", no_rules)
        assert subscription_service.get_rate_limit(1, "/health") == RateLimit(60, 60)

    def test_matches_are_cached_per_tier_and_endpoint(self, subscription_service, tiers):
        subscription_service.get_rate_limit(1, "/api/v1/tasks")

        key = RuleCacheKey(tiers["Free"].id, "/api/v1/tasks")
        assert subscription_service.rule_cache.get(key) == RateLimit(20, 30)

    def test_highest_priority_rule_wins(self, subscription_service, db_session):
        custom = add_tier(db_session, "Custom", [("/api/*", 10, 1), ("/api/v1/tasks", 2, 5)])
        subscription_service.update_user_subscription_tier(8, custom.id)

        assert subscription_service.get_rate_limit(8, "/api/v1/tasks") == RateLimit(2, 60)
        assert subscription_service.get_rate_limit(8, "/API/V1/TASKS") == RateLimit(2, 60)
        assert subscription_service.get_rate_limit(8, "/api/v1/other") == RateLimit(10, 60)

    def test_invalid_pattern_never_matches(self, subscription_service, db_session):
        custom = add_tier(db_session, "Broken", [("/api/(", 1, 10), ("/api/*", 7, 1)])
        subscription_service.update_user_subscription_tier(8, custom.id)

        assert subscription_service.get_rate_limit(8, "/api/(") == RateLimit(7, 60)

    def test_system_tier_bypass(self, subscription_service):
        assert subscription_service.get_rate_limit(TRUSTED_USER, "/api/v1/auth/login") == RateLimit(MAX_INT, 60)


class TestDailyQuota:

    def test_quota_created_from_tier_defaults(self, subscription_service, tiers):
        quota = subscription_service.get_or_create_user_quota(1)

        assert quota.subscription_tier_id == tiers["Free"].id
        assert quota.max_daily_api_calls == 1000
        assert quota.api_calls_used_today == 0
        assert quota.last_reset_time == datetime(2024, 3, 12, tzinfo=timezone.utc)
        assert quota.quota_warning_threshold_percent == 80
        assert quota.is_exempt_from_quota is False

    def test_increment_and_remaining(self, subscription_service):
        subscription_service.increment_usage(1)
        subscription_service.increment_usage(1, count=4)

        assert subscription_service.get_or_create_user_quota(1).api_calls_used_today == 5
        assert subscription_service.get_remaining_quota(1) == (995, NEXT_MIDNIGHT)

    def test_trusted_account_is_unlimited_without_a_quota_row(self, subscription_service, db_session):
        subscription_service.increment_usage(TRUSTED_USER, count=50)

        assert subscription_service.get_remaining_quota(TRUSTED_USER) == (MAX_INT, UNLIMITED_RESET_TIME)
        assert subscription_service.has_exceeded_daily_quota(TRUSTED_USER) is False
        assert quota_rows(db_session, TRUSTED_USER) == 0

    def test_exceeded_quota(self, subscription_service):
        subscription_service.increment_usage(2, count=999)
        assert subscription_service.has_exceeded_daily_quota(2) is False

        subscription_service.increment_usage(2)
        assert subscription_service.has_exceeded_daily_quota(2) is True
        assert subscription_service.get_remaining_quota(2) == (0, NEXT_MIDNIGHT)

    def test_remaining_never_negative(self, subscription_service):
        subscription_service.increment_usage(2, count=1500)
        assert subscription_service.get_remaining_quota(2)[0] == 0

    def test_new_day_resets_exceeded_quota(self, subscription_service, clock):
        subscription_service.increment_usage(2, count=1000)
        clock.advance(days=1)

        assert subscription_service.has_exceeded_daily_quota(2) is False
        quota = subscription_service.get_or_create_user_quota(2)
        assert quota.api_calls_used_today == 0
        assert quota.last_reset_time == NEXT_MIDNIGHT

    def test_first_increment_of_new_day_starts_from_count(self, subscription_service, clock, received_alerts):
        subscription_service.increment_usage(7, count=950)
        assert subscription_service.get_or_create_user_quota(7).has_received_quota_warning is True

        clock.advance(days=1, hours=3)
        subscription_service.increment_usage(7, count=2)

        quota = subscription_service.get_or_create_user_quota(7)
        assert quota.api_calls_used_today == 2
        assert quota.last_reset_time == NEXT_MIDNIGHT
        assert quota.has_received_quota_warning is False
        assert len(received_alerts) == 1

    def test_warning_fires_once_at_threshold(self, subscription_service, received_alerts):
        subscription_service.increment_usage(6, count=799)
        assert received_alerts == []

        subscription_service.increment_usage(6)
        subscription_service.increment_usage(6)

        [alert] = received_alerts
        assert alert.event == QUOTA_WARNING
        assert alert.labels == {"user_id": "6", "used": "800", "limit": "1000"}
        assert subscription_service.get_or_create_user_quota(6).has_received_quota_warning is True

    def test_exempt_quota_is_not_counted(self, subscription_service, db_session):
        quota = subscription_service.get_or_create_user_quota(11)
        quota.is_exempt_from_quota = True
        db_session.commit()

        subscription_service.increment_usage(11, count=5000)

        assert quota.api_calls_used_today == 0
        assert subscription_service.has_exceeded_daily_quota(11) is False
        assert subscription_service.get_remaining_quota(11) == (MAX_INT, UNLIMITED_RESET_TIME)

    def test_exempt_quota_rollover_leaves_counter_alone(self, subscription_service, db_session, clock):
        quota = subscription_service.get_or_create_user_quota(13)
        quota.api_calls_used_today = 42
        quota.is_exempt_from_quota = True
        db_session.commit()
        last_reset = quota.last_reset_time

        clock.advance(days=1)

        assert subscription_service.has_exceeded_daily_quota(13) is False
        assert subscription_service.get_remaining_quota(13) == (MAX_INT, UNLIMITED_RESET_TIME)
        db_session.expire_all()
        quota = subscription_service.get_or_create_user_quota(13)
        assert quota.api_calls_used_today == 42
        assert quota.last_reset_time == last_reset

    def test_reset_daily_usage(self, subscription_service):
        assert subscription_service.reset_daily_usage(12) is False

        subscription_service.increment_usage(12, count=900)
        assert subscription_service.reset_daily_usage(12) is True

        quota = subscription_service.get_or_create_user_quota(12)
        assert quota.api_calls_used_today == 0
        assert quota.has_received_quota_warning is False


class TestQuotaStatus:

    def test_regular_user(self, subscription_service):
        subscription_service.increment_usage(1, count=10)
        status = subscription_service.get_quota_status(1)

        assert status.tier_name == "Free"
        assert status.is_trusted_system_account is False
        assert status.api_calls_used_today == 10
        assert status.max_daily_api_calls == 1000
        assert status.remaining_calls == 990
        assert status.reset_time == NEXT_MIDNIGHT

    def test_trusted_user(self, subscription_service):
        status = subscription_service.get_quota_status(TRUSTED_USER)

        assert status.tier_name == "System"
        assert status.is_trusted_system_account is True
        assert status.is_exempt is True
        assert status.remaining_calls == MAX_INT
        assert status.reset_time == UNLIMITED_RESET_TIME

    def test_from_settings_uses_configured_accounts(self, db_session, test_settings, clock, tiers):
        test_settings.TRUSTED_SYSTEM_ACCOUNTS = [77]
        service = UserSubscriptionService.from_settings(db_session, test_settings, clock=clock)

        assert service.is_trusted_system_account(77) is True
        assert service.is_trusted_system_account(TRUSTED_USER) is False

    def test_rollover_is_visible_before_any_increment(self, subscription_service, clock):
        subscription_service.increment_usage(1, count=10)
        clock.advance(days=2)

        status = subscription_service.get_quota_status(1)
        assert status.api_calls_used_today == 0
        assert status.reset_time == NEXT_MIDNIGHT + timedelta(days=2)
