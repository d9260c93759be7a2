"""
TaskGuard Services
Subscription tier, rate limit and daily quota resolution.
"""

from taskguard.services.subscription_service import (
    MAX_INT,
    RateLimit,
    SubscriptionConfigurationError,
    TierInfo,
    UserSubscriptionService,
)

__all__ = [
    "MAX_INT",
    "RateLimit",
    "SubscriptionConfigurationError",
    "TierInfo",
    "UserSubscriptionService",
]
