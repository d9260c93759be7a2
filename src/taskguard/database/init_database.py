"""
TaskGuard Database Initialization
Creates the schema and seeds the subscription tiers the quota resolver requires.

Usage:
    taskguard init-db
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from taskguard.core.logging import get_logger
from taskguard.database.connection_manager import create_session_factory, engine as default_engine, init_database
from taskguard.database.models import RateLimitRule, SubscriptionTier

logger = get_logger(__name__)

MAX_INT = 2147483647


@dataclass(frozen=True)
class TierSeed:
    """Default tier definition with its endpoint rules (pattern, limit, window, priority)"""
    name: str
    description: str
    daily_api_quota: int
    default_rate_limit: int
    default_time_window_seconds: int
    is_system_tier: bool = False
    bypass_standard_rate_limits: bool = False
    rules: Tuple[Tuple[str, int, int, int], ...] = field(default_factory=tuple)


DEFAULT_TIERS: List[TierSeed] = [
    TierSeed(
        name="Free",
        description="Default tier for new accounts",
        daily_api_quota=1000,
        default_rate_limit=60,
        default_time_window_seconds=60,
        rules=(
            ("/api/*/auth/*", 5, 60, 100),
            ("/api/*/tasks*", 20, 30, 50),
            ("/api/*", 60, 60, 1),
        ),
    ),
    TierSeed(
        name="Premium",
        description="Paid tier with raised quotas",
        daily_api_quota=10000,
        default_rate_limit=300,
        default_time_window_seconds=60,
        rules=(
            ("/api/*/auth/*", 10, 60, 100),
            ("/api/*/tasks*", 120, 30, 50),
            ("/api/*", 300, 60, 1),
        ),
    ),
    TierSeed(
        name="System",
        description="Internal service accounts",
        daily_api_quota=MAX_INT,
        default_rate_limit=MAX_INT,
        default_time_window_seconds=60,
        is_system_tier=True,
        bypass_standard_rate_limits=True,
    ),
]


def seed_default_tiers(session: Session, tiers: Optional[List[TierSeed]] = None) -> Dict[str, SubscriptionTier]:
    """
    Create the default tiers and their rules if they do not exist yet.

    Existing tiers (matched by name and system flag) are left untouched.
    """
    seeded: Dict[str, SubscriptionTier] = {}

    for seed in tiers or DEFAULT_TIERS:
        tier = session.query(SubscriptionTier).filter(
            SubscriptionTier.name == seed.name,
            SubscriptionTier.is_system_tier == seed.is_system_tier
        ).first()

        if tier is None:
            tier = SubscriptionTier(
                name=seed.name,
                description=seed.description,
                is_system_tier=seed.is_system_tier,
                bypass_standard_rate_limits=seed.bypass_standard_rate_limits,
                daily_api_quota=seed.daily_api_quota,
                default_rate_limit=seed.default_rate_limit,
                default_time_window_seconds=seed.default_time_window_seconds,
            )
            for pattern, limit, window, priority in seed.rules:
                tier.rate_limit_rules.append(RateLimitRule(
                    endpoint_pattern=pattern,
                    rate_limit=limit,
                    time_window_seconds=window,
                    match_priority=priority,
                ))
            session.add(tier)
            logger.info(f"Seeded subscription tier '{seed.name}' with {len(seed.rules)} rules")

        seeded[seed.name] = tier

    session.commit()
    return seeded


class DatabaseInitializer:
    """Schema creation plus reference data seeding"""

    def __init__(self, bind: Optional[Engine] = None):
        self.engine = bind or default_engine
        self.session_factory: sessionmaker = create_session_factory(self.engine)

    def initialize(self, force_recreate: bool = False) -> bool:
        logger.info("🚀 Starting TaskGuard database initialization...")

        try:
            init_database(self.engine, drop_existing=force_recreate)

            with self.session_factory() as session:
                tiers = seed_default_tiers(session)

            logger.info(f"✅ Database initialization completed ({len(tiers)} tiers available)")
            return True

        except Exception as e:
            logger.error(f"❌ Database initialization failed: {e}", exc_info=True)
            return False
