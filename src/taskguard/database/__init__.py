"""
TaskGuard Database Package
SQLAlchemy models, repositories and session management for the behavior
ledger, threat records and subscription quotas.
"""

from .models import Base, RateLimitRule, SubscriptionTier, UserQuota
from .connection_manager import (
    SessionLocal, check_database_health, create_db_engine, create_session_factory,
    get_db, init_database, session_scope
)
from .init_database import DEFAULT_TIERS, DatabaseInitializer, seed_default_tiers

__all__ = [
    # Models
    'Base',
    'RateLimitRule',
    'SubscriptionTier',
    'UserQuota',

    # Sessions
    'SessionLocal',
    'check_database_health',
    'create_db_engine',
    'create_session_factory',
    'get_db',
    'init_database',
    'session_scope',

    # Seeding
    'DEFAULT_TIERS',
    'DatabaseInitializer',
    'seed_default_tiers',
]
