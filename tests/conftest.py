"""
PyTest configuration and shared fixtures for the TaskGuard test suite.

Every test runs against its own in-memory SQLite database with the default
subscription tiers seeded, and a frozen clock that tests advance explicitly.
"""
import os

os.environ.setdefault("LOG_TO_FILE", "false")
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from typing import Dict, Generator, List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from taskguard.core.cache import TTLCache
from taskguard.core.config import Settings
from taskguard.database.connection_manager import init_database
from taskguard.database.init_database import seed_default_tiers
from taskguard.database.models import SubscriptionTier
from taskguard.security.alerts import SecurityAlert, SecurityAlertDispatcher
from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.threat_intelligence import ThreatIntelligenceService
from taskguard.services.subscription_service import UserSubscriptionService

# Tuesday, 14:00 UTC
TUESDAY_AFTERNOON = datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock returning a fixed instant until advanced"""

    def __init__(self, now: datetime = TUESDAY_AFTERNOON):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        LOG_TO_FILE=False,
        TRUSTED_SYSTEM_ACCOUNTS=[900],
    )


@pytest.fixture
def test_db():
    """Create a test database engine."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )
    init_database(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(test_db) -> sessionmaker:
    return sessionmaker(bind=test_db, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tiers(db_session) -> Dict[str, SubscriptionTier]:
    """Free, Premium and System tiers with their default rules."""
    return seed_default_tiers(db_session)


@pytest.fixture
def alerts() -> SecurityAlertDispatcher:
    return SecurityAlertDispatcher()


@pytest.fixture
def received_alerts(alerts) -> List[SecurityAlert]:
    """Every alert published on the dispatcher during the test."""
    received: List[SecurityAlert] = []
    alerts.subscribe(received.append)
    return received


@pytest.fixture
def behavior_service(db_session, test_settings, clock, alerts) -> BehavioralAnalyticsService:
    return BehavioralAnalyticsService(db_session, test_settings, clock=clock, alerts=alerts)


@pytest.fixture
def threat_service(db_session, test_settings, clock, alerts) -> ThreatIntelligenceService:
    return ThreatIntelligenceService(db_session, test_settings, clock=clock, alerts=alerts)


@pytest.fixture
def subscription_service(db_session, test_settings, clock, alerts, tiers) -> UserSubscriptionService:
    return UserSubscriptionService.from_settings(
        db_session,
        test_settings,
        clock=clock,
        tier_cache=TTLCache(clock=clock),
        rule_cache=TTLCache(clock=clock),
        alerts=alerts,
    )
