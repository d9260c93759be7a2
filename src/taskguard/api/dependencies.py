"""
TaskGuard API Dependencies
Request-scoped sessions and service construction from application state
"""

from typing import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.threat_intelligence import ThreatIntelligenceService
from taskguard.services.subscription_service import UserSubscriptionService


def get_session(request: Request) -> Generator[Session, None, None]:
    """Session from the factory the application was built with"""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_behavior_service(request: Request, db: Session = Depends(get_session)) -> BehavioralAnalyticsService:
    state = request.app.state
    return BehavioralAnalyticsService(db, state.settings, clock=state.clock, alerts=state.alerts)


def get_threat_service(request: Request, db: Session = Depends(get_session)) -> ThreatIntelligenceService:
    state = request.app.state
    return ThreatIntelligenceService(db, state.settings, clock=state.clock, alerts=state.alerts)


def get_subscription_service(request: Request, db: Session = Depends(get_session)) -> UserSubscriptionService:
    state = request.app.state
    return UserSubscriptionService.from_settings(
        db,
        state.settings,
        clock=state.clock,
        tier_cache=state.tier_cache,
        rule_cache=state.rule_cache,
        alerts=state.alerts,
    )
