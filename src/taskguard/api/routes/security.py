"""
TaskGuard Security Routes
Behavior analytics, threat intelligence and quota administration
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status

from taskguard.api.dependencies import (
    get_behavior_service, get_subscription_service, get_threat_service
)
from taskguard.api.middleware import get_current_admin_user, get_current_user
from taskguard.api.models.requests import (
    AddThreatRequest, AnalyzeBehaviorRequest, IPListRequest, ThreatStatusRequest, UpdateTierRequest
)
from taskguard.api.models.responses import BaseResponse, CleanupResponse, RateLimitResponse
from taskguard.core.logging import get_logger
from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.models import ThreatSeverity
from taskguard.security.schemas import (
    AnomalyDetectionResult,
    BehavioralAnalyticsSummary,
    BehaviorPattern,
    BehaviorRecordView,
    IPReputationCheck,
    QuotaStatus,
    ThreatIntelligenceSummary,
    ThreatRecordView,
    UserBaseline,
    UserBehaviorSummary,
)
from taskguard.security.threat_intelligence import ThreatIntelligenceService
from taskguard.services.subscription_service import UserSubscriptionService

logger = get_logger(__name__)
router = APIRouter()

AdminUser = Dict[str, Any]


# =============================================================================
# BEHAVIOR ANALYTICS
# =============================================================================

@router.get("/behavior/summary", response_model=BehavioralAnalyticsSummary)
def behavior_summary(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    """Ledger-wide counts, top anomalous users and common patterns"""
    return service.get_behavioral_analytics_summary()


@router.get("/behavior/patterns", response_model=List[BehaviorPattern])
def behavior_patterns(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_common_patterns()


@router.post("/behavior/analyze", response_model=AnomalyDetectionResult)
def analyze_behavior(
    request: AnalyzeBehaviorRequest,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    """Score an action against the user's history without recording it"""
    return service.analyze_user_behavior(
        request.user_id,
        request.ip_address,
        request.user_agent,
        request.action_type,
        request.resource_accessed,
    )


@router.get("/behavior/anomalies", response_model=List[BehaviorRecordView])
def anomalous_activities(
    count: int = Query(20, ge=1, le=500, description="Number of records"),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_anomalous_activities(count)


@router.get("/behavior/high-risk", response_model=List[BehaviorRecordView])
def high_risk_activities(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_high_risk_activities()


@router.get("/behavior/off-hours", response_model=List[BehaviorRecordView])
def off_hours_activities(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_off_hours_activities()


@router.get("/behavior/new-locations", response_model=List[BehaviorRecordView])
def new_location_access(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_new_location_access()


@router.get("/behavior/new-devices", response_model=List[BehaviorRecordView])
def new_device_access(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_new_device_access()


@router.get("/behavior/high-velocity", response_model=List[BehaviorRecordView])
def high_velocity_activities(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_high_velocity_activities()


@router.get("/behavior/users/{user_id}/summary", response_model=UserBehaviorSummary)
def user_behavior_summary(
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_user_behavior_summary(user_id)


@router.get("/behavior/users/{user_id}/history", response_model=List[BehaviorRecordView])
def user_behavior_history(
    user_id: int = Path(..., gt=0),
    start: Optional[datetime] = Query(None, description="Inclusive lower bound"),
    end: Optional[datetime] = Query(None, description="Inclusive upper bound"),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_user_behavior_history(user_id, start, end)


@router.get("/behavior/users/{user_id}/baseline", response_model=UserBaseline)
def user_baseline(
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    return service.get_user_baseline(user_id)


@router.post("/behavior/users/{user_id}/baseline", response_model=BaseResponse)
def refresh_user_baseline(
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    if not service.update_user_baseline(user_id):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error updating user baseline"
        )
    return BaseResponse(success=True, message=f"Baseline updated for user {user_id}")


@router.delete("/behavior/cleanup", response_model=CleanupResponse)
def cleanup_behavior(
    days_old: Optional[int] = Query(None, ge=0, description="Retention window in days"),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: BehavioralAnalyticsService = Depends(get_behavior_service)
):
    removed = service.cleanup_old_behavior_data(days_old)
    logger.info(f"Admin {current_admin['user_id']} removed {removed} behavior records")
    return CleanupResponse(
        success=True,
        message=f"Removed {removed} behavior records",
        removed=removed,
        days_old=days_old,
    )


# =============================================================================
# THREAT INTELLIGENCE
# =============================================================================

@router.get("/threats/summary", response_model=ThreatIntelligenceSummary)
def threat_summary(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_threat_intelligence_summary()


@router.get("/threats/reputation/{ip_address}", response_model=IPReputationCheck)
def ip_reputation(
    ip_address: str = Path(..., min_length=1, max_length=64),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.check_ip_reputation(ip_address)


@router.post("/threats", response_model=BaseResponse, status_code=status.HTTP_201_CREATED)
def add_threat(
    request: AddThreatRequest,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    added = service.add_threat_intelligence(
        request.ip_address,
        request.threat_type,
        request.severity,
        request.source,
        request.description,
        request.confidence_score,
    )
    if not added:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error recording threat intelligence"
        )
    return BaseResponse(success=True, message=f"Threat recorded for {request.ip_address}")


@router.post("/threats/whitelist", response_model=BaseResponse)
def whitelist_ip(
    request: IPListRequest,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    if not service.whitelist_ip(request.ip_address, request.reason):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error whitelisting IP address"
        )
    logger.info(f"Admin {current_admin['user_id']} whitelisted {request.ip_address}")
    return BaseResponse(success=True, message=f"{request.ip_address} whitelisted")


@router.post("/threats/blacklist", response_model=BaseResponse)
def blacklist_ip(
    request: IPListRequest,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    if not service.blacklist_ip(request.ip_address, request.reason):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error blacklisting IP address"
        )
    logger.info(f"Admin {current_admin['user_id']} blacklisted {request.ip_address}")
    return BaseResponse(success=True, message=f"{request.ip_address} blacklisted")


@router.put("/threats/{threat_id}/status", response_model=BaseResponse)
def update_threat_status(
    request: ThreatStatusRequest,
    threat_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    if not service.update_threat_status(threat_id, request.is_active):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Threat {threat_id} not found"
        )
    state = "activated" if request.is_active else "deactivated"
    return BaseResponse(success=True, message=f"Threat {threat_id} {state}")


@router.get("/threats/active", response_model=List[ThreatRecordView])
def active_threats(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_active_threats()


@router.get("/threats/recent", response_model=List[ThreatRecordView])
def recent_threats(
    count: int = Query(10, ge=1, le=500),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_recent_threats(count)


@router.get("/threats/types", response_model=List[str])
def threat_types(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_threat_types()


@router.get("/threats/sources", response_model=List[str])
def threat_sources(
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_threat_sources()


@router.get("/threats/by-type/{threat_type}", response_model=List[ThreatRecordView])
def threats_by_type(
    threat_type: str,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    return service.get_threats_by_type(threat_type)


@router.get("/threats/by-severity/{severity}", response_model=List[ThreatRecordView])
def threats_by_severity(
    severity: str,
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    try:
        parsed = ThreatSeverity.parse(severity)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return service.get_threats_by_severity(parsed)


@router.delete("/threats/cleanup", response_model=CleanupResponse)
def cleanup_threats(
    days_old: Optional[int] = Query(None, ge=0, description="Retention window in days"),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: ThreatIntelligenceService = Depends(get_threat_service)
):
    removed = service.cleanup_old_threats(days_old)
    logger.info(f"Admin {current_admin['user_id']} removed {removed} threat records")
    return CleanupResponse(
        success=True,
        message=f"Removed {removed} threat records",
        removed=removed,
        days_old=days_old,
    )


# =============================================================================
# QUOTAS
# =============================================================================

@router.get("/quotas/me", response_model=QuotaStatus)
def my_quota(
    current_user: Dict[str, Any] = Depends(get_current_user),
    service: UserSubscriptionService = Depends(get_subscription_service)
):
    """Quota position of the calling user"""
    return service.get_quota_status(current_user["user_id"])


@router.get("/quotas/{user_id}", response_model=QuotaStatus)
def user_quota(
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: UserSubscriptionService = Depends(get_subscription_service)
):
    return service.get_quota_status(user_id)


@router.get("/quotas/{user_id}/rate-limit", response_model=RateLimitResponse)
def user_rate_limit(
    user_id: int = Path(..., gt=0),
    endpoint: str = Query(..., min_length=1, description="Request path to resolve"),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: UserSubscriptionService = Depends(get_subscription_service)
):
    limit, window = service.get_rate_limit(user_id, endpoint.lower())
    return RateLimitResponse(user_id=user_id, endpoint=endpoint, limit=limit, time_window_seconds=window)


@router.put("/quotas/{user_id}/tier", response_model=BaseResponse)
def update_user_tier(
    request: UpdateTierRequest,
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: UserSubscriptionService = Depends(get_subscription_service)
):
    if not service.update_user_subscription_tier(user_id, request.tier_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subscription tier {request.tier_id} not found"
        )
    return BaseResponse(success=True, message=f"User {user_id} moved to tier {request.tier_id}")


@router.post("/quotas/{user_id}/reset", response_model=BaseResponse)
def reset_user_quota(
    user_id: int = Path(..., gt=0),
    current_admin: AdminUser = Depends(get_current_admin_user),
    service: UserSubscriptionService = Depends(get_subscription_service)
):
    if not service.reset_daily_usage(user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No quota recorded for user {user_id}"
        )
    return BaseResponse(success=True, message=f"Daily usage reset for user {user_id}")
