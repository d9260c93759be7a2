"""
TaskGuard Security Schemas
Pydantic models returned by the behavioral, threat and quota services
"""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from taskguard.core.timeutils import utc_now
from taskguard.security.models import RecommendedAction, RiskLevel, ThreatSeverity


# =============================================================================
# BEHAVIORAL ANALYTICS
# =============================================================================

class BehaviorRecordView(BaseModel):
    """Read-only view of a behavior ledger entry"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    username: str
    ip_address: str
    user_agent: str
    action_type: str
    resource_accessed: str
    timestamp: datetime
    session_duration: timedelta
    actions_per_minute: int
    data_volume_accessed: int
    country: Optional[str] = None
    city: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    operating_system: Optional[str] = None
    is_anomalous: bool
    anomaly_score: float
    risk_level: RiskLevel
    anomaly_reason: str
    is_new_location: bool
    is_new_device: bool
    is_off_hours: bool
    is_high_velocity: bool
    deviation_from_baseline: float
    is_outside_normal_pattern: bool


class AnomalyDetectionResult(BaseModel):
    """Score, reasons and recommendation for a single action"""
    is_anomalous: bool = False
    anomaly_score: float = Field(default=0.0, ge=0.0, le=1.0)
    risk_level: RiskLevel = RiskLevel.LOW
    anomaly_reasons: List[str] = Field(default_factory=list)
    recommended_action: str = "Monitor"
    analyzed_at: datetime = Field(default_factory=utc_now)


class UserBaseline(BaseModel):
    """Typical behavior of a user derived from non-anomalous history"""
    user_id: int
    username: str = "Unknown"
    typical_locations: List[str] = Field(default_factory=list)
    typical_devices: List[str] = Field(default_factory=list)
    typical_session_duration: timedelta = timedelta(0)
    typical_actions_per_minute: int = 0
    typical_action_types: List[str] = Field(default_factory=list)
    typical_active_hours: timedelta = timedelta(0)
    baseline_period_days: int = 30
    baseline_created: datetime = Field(default_factory=utc_now)
    last_updated: datetime = Field(default_factory=utc_now)


class BehaviorPattern(BaseModel):
    """Named fleet-wide pattern with its frequency-weighted risk"""
    pattern_name: str
    description: str
    frequency: int
    risk_score: float
    affected_users: List[str] = Field(default_factory=list)


class UserBehaviorSummary(BaseModel):
    user_id: int
    username: str = "Unknown"
    total_activities: int = 0
    anomalous_activities: int = 0
    anomaly_percentage: float = 0.0
    average_anomaly_score: float = 0.0
    highest_risk_level: RiskLevel = RiskLevel.LOW
    last_activity: Optional[datetime] = None
    common_anomaly_reasons: List[str] = Field(default_factory=list)


class BehavioralAnalyticsSummary(BaseModel):
    """Fleet-wide rollup of the trailing pattern window"""
    total_behavior_records: int = 0
    anomalous_activities: int = 0
    critical_anomalies: int = 0
    high_risk_activities: int = 0
    medium_risk_activities: int = 0
    low_risk_activities: int = 0
    new_location_access: int = 0
    new_device_access: int = 0
    off_hours_activities: int = 0
    high_velocity_activities: int = 0
    average_anomaly_score: float = 0.0
    top_anomalous_users: List[UserBehaviorSummary] = Field(default_factory=list)
    common_patterns: List[BehaviorPattern] = Field(default_factory=list)
    recent_anomalies: List[BehaviorRecordView] = Field(default_factory=list)
    top_anomaly_reasons: List[str] = Field(default_factory=list)
    last_analyzed: datetime = Field(default_factory=utc_now)


# =============================================================================
# THREAT INTELLIGENCE
# =============================================================================

class ThreatRecordView(BaseModel):
    """Read-only view of a threat reputation record"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    ip_address: str
    threat_type: str
    severity: ThreatSeverity
    threat_source: str
    description: str
    confidence_score: int
    first_seen: datetime
    last_seen: datetime
    report_count: int
    is_active: bool
    is_whitelisted: bool
    is_blacklisted: bool
    country: Optional[str] = None


class IPReputationCheck(BaseModel):
    """Outcome of an IP reputation lookup"""
    ip_address: str
    is_threat: bool = False
    threat_level: str = "Unknown"
    threat_types: List[str] = Field(default_factory=list)
    confidence_score: int = Field(default=0, ge=0, le=100)
    recommended_action: RecommendedAction = RecommendedAction.MONITOR
    reasons: List[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utc_now)


class ThreatIntelligenceSummary(BaseModel):
    total_threats: int = 0
    critical_threats: int = 0
    high_threats: int = 0
    medium_threats: int = 0
    low_threats: int = 0
    blacklisted_ips: int = 0
    whitelisted_ips: int = 0
    threat_types: int = 0
    threat_sources: int = 0
    recent_threats: List[ThreatRecordView] = Field(default_factory=list)
    top_threat_countries: List[str] = Field(default_factory=list)
    last_updated: datetime = Field(default_factory=utc_now)


# =============================================================================
# QUOTAS
# =============================================================================

class QuotaStatus(BaseModel):
    """Daily quota position of a user"""
    user_id: int
    tier_name: str
    is_trusted_system_account: bool = False
    is_exempt: bool = False
    api_calls_used_today: int = 0
    max_daily_api_calls: int = 0
    remaining_calls: int = 0
    reset_time: datetime
    has_received_quota_warning: bool = False
