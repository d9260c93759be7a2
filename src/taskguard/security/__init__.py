"""
TaskGuard Security
Behavioral anomaly detection, IP reputation and security alerts.
"""

from taskguard.security.alerts import AlertSeverity, SecurityAlert, SecurityAlertDispatcher
from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.models import BehaviorRecord, RecommendedAction, RiskLevel, ThreatRecord, ThreatSeverity
from taskguard.security.threat_intelligence import ThreatIntelligenceService

__all__ = [
    "AlertSeverity",
    "SecurityAlert",
    "SecurityAlertDispatcher",
    "BehavioralAnalyticsService",
    "BehaviorRecord",
    "RecommendedAction",
    "RiskLevel",
    "ThreatRecord",
    "ThreatSeverity",
    "ThreatIntelligenceService",
]
