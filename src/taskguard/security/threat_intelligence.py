"""
TaskGuard Threat Intelligence
IP reputation store with black/white listing and confidence-scored threat records.
"""

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from taskguard.core.config import Settings, settings as default_settings
from taskguard.core.logging import LoggerMixin
from taskguard.core.timeutils import Clock, utc_now
from taskguard.database.repositories import ThreatRecordRepository
from taskguard.security.alerts import THREAT_BLACKLISTED, AlertSeverity, SecurityAlertDispatcher
from taskguard.security.classifier import suspicious_ip_reasons
from taskguard.security.models import RecommendedAction, ThreatRecord, ThreatSeverity
from taskguard.security.schemas import IPReputationCheck, ThreatIntelligenceSummary, ThreatRecordView

PATTERN_MATCH_TYPE = "Pattern Match"
PATTERN_ANALYSIS_SOURCE = "Pattern Analysis"
PATTERN_MATCH_CONFIDENCE = 60
BENIGN_CONFIDENCE = 95
MANUAL_SOURCE = "Manual"
WHITELIST_TYPE = "Whitelist"
BLACKLIST_TYPE = "Blacklist"

_SEVERITY_ACTIONS = {
    ThreatSeverity.CRITICAL: RecommendedAction.BLOCK,
    ThreatSeverity.HIGH: RecommendedAction.BLOCK,
    ThreatSeverity.MEDIUM: RecommendedAction.MONITOR,
    ThreatSeverity.LOW: RecommendedAction.ALLOW,
}


def recommended_action_for_severity(severity: ThreatSeverity) -> RecommendedAction:
    return _SEVERITY_ACTIONS.get(severity, RecommendedAction.MONITOR)


class ThreatIntelligenceService(LoggerMixin):
    """
    Reputation engine for source IP addresses.

    Lookup order: an explicit whitelist entry always wins, then the stored
    active record with the highest confidence, then prefix/shape analysis of
    the address itself. Suspicious addresses found by analysis are stored, so
    repeated sightings accumulate on the same record.
    """

    def __init__(
        self,
        db: Session,
        app_settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        alerts: Optional[SecurityAlertDispatcher] = None
    ):
        self.db = db
        self.settings = app_settings or default_settings
        self.clock = clock or utc_now
        self.alerts = alerts
        self.threats = ThreatRecordRepository(db)

    # =========================================================================
    # REPUTATION
    # =========================================================================

    def check_ip_reputation(self, ip_address: str) -> IPReputationCheck:
        checked_at = self.clock()
        try:
            if self.threats.is_whitelisted(ip_address):
                return IPReputationCheck(
                    ip_address=ip_address,
                    is_threat=False,
                    threat_level=ThreatSeverity.SAFE.value,
                    confidence_score=100,
                    recommended_action=RecommendedAction.ALLOW,
                    reasons=["IP address is whitelisted"],
                    checked_at=checked_at,
                )

            stored = self.threats.get_by_ip(ip_address)
            if stored is not None:
                if stored.threat_type == PATTERN_MATCH_TYPE and stored.threat_source == PATTERN_ANALYSIS_SOURCE:
                    self.add_threat_intelligence(
                        ip_address, PATTERN_MATCH_TYPE, stored.severity, PATTERN_ANALYSIS_SOURCE,
                        stored.description, stored.confidence_score
                    )
                return IPReputationCheck(
                    ip_address=ip_address,
                    is_threat=True,
                    threat_level=stored.severity.value,
                    threat_types=[stored.threat_type],
                    confidence_score=stored.confidence_score,
                    recommended_action=recommended_action_for_severity(stored.severity),
                    reasons=[stored.description] if stored.description else [],
                    checked_at=checked_at,
                )

            reasons = suspicious_ip_reasons(ip_address)
            if reasons:
                self.add_threat_intelligence(
                    ip_address, PATTERN_MATCH_TYPE, ThreatSeverity.MEDIUM, PATTERN_ANALYSIS_SOURCE,
                    "; ".join(reasons), PATTERN_MATCH_CONFIDENCE
                )
                return IPReputationCheck(
                    ip_address=ip_address,
                    is_threat=True,
                    threat_level=ThreatSeverity.MEDIUM.value,
                    threat_types=[PATTERN_MATCH_TYPE],
                    confidence_score=PATTERN_MATCH_CONFIDENCE,
                    recommended_action=RecommendedAction.MONITOR,
                    reasons=reasons,
                    checked_at=checked_at,
                )

            return IPReputationCheck(
                ip_address=ip_address,
                is_threat=False,
                threat_level=ThreatSeverity.LOW.value,
                confidence_score=BENIGN_CONFIDENCE,
                recommended_action=RecommendedAction.ALLOW,
                checked_at=checked_at,
            )

        except Exception as e:
            self.logger.error(f"Error checking IP reputation for {ip_address}: {e}", exc_info=True)
            self._recover()
            return IPReputationCheck(
                ip_address=ip_address,
                is_threat=False,
                threat_level="Unknown",
                confidence_score=0,
                recommended_action=RecommendedAction.MONITOR,
                checked_at=checked_at,
            )

    def add_threat_intelligence(
        self,
        ip_address: str,
        threat_type: str,
        severity: "ThreatSeverity | str",
        source: str,
        description: str,
        confidence_score: int
    ) -> bool:
        """
        Record a sighting of (ip_address, threat_type).

        Repeat sightings bump report_count and last_seen, keep the higher
        confidence and reactivate the record.
        """
        try:
            now = self.clock()
            confidence_score = max(0, min(100, int(confidence_score)))
            existing = self.threats.get_by_ip_and_type(ip_address, threat_type)

            if existing is not None:
                existing.last_seen = now
                existing.report_count += 1
                existing.confidence_score = max(existing.confidence_score, confidence_score)
                existing.is_active = True
                self.threats.upsert(existing)
                self.logger.debug(
                    f"Updated threat {threat_type} for {ip_address} (reports: {existing.report_count})"
                )
            else:
                self.threats.upsert(ThreatRecord(
                    ip_address=ip_address,
                    threat_type=threat_type,
                    severity=ThreatSeverity.parse(severity),
                    threat_source=source,
                    description=description,
                    confidence_score=confidence_score,
                    first_seen=now,
                    last_seen=now,
                    report_count=1,
                    is_active=True,
                ))
                self.logger.info(f"Recorded new threat {threat_type} for {ip_address}")

            return True

        except Exception as e:
            self.logger.error(f"Error adding threat intelligence for IP {ip_address}: {e}", exc_info=True)
            self._recover()
            return False

    def whitelist_ip(self, ip_address: str, reason: str) -> bool:
        try:
            record = self._primary_or_manual(ip_address, WHITELIST_TYPE, ThreatSeverity.SAFE)
            record.is_whitelisted = True
            record.is_blacklisted = False
            record.is_active = True
            record.description = f"Whitelisted: {reason}"

            for other in self.threats.list_for_ip(ip_address):
                other.is_blacklisted = False

            self.threats.upsert(record)
            self.logger.info(f"Whitelisted IP {ip_address}: {reason}")
            return True

        except Exception as e:
            self.logger.error(f"Error whitelisting IP {ip_address}: {e}", exc_info=True)
            self._recover()
            return False

    def blacklist_ip(self, ip_address: str, reason: str) -> bool:
        try:
            record = self._primary_or_manual(ip_address, BLACKLIST_TYPE, ThreatSeverity.CRITICAL)
            record.is_blacklisted = True
            record.is_whitelisted = False
            record.is_active = True
            record.severity = ThreatSeverity.CRITICAL
            record.description = f"Blacklisted: {reason}"

            for other in self.threats.list_for_ip(ip_address):
                other.is_whitelisted = False

            self.threats.upsert(record)
            self.logger.warning(f"Blacklisted IP {ip_address}: {reason}")

            if self.alerts is not None:
                self.alerts.raise_alert(
                    THREAT_BLACKLISTED,
                    AlertSeverity.HIGH,
                    f"IP {ip_address} blacklisted",
                    reason,
                    ip_address=ip_address,
                    threat_type=record.threat_type,
                )
            return True

        except Exception as e:
            self.logger.error(f"Error blacklisting IP {ip_address}: {e}", exc_info=True)
            self._recover()
            return False

    def update_threat_status(self, threat_id: int, is_active: bool) -> bool:
        try:
            record = self.threats.get_by_id(threat_id)
            if record is None:
                return False
            record.is_active = is_active
            self.threats.upsert(record)
            return True
        except Exception as e:
            self.logger.error(f"Error updating threat status for {threat_id}: {e}", exc_info=True)
            self._recover()
            return False

    def is_ip_blacklisted(self, ip_address: str) -> bool:
        try:
            return self.threats.is_blacklisted(ip_address)
        except Exception as e:
            self.logger.error(f"Error checking if IP is blacklisted {ip_address}: {e}")
            self._recover()
            return False

    def is_ip_whitelisted(self, ip_address: str) -> bool:
        try:
            return self.threats.is_whitelisted(ip_address)
        except Exception as e:
            self.logger.error(f"Error checking if IP is whitelisted {ip_address}: {e}")
            self._recover()
            return False

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_threats_by_type(self, threat_type: str) -> List[ThreatRecordView]:
        return self._views(f"threats by type {threat_type}", lambda: self.threats.list_by_type(threat_type))

    def get_threats_by_severity(self, severity: "ThreatSeverity | str") -> List[ThreatRecordView]:
        return self._views(
            f"threats by severity {severity}",
            lambda: self.threats.list_by_severity(ThreatSeverity.parse(severity))
        )

    def get_recent_threats(self, count: int = 10) -> List[ThreatRecordView]:
        return self._views("recent threats", lambda: self.threats.list_recent(count))

    def get_active_threats(self) -> List[ThreatRecordView]:
        return self._views("active threats", self.threats.list_active)

    def get_threat_types(self) -> List[str]:
        try:
            return self.threats.distinct_types()
        except Exception as e:
            self.logger.error(f"Error getting threat types: {e}")
            self._recover()
            return []

    def get_threat_sources(self) -> List[str]:
        try:
            return self.threats.distinct_sources()
        except Exception as e:
            self.logger.error(f"Error getting threat sources: {e}")
            self._recover()
            return []

    def get_threat_intelligence_summary(self) -> ThreatIntelligenceSummary:
        now = self.clock()
        try:
            stats = self.threats.statistics()
            return ThreatIntelligenceSummary(
                total_threats=stats.get("TotalThreats", 0),
                critical_threats=stats.get("CriticalThreats", 0),
                high_threats=stats.get("HighThreats", 0),
                medium_threats=stats.get("MediumThreats", 0),
                low_threats=stats.get("LowThreats", 0),
                blacklisted_ips=stats.get("BlacklistedIPs", 0),
                whitelisted_ips=stats.get("WhitelistedIPs", 0),
                threat_types=stats.get("ThreatTypes", 0),
                threat_sources=stats.get("ThreatSources", 0),
                recent_threats=[ThreatRecordView.model_validate(t) for t in self.threats.list_recent(10)],
                top_threat_countries=self.threats.top_countries(10),
                last_updated=now,
            )
        except Exception as e:
            self.logger.error(f"Error getting threat intelligence summary: {e}", exc_info=True)
            self._recover()
            return ThreatIntelligenceSummary(last_updated=now)

    # =========================================================================
    # RETENTION
    # =========================================================================

    def cleanup_old_threats(self, days_old: Optional[int] = None) -> int:
        """Remove records not seen for days_old days; listed IPs are kept"""
        days_old = self.settings.THREAT_RETENTION_DAYS if days_old is None else days_old
        try:
            removed = self.threats.delete_older_than(self.clock() - timedelta(days=days_old))
            self.logger.info(f"Cleaned up {removed} old threat intelligence records")
            return removed
        except Exception as e:
            self.logger.error(f"Error cleaning up old threats: {e}", exc_info=True)
            self._recover()
            return 0

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _primary_or_manual(self, ip_address: str, manual_type: str, severity: ThreatSeverity) -> ThreatRecord:
        record = self.threats.get_by_ip(ip_address) or self.threats.get_by_ip_and_type(ip_address, manual_type)
        if record is not None:
            return record

        now = self.clock()
        return ThreatRecord(
            ip_address=ip_address,
            threat_type=manual_type,
            severity=severity,
            threat_source=MANUAL_SOURCE,
            description="",
            confidence_score=100,
            first_seen=now,
            last_seen=now,
            report_count=1,
            is_active=True,
        )

    def _views(self, label: str, loader) -> List[ThreatRecordView]:
        try:
            return [ThreatRecordView.model_validate(record) for record in loader()]
        except Exception as e:
            self.logger.error(f"Error getting {label}: {e}", exc_info=True)
            self._recover()
            return []

    def _recover(self) -> None:
        try:
            self.db.rollback()
        except Exception as e:
            self.logger.debug(f"Session rollback failed: {e}")
