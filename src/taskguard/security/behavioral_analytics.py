"""
TaskGuard Behavioral Analytics
Per-user anomaly scoring, the behavior ledger writer, baselines and fleet-wide patterns.

Everything here sits on the telemetry path of a request: failures are logged
and degraded to safe defaults instead of propagating.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from statistics import mean
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from taskguard.core.config import Settings, settings as default_settings
from taskguard.core.logging import LoggerMixin
from taskguard.core.timeutils import Clock, ensure_utc, utc_now
from taskguard.database.repositories import BehaviorRecordRepository
from taskguard.security.alerts import BEHAVIOR_HIGH_RISK, AlertSeverity, SecurityAlertDispatcher
from taskguard.security.anomaly_scoring import (
    AnomalyThresholds, baseline_deviation, explain_activity, pattern_risk_score,
    recommended_action_for, risk_level_for, risk_rank, score_activity
)
from taskguard.security.classifier import classify_location, is_off_hours, parse_user_agent
from taskguard.security.models import BehaviorRecord, RiskLevel
from taskguard.security.schemas import (
    AnomalyDetectionResult, BehavioralAnalyticsSummary, BehaviorPattern, BehaviorRecordView,
    UserBaseline, UserBehaviorSummary
)

VELOCITY_WINDOW = timedelta(minutes=1)
OUTSIDE_NORMAL_PATTERN_DEVIATION = 0.7
FEED_SIZE = 50

# (name, description, flag attribute, base weight)
PATTERN_DEFINITIONS: Tuple[Tuple[str, str, str, float], ...] = (
    ("Off-Hours Access", "Users accessing system outside normal business hours", "is_off_hours", 0.3),
    ("New Location Access", "Users accessing from new geographic locations", "is_new_location", 0.4),
    ("High Velocity Activity", "Users performing rapid successive actions", "is_high_velocity", 0.5),
)


class BehavioralAnalyticsService(LoggerMixin):
    """Anomaly detection over each user's own behavior history"""

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
        self.records = BehaviorRecordRepository(db)
        self.thresholds = AnomalyThresholds(
            low=self.settings.ANOMALY_LOW_THRESHOLD,
            medium=self.settings.ANOMALY_MEDIUM_THRESHOLD,
            high=self.settings.ANOMALY_HIGH_THRESHOLD,
        )

    # =========================================================================
    # SCORING
    # =========================================================================

    def calculate_anomaly_score(
        self,
        user_id: int,
        ip_address: str,
        action_type: str,
        timestamp: Optional[datetime] = None
    ) -> float:
        """
        Anomaly score in [0, 1] for an action at ``timestamp``.

        Fails open: any lookup failure is logged and scores 0.0.
        """
        timestamp = ensure_utc(timestamp or self.clock())
        try:
            history, recent_count = self._scoring_inputs(user_id, timestamp)
            return score_activity(
                history, ip_address, action_type, timestamp,
                recent_count, self.settings.VELOCITY_THRESHOLD
            )
        except Exception as e:
            self.logger.error(f"Error calculating anomaly score for user {user_id}: {e}", exc_info=True)
            self._recover()
            return 0.0

    def get_anomaly_reasons(
        self,
        user_id: int,
        ip_address: str,
        action_type: str,
        timestamp: Optional[datetime] = None
    ) -> List[str]:
        timestamp = ensure_utc(timestamp or self.clock())
        try:
            history, recent_count = self._scoring_inputs(user_id, timestamp)
            return explain_activity(
                history, ip_address, action_type, timestamp,
                recent_count, self.settings.VELOCITY_THRESHOLD
            )
        except Exception as e:
            self.logger.error(f"Error getting anomaly reasons for user {user_id}: {e}", exc_info=True)
            self._recover()
            return []

    def is_activity_anomalous(
        self,
        user_id: int,
        ip_address: str,
        action_type: str,
        timestamp: Optional[datetime] = None
    ) -> bool:
        score = self.calculate_anomaly_score(user_id, ip_address, action_type, timestamp)
        return score >= self.thresholds.low

    def analyze_user_behavior(
        self,
        user_id: int,
        ip_address: str,
        user_agent: str,
        action_type: str,
        resource_accessed: str
    ) -> AnomalyDetectionResult:
        """Score and explain an action without recording it"""
        timestamp = ensure_utc(self.clock())
        try:
            score = self.calculate_anomaly_score(user_id, ip_address, action_type, timestamp)
            reasons = self.get_anomaly_reasons(user_id, ip_address, action_type, timestamp)
            level = risk_level_for(score, self.thresholds)

            return AnomalyDetectionResult(
                is_anomalous=score >= self.thresholds.low,
                anomaly_score=score,
                risk_level=level,
                anomaly_reasons=reasons,
                recommended_action=recommended_action_for(level),
                analyzed_at=timestamp,
            )
        except Exception as e:
            self.logger.error(f"Error analyzing user behavior for user {user_id}: {e}", exc_info=True)
            return AnomalyDetectionResult(analyzed_at=timestamp)

    # =========================================================================
    # LEDGER WRITER
    # =========================================================================

    def log_user_activity(
        self,
        user_id: int,
        username: str,
        ip_address: str,
        user_agent: str,
        action_type: str,
        resource_accessed: str,
        data_volume_accessed: int = 0
    ) -> bool:
        """
        Tag, score and append one action to the behavior ledger.

        Returns False instead of raising when anything goes wrong.
        """
        try:
            timestamp = ensure_utc(self.clock())

            country, city = classify_location(ip_address)
            device = parse_user_agent(user_agent)

            session_duration = self._session_duration(user_id, timestamp)
            actions_per_minute = self._actions_per_minute(user_id, timestamp)

            score = self.calculate_anomaly_score(user_id, ip_address, action_type, timestamp)
            level = risk_level_for(score, self.thresholds)
            reasons = self.get_anomaly_reasons(user_id, ip_address, action_type, timestamp)

            is_new_location = self._is_new_location(user_id, country, city)
            is_new_device = self._is_new_device(user_id, device.device_type, device.browser)

            deviation = self.calculate_deviation_from_baseline(user_id, action_type)

            record = BehaviorRecord(
                user_id=user_id,
                username=username or "",
                ip_address=ip_address,
                user_agent=user_agent or "",
                action_type=action_type,
                resource_accessed=resource_accessed or "",
                timestamp=timestamp,
                session_duration=session_duration,
                actions_per_minute=actions_per_minute,
                data_volume_accessed=data_volume_accessed,
                country=country,
                city=city,
                device_type=device.device_type,
                browser=device.browser,
                operating_system=device.operating_system,
                is_anomalous=score >= self.thresholds.low,
                anomaly_score=score,
                risk_level=level,
                anomaly_reason=", ".join(reasons),
                is_new_location=is_new_location,
                is_new_device=is_new_device,
                is_off_hours=is_off_hours(timestamp),
                is_high_velocity=actions_per_minute > self.settings.MAX_ACTIONS_PER_MINUTE,
                deviation_from_baseline=deviation,
                is_outside_normal_pattern=deviation > OUTSIDE_NORMAL_PATTERN_DEVIATION,
                created_at=timestamp,
            )
            self.records.append(record)

            if record.is_anomalous:
                self.logger.warning(
                    f"Anomalous behavior detected for user {username} ({user_id}): "
                    f"score {score:.2f}, risk {level.value}, reasons: {record.anomaly_reason}"
                )

            if risk_rank(level) >= risk_rank(RiskLevel.HIGH):
                self._raise_high_risk_alert(record)

            return True

        except Exception as e:
            self.logger.error(f"Error logging user activity for user {user_id}: {e}", exc_info=True)
            self._recover()
            return False

    # =========================================================================
    # BASELINE
    # =========================================================================

    def get_user_baseline(self, user_id: int) -> UserBaseline:
        try:
            return self._compute_baseline(user_id)
        except Exception as e:
            self.logger.error(f"Error getting user baseline for user {user_id}: {e}", exc_info=True)
            self._recover()
            return UserBaseline(user_id=user_id, baseline_period_days=self.settings.BASELINE_DAYS)

    def update_user_baseline(self, user_id: int) -> bool:
        """Recompute the baseline; nothing is persisted"""
        try:
            baseline = self._compute_baseline(user_id)
            self.log_with_context(
                logging.INFO,
                f"Updated baseline for user {user_id}",
                {
                    "user_id": user_id,
                    "typical_action_types": baseline.typical_action_types,
                    "typical_locations": baseline.typical_locations,
                },
            )
            return True
        except Exception as e:
            self.logger.error(f"Error updating user baseline for user {user_id}: {e}", exc_info=True)
            self._recover()
            return False

    def calculate_deviation_from_baseline(self, user_id: int, action_type: str) -> float:
        """Binary deviation metric; 0.5 when the baseline cannot be read"""
        try:
            baseline = self._compute_baseline(user_id)
            return baseline_deviation(baseline.typical_action_types, action_type)
        except Exception as e:
            self.logger.error(f"Error calculating baseline deviation for user {user_id}: {e}")
            self._recover()
            return 0.5

    # =========================================================================
    # PATTERNS AND SUMMARIES
    # =========================================================================

    def get_common_patterns(self) -> List[BehaviorPattern]:
        try:
            start = self.clock() - timedelta(days=self.settings.PATTERN_WINDOW_DAYS)
            return self._patterns_for(self.records.list_since(start))
        except Exception as e:
            self.logger.error(f"Error getting common patterns: {e}", exc_info=True)
            self._recover()
            return []

    def get_behavioral_analytics_summary(self) -> BehavioralAnalyticsSummary:
        now = self.clock()
        try:
            behaviors = self.records.list_since(now - timedelta(days=self.settings.PATTERN_WINDOW_DAYS))
            anomalous = [b for b in behaviors if b.is_anomalous]

            by_user = {}
            for record in anomalous:
                by_user.setdefault((record.user_id, record.username), []).append(record)
            top_users = sorted(
                (self._summarize_user(user_id, username, records)
                 for (user_id, username), records in by_user.items()),
                key=lambda s: s.anomaly_percentage,
                reverse=True
            )[:10]

            reason_counts = Counter(b.anomaly_reason for b in anomalous if b.anomaly_reason)
            recent = sorted(anomalous, key=lambda b: b.timestamp, reverse=True)[:10]

            return BehavioralAnalyticsSummary(
                total_behavior_records=len(behaviors),
                anomalous_activities=len(anomalous),
                critical_anomalies=sum(1 for b in behaviors if b.risk_level == RiskLevel.CRITICAL),
                high_risk_activities=sum(1 for b in behaviors if b.risk_level == RiskLevel.HIGH),
                medium_risk_activities=sum(1 for b in behaviors if b.risk_level == RiskLevel.MEDIUM),
                low_risk_activities=sum(1 for b in behaviors if b.risk_level == RiskLevel.LOW),
                new_location_access=sum(1 for b in behaviors if b.is_new_location),
                new_device_access=sum(1 for b in behaviors if b.is_new_device),
                off_hours_activities=sum(1 for b in behaviors if b.is_off_hours),
                high_velocity_activities=sum(1 for b in behaviors if b.is_high_velocity),
                average_anomaly_score=mean(b.anomaly_score for b in behaviors) if behaviors else 0.0,
                top_anomalous_users=top_users,
                common_patterns=self._patterns_for(behaviors),
                recent_anomalies=[BehaviorRecordView.model_validate(b) for b in recent],
                top_anomaly_reasons=[reason for reason, _ in reason_counts.most_common(5)],
                last_analyzed=now,
            )
        except Exception as e:
            self.logger.error(f"Error getting behavioral analytics summary: {e}", exc_info=True)
            self._recover()
            return BehavioralAnalyticsSummary(last_analyzed=now)

    def get_user_behavior_summary(self, user_id: int) -> UserBehaviorSummary:
        try:
            now = self.clock()
            behaviors = self.records.history(
                user_id, start=now - timedelta(days=self.settings.BASELINE_DAYS), limit=None
            )
            if not behaviors:
                return UserBehaviorSummary(user_id=user_id)

            summary = self._summarize_user(user_id, behaviors[0].username, behaviors)
            reason_counts = Counter(b.anomaly_reason for b in behaviors if b.anomaly_reason)
            summary.common_anomaly_reasons = [reason for reason, _ in reason_counts.most_common(5)]
            return summary
        except Exception as e:
            self.logger.error(f"Error getting user behavior summary for user {user_id}: {e}", exc_info=True)
            self._recover()
            return UserBehaviorSummary(user_id=user_id)

    # =========================================================================
    # FEEDS
    # =========================================================================

    def get_user_behavior_history(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[BehaviorRecordView]:
        return self._feed(
            f"behavior history for user {user_id}",
            lambda: self.records.history(user_id, start, end, limit=100)
        )

    def get_anomalous_activities(self, count: int = 20) -> List[BehaviorRecordView]:
        return self._feed("anomalous activities", lambda: self.records.list_anomalous(count))

    def get_high_risk_activities(self) -> List[BehaviorRecordView]:
        return self._feed(
            "high risk activities",
            lambda: self.records.list_by_risk([RiskLevel.HIGH, RiskLevel.CRITICAL], FEED_SIZE)
        )

    def get_off_hours_activities(self) -> List[BehaviorRecordView]:
        return self._feed("off hours activities", lambda: self.records.list_flagged("off_hours", FEED_SIZE))

    def get_new_location_access(self) -> List[BehaviorRecordView]:
        return self._feed("new location access", lambda: self.records.list_flagged("new_location", FEED_SIZE))

    def get_new_device_access(self) -> List[BehaviorRecordView]:
        return self._feed("new device access", lambda: self.records.list_flagged("new_device", FEED_SIZE))

    def get_high_velocity_activities(self) -> List[BehaviorRecordView]:
        return self._feed("high velocity activities", lambda: self.records.list_flagged("high_velocity", FEED_SIZE))

    # =========================================================================
    # RETENTION
    # =========================================================================

    def cleanup_old_behavior_data(self, days_old: Optional[int] = None) -> int:
        days_old = self.settings.BEHAVIOR_RETENTION_DAYS if days_old is None else days_old
        try:
            deleted = self.records.delete_older_than(self.clock() - timedelta(days=days_old))
            self.logger.info(f"Cleaned up {deleted} old behavioral analytics records")
            return deleted
        except Exception as e:
            self.logger.error(f"Error cleaning up old behavior data: {e}", exc_info=True)
            self._recover()
            return 0

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _scoring_inputs(self, user_id: int, timestamp: datetime) -> Tuple[List[BehaviorRecord], int]:
        history = self.records.query_by_user(
            user_id, timestamp - timedelta(days=self.settings.BASELINE_DAYS), timestamp
        )
        recent_count = self.records.count_in_window(user_id, timestamp - VELOCITY_WINDOW, timestamp)
        return history, recent_count

    def _session_duration(self, user_id: int, timestamp: datetime) -> timedelta:
        try:
            previous = self.records.latest_before(user_id, timestamp)
            if previous is None:
                return timedelta(0)
            gap = timestamp - ensure_utc(previous.timestamp)
            if gap > timedelta(hours=self.settings.SESSION_GAP_HOURS):
                return timedelta(0)
            return gap
        except Exception as e:
            self.logger.error(f"Error calculating session duration for user {user_id}: {e}")
            self._recover()
            return timedelta(0)

    def _actions_per_minute(self, user_id: int, timestamp: datetime) -> int:
        try:
            return self.records.count_in_window(user_id, timestamp - VELOCITY_WINDOW, timestamp)
        except Exception as e:
            self.logger.error(f"Error counting recent actions for user {user_id}: {e}")
            self._recover()
            return 0

    def _is_new_location(self, user_id: int, country: str, city: str) -> bool:
        try:
            return not self.records.has_location(user_id, country, city)
        except Exception as e:
            self.logger.error(f"Error checking location history for user {user_id}: {e}")
            self._recover()
            return False

    def _is_new_device(self, user_id: int, device_type: str, browser: str) -> bool:
        try:
            return not self.records.has_device(user_id, device_type, browser)
        except Exception as e:
            self.logger.error(f"Error checking device history for user {user_id}: {e}")
            self._recover()
            return False

    def _compute_baseline(self, user_id: int) -> UserBaseline:
        now = self.clock()
        start = now - timedelta(days=self.settings.BASELINE_DAYS)
        behaviors = self.records.list_non_anomalous(user_id, start)

        if not behaviors:
            return UserBaseline(
                user_id=user_id,
                baseline_period_days=self.settings.BASELINE_DAYS,
                baseline_created=now,
                last_updated=now,
            )

        locations = Counter(f"{b.country}, {b.city}" for b in behaviors if b.country)
        devices = Counter(f"{b.device_type} - {b.browser}" for b in behaviors if b.device_type)
        actions = Counter(b.action_type for b in behaviors)
        hours = [ensure_utc(b.timestamp).hour for b in behaviors]

        return UserBaseline(
            user_id=user_id,
            username=behaviors[0].username,
            typical_locations=[key for key, _ in locations.most_common(5)],
            typical_devices=[key for key, _ in devices.most_common(3)],
            typical_session_duration=timedelta(
                minutes=mean(b.session_duration.total_seconds() / 60 for b in behaviors)
            ),
            typical_actions_per_minute=int(mean(b.actions_per_minute for b in behaviors)),
            typical_action_types=[key for key, _ in actions.most_common(5)],
            typical_active_hours=timedelta(hours=max(hours) - min(hours)),
            baseline_period_days=self.settings.BASELINE_DAYS,
            baseline_created=start,
            last_updated=now,
        )

    @staticmethod
    def _patterns_for(behaviors: List[BehaviorRecord]) -> List[BehaviorPattern]:
        total = len(behaviors)
        patterns = []

        for name, description, flag, weight in PATTERN_DEFINITIONS:
            matching = [b for b in behaviors if getattr(b, flag)]
            if not matching:
                continue
            patterns.append(BehaviorPattern(
                pattern_name=name,
                description=description,
                frequency=len(matching),
                risk_score=pattern_risk_score(len(matching), total, weight),
                affected_users=list(dict.fromkeys(b.username for b in matching))[:5],
            ))

        return sorted(patterns, key=lambda p: p.risk_score, reverse=True)

    @staticmethod
    def _summarize_user(user_id: int, username: str, records: List[BehaviorRecord]) -> UserBehaviorSummary:
        anomalous = sum(1 for b in records if b.is_anomalous)
        return UserBehaviorSummary(
            user_id=user_id,
            username=username,
            total_activities=len(records),
            anomalous_activities=anomalous,
            anomaly_percentage=anomalous / len(records) * 100,
            average_anomaly_score=mean(b.anomaly_score for b in records),
            highest_risk_level=max((b.risk_level for b in records), key=risk_rank),
            last_activity=max(b.timestamp for b in records),
            common_anomaly_reasons=list(dict.fromkeys(b.anomaly_reason for b in records if b.anomaly_reason)),
        )

    def _feed(self, label: str, loader: Callable[[], List[BehaviorRecord]]) -> List[BehaviorRecordView]:
        try:
            return [BehaviorRecordView.model_validate(record) for record in loader()]
        except Exception as e:
            self.logger.error(f"Error getting {label}: {e}", exc_info=True)
            self._recover()
            return []

    def _raise_high_risk_alert(self, record: BehaviorRecord) -> None:
        if self.alerts is None:
            return
        self.alerts.raise_alert(
            BEHAVIOR_HIGH_RISK,
            AlertSeverity.CRITICAL if record.risk_level == RiskLevel.CRITICAL else AlertSeverity.HIGH,
            f"{record.risk_level.value} risk activity by {record.username or record.user_id}",
            record.anomaly_reason,
            user_id=record.user_id,
            ip_address=record.ip_address,
            action_type=record.action_type,
            anomaly_score=f"{record.anomaly_score:.2f}",
        )

    def _recover(self) -> None:
        try:
            self.db.rollback()
        except Exception as e:
            self.logger.debug(f"Session rollback failed: {e}")
