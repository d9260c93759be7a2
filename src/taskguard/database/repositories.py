"""
TaskGuard Repositories
Session-bound data access for the behavior ledger, threat store and quota store.

Repositories log and re-raise store errors; degrading to safe defaults is the
services' job.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from taskguard.core.logging import get_logger
from taskguard.database.models import RateLimitRule, SubscriptionTier, UserQuota
from taskguard.security.models import BehaviorRecord, RiskLevel, ThreatRecord, ThreatSeverity

FLAG_COLUMNS = {
    "off_hours": BehaviorRecord.is_off_hours,
    "new_location": BehaviorRecord.is_new_location,
    "new_device": BehaviorRecord.is_new_device,
    "high_velocity": BehaviorRecord.is_high_velocity,
}


class Repository:
    """Base repository bound to a single session"""

    model_class = None

    def __init__(self, db: Session):
        self.db = db
        self.logger = get_logger(f"{__name__}.{self.__class__.__name__}")

    def _save(self, instance):
        try:
            self.db.add(instance)
            self.db.commit()
            self.db.refresh(instance)
            return instance
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to save {instance.__class__.__name__}: {e}")
            self.db.rollback()
            raise

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to commit {self.model_class.__name__} changes: {e}")
            self.db.rollback()
            raise


class BehaviorRecordRepository(Repository):
    """Append-only ledger of observed user actions"""

    model_class = BehaviorRecord

    def append(self, record: BehaviorRecord) -> BehaviorRecord:
        return self._save(record)

    def query_by_user(self, user_id: int, start: datetime, end: datetime) -> List[BehaviorRecord]:
        """Records of a user with start <= timestamp < end, oldest first"""
        return self.db.query(BehaviorRecord).filter(
            BehaviorRecord.user_id == user_id,
            BehaviorRecord.timestamp >= start,
            BehaviorRecord.timestamp < end
        ).order_by(BehaviorRecord.timestamp).all()

    def query_by_user_and_ip(
        self,
        user_id: int,
        ip_address: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[BehaviorRecord]:
        query = self.db.query(BehaviorRecord).filter(
            BehaviorRecord.user_id == user_id,
            BehaviorRecord.ip_address == ip_address
        )
        if start is not None:
            query = query.filter(BehaviorRecord.timestamp >= start)
        if end is not None:
            query = query.filter(BehaviorRecord.timestamp < end)
        return query.order_by(BehaviorRecord.timestamp).all()

    def count_in_window(self, user_id: int, start: datetime, end: datetime) -> int:
        return self.db.query(func.count(BehaviorRecord.id)).filter(
            BehaviorRecord.user_id == user_id,
            BehaviorRecord.timestamp >= start,
            BehaviorRecord.timestamp < end
        ).scalar() or 0

    def latest_before(self, user_id: int, before: datetime) -> Optional[BehaviorRecord]:
        return self.db.query(BehaviorRecord).filter(
            BehaviorRecord.user_id == user_id,
            BehaviorRecord.timestamp < before
        ).order_by(BehaviorRecord.timestamp.desc(), BehaviorRecord.id.desc()).first()

    def has_location(self, user_id: int, country: Optional[str], city: Optional[str]) -> bool:
        return self.db.query(
            self.db.query(BehaviorRecord).filter(
                BehaviorRecord.user_id == user_id,
                BehaviorRecord.country == country,
                BehaviorRecord.city == city
            ).exists()
        ).scalar()

    def has_device(self, user_id: int, device_type: Optional[str], browser: Optional[str]) -> bool:
        return self.db.query(
            self.db.query(BehaviorRecord).filter(
                BehaviorRecord.user_id == user_id,
                BehaviorRecord.device_type == device_type,
                BehaviorRecord.browser == browser
            ).exists()
        ).scalar()

    def list_since(self, start: datetime, end: Optional[datetime] = None) -> List[BehaviorRecord]:
        """Fleet-wide records from start onwards"""
        query = self.db.query(BehaviorRecord).filter(BehaviorRecord.timestamp >= start)
        if end is not None:
            query = query.filter(BehaviorRecord.timestamp < end)
        return query.order_by(BehaviorRecord.timestamp).all()

    def list_non_anomalous(
        self,
        user_id: int,
        start: datetime,
        end: Optional[datetime] = None
    ) -> List[BehaviorRecord]:
        query = self.db.query(BehaviorRecord).filter(
            BehaviorRecord.user_id == user_id,
            BehaviorRecord.timestamp >= start,
            BehaviorRecord.is_anomalous.is_(False)
        )
        if end is not None:
            query = query.filter(BehaviorRecord.timestamp < end)
        return query.order_by(BehaviorRecord.timestamp).all()

    def history(
        self,
        user_id: int,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = 100
    ) -> List[BehaviorRecord]:
        """Newest-first history of a user; limit=None returns every match"""
        query = self.db.query(BehaviorRecord).filter(BehaviorRecord.user_id == user_id)
        if start is not None:
            query = query.filter(BehaviorRecord.timestamp >= start)
        if end is not None:
            query = query.filter(BehaviorRecord.timestamp <= end)
        return query.order_by(BehaviorRecord.timestamp.desc()).limit(limit).all()

    def list_anomalous(self, limit: int = 20) -> List[BehaviorRecord]:
        return self.db.query(BehaviorRecord).filter(
            BehaviorRecord.is_anomalous.is_(True)
        ).order_by(BehaviorRecord.timestamp.desc()).limit(limit).all()

    def list_by_risk(self, levels: Sequence[RiskLevel], limit: int = 50) -> List[BehaviorRecord]:
        return self.db.query(BehaviorRecord).filter(
            BehaviorRecord.risk_level.in_(list(levels))
        ).order_by(BehaviorRecord.timestamp.desc()).limit(limit).all()

    def list_flagged(self, flag: str, limit: int = 50) -> List[BehaviorRecord]:
        """Newest records with one of the boolean behavior flags set"""
        column = FLAG_COLUMNS.get(flag)
        if column is None:
            raise ValueError(f"Unknown behavior flag: {flag}")
        return self.db.query(BehaviorRecord).filter(
            column.is_(True)
        ).order_by(BehaviorRecord.timestamp.desc()).limit(limit).all()

    def delete_older_than(self, cutoff: datetime) -> int:
        try:
            deleted = self.db.query(BehaviorRecord).filter(
                BehaviorRecord.timestamp < cutoff
            ).delete(synchronize_session=False)
            self.db.commit()
            return deleted
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to delete behavior records older than {cutoff}: {e}")
            self.db.rollback()
            raise


class ThreatRecordRepository(Repository):
    """IP reputation records keyed by (ip_address, threat_type)"""

    model_class = ThreatRecord

    def get_by_id(self, threat_id: int) -> Optional[ThreatRecord]:
        return self.db.get(ThreatRecord, threat_id)

    def get_by_ip(self, ip_address: str) -> Optional[ThreatRecord]:
        """Primary record of an IP: an active blacklisted one, else the highest confidence"""
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.ip_address == ip_address,
            ThreatRecord.is_active.is_(True)
        ).order_by(
            ThreatRecord.is_blacklisted.desc(), ThreatRecord.confidence_score.desc(), ThreatRecord.id
        ).first()

    def get_by_ip_and_type(self, ip_address: str, threat_type: str) -> Optional[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.ip_address == ip_address,
            ThreatRecord.threat_type == threat_type
        ).first()

    def list_for_ip(self, ip_address: str) -> List[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(ThreatRecord.ip_address == ip_address).all()

    def upsert(self, record: ThreatRecord) -> ThreatRecord:
        return self._save(record)

    def list_active(self) -> List[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.is_active.is_(True)
        ).order_by(ThreatRecord.last_seen.desc()).all()

    def list_by_type(self, threat_type: str) -> List[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.threat_type == threat_type,
            ThreatRecord.is_active.is_(True)
        ).order_by(ThreatRecord.last_seen.desc()).all()

    def list_by_severity(self, severity: ThreatSeverity) -> List[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.severity == severity,
            ThreatRecord.is_active.is_(True)
        ).order_by(ThreatRecord.confidence_score.desc()).all()

    def list_recent(self, count: int = 10) -> List[ThreatRecord]:
        return self.db.query(ThreatRecord).filter(
            ThreatRecord.is_active.is_(True)
        ).order_by(ThreatRecord.last_seen.desc()).limit(count).all()

    def is_blacklisted(self, ip_address: str) -> bool:
        return self.db.query(
            self.db.query(ThreatRecord).filter(
                ThreatRecord.ip_address == ip_address,
                ThreatRecord.is_blacklisted.is_(True),
                ThreatRecord.is_active.is_(True)
            ).exists()
        ).scalar()

    def is_whitelisted(self, ip_address: str) -> bool:
        return self.db.query(
            self.db.query(ThreatRecord).filter(
                ThreatRecord.ip_address == ip_address,
                ThreatRecord.is_whitelisted.is_(True),
                ThreatRecord.is_active.is_(True)
            ).exists()
        ).scalar()

    def distinct_types(self) -> List[str]:
        rows = self.db.query(ThreatRecord.threat_type).filter(
            ThreatRecord.is_active.is_(True)
        ).distinct().order_by(ThreatRecord.threat_type).all()
        return [row[0] for row in rows]

    def distinct_sources(self) -> List[str]:
        rows = self.db.query(ThreatRecord.threat_source).filter(
            ThreatRecord.is_active.is_(True)
        ).distinct().order_by(ThreatRecord.threat_source).all()
        return [row[0] for row in rows]

    def statistics(self) -> Dict[str, int]:
        active = self.list_active()
        return {
            "TotalThreats": len(active),
            "CriticalThreats": sum(1 for t in active if t.severity == ThreatSeverity.CRITICAL),
            "HighThreats": sum(1 for t in active if t.severity == ThreatSeverity.HIGH),
            "MediumThreats": sum(1 for t in active if t.severity == ThreatSeverity.MEDIUM),
            "LowThreats": sum(1 for t in active if t.severity == ThreatSeverity.LOW),
            "BlacklistedIPs": sum(1 for t in active if t.is_blacklisted),
            "WhitelistedIPs": sum(1 for t in active if t.is_whitelisted),
            "ThreatTypes": len({t.threat_type for t in active}),
            "ThreatSources": len({t.threat_source for t in active}),
        }

    def top_countries(self, count: int = 10) -> List[str]:
        rows = self.db.query(ThreatRecord.country, func.count(ThreatRecord.id).label("hits")).filter(
            ThreatRecord.is_active.is_(True),
            ThreatRecord.country.isnot(None),
            ThreatRecord.country != ""
        ).group_by(ThreatRecord.country).order_by(func.count(ThreatRecord.id).desc()).limit(count).all()
        return [row[0] for row in rows]

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete records last seen before cutoff that are neither black- nor whitelisted"""
        try:
            deleted = self.db.query(ThreatRecord).filter(
                ThreatRecord.last_seen < cutoff,
                ThreatRecord.is_blacklisted.is_(False),
                ThreatRecord.is_whitelisted.is_(False)
            ).delete(synchronize_session=False)
            self.db.commit()
            return deleted
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to delete threat records older than {cutoff}: {e}")
            self.db.rollback()
            raise


class SubscriptionRepository(Repository):
    """Tier, rule and daily quota access"""

    model_class = UserQuota

    def get_tier_by_id(self, tier_id: int) -> Optional[SubscriptionTier]:
        return self.db.get(SubscriptionTier, tier_id)

    def get_tier_by_name(self, name: str, is_system_tier: bool = False) -> Optional[SubscriptionTier]:
        return self.db.query(SubscriptionTier).filter(
            SubscriptionTier.name == name,
            SubscriptionTier.is_system_tier.is_(is_system_tier)
        ).first()

    def list_rate_limit_rules(self, tier_id: int) -> List[RateLimitRule]:
        """Rules of a tier, highest match priority first"""
        return self.db.query(RateLimitRule).filter(
            RateLimitRule.subscription_tier_id == tier_id
        ).order_by(RateLimitRule.match_priority.desc(), RateLimitRule.id).all()

    def get_user_quota(self, user_id: int) -> Optional[UserQuota]:
        return self.db.query(UserQuota).filter(UserQuota.user_id == user_id).first()

    def upsert_user_quota(self, quota: UserQuota) -> UserQuota:
        return self._save(quota)

    def add_usage(self, user_id: int, count: int, now: datetime) -> None:
        """Atomic counter = counter + count for a same-day increment"""
        try:
            self.db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == user_id)
                .values(
                    api_calls_used_today=UserQuota.api_calls_used_today + count,
                    last_updated_time=now
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to increment usage for user {user_id}: {e}")
            self.db.rollback()
            raise

    def mark_quota_warning(self, user_id: int) -> bool:
        """Set the warning flag unless already set; True only for the caller that flipped it"""
        try:
            result = self.db.execute(
                update(UserQuota)
                .where(UserQuota.user_id == user_id, UserQuota.has_received_quota_warning.is_(False))
                .values(has_received_quota_warning=True)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            return result.rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error(f"Failed to flag quota warning for user {user_id}: {e}")
            self.db.rollback()
            raise

    def refresh(self, quota: UserQuota) -> UserQuota:
        self.db.refresh(quota)
        return quota

