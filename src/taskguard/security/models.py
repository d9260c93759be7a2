"""
TaskGuard Security Database Models
Behavior ledger and threat reputation records
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean, Enum as SQLEnum, Float, Index, Integer, Interval, String, Text
)
from sqlalchemy.orm import Mapped, mapped_column

from taskguard.database.models import Base, TimestampMixin, UTCDateTime, _utcnow


class RiskLevel(str, Enum):
    """Four-way bucket derived from an anomaly score"""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class ThreatSeverity(str, Enum):
    """Threat severity levels, plus Safe for whitelisted addresses"""
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"
    SAFE = "Safe"

    @classmethod
    def parse(cls, value: "str | ThreatSeverity") -> "ThreatSeverity":
        """Case-insensitive lookup by value"""
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value.lower() == str(value).strip().lower():
                return member
        raise ValueError(f"Unknown threat severity: {value}")


class RecommendedAction(str, Enum):
    """Action recommended for an IP address"""
    BLOCK = "Block"
    MONITOR = "Monitor"
    ALLOW = "Allow"


class BehaviorRecord(Base):
    """One observed user action with its computed behavioral tags"""
    __tablename__ = "behavior_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Actor
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    username: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[str] = mapped_column(String(500), nullable=False, default="")

    # Action
    action_type: Mapped[str] = mapped_column(String(100), nullable=False)
    resource_accessed: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    session_duration: Mapped[timedelta] = mapped_column(Interval, nullable=False, default=timedelta(0))
    actions_per_minute: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    data_volume_accessed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Geographic / device tags
    country: Mapped[Optional[str]] = mapped_column(String(100))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    device_type: Mapped[Optional[str]] = mapped_column(String(50))
    browser: Mapped[Optional[str]] = mapped_column(String(50))
    operating_system: Mapped[Optional[str]] = mapped_column(String(50))

    # Anomaly assessment
    is_anomalous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    anomaly_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    risk_level: Mapped[RiskLevel] = mapped_column(SQLEnum(RiskLevel), nullable=False, default=RiskLevel.LOW)
    anomaly_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Flags
    is_new_location: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_new_device: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_off_hours: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_high_velocity: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deviation_from_baseline: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    is_outside_normal_pattern: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        Index("ix_behavior_records_user_timestamp", "user_id", "timestamp"),
        Index("ix_behavior_records_timestamp", "timestamp"),
        Index("ix_behavior_records_anomalous", "is_anomalous"),
        Index("ix_behavior_records_risk_level", "risk_level"),
    )

    def __repr__(self) -> str:
        return (
            f"<BehaviorRecord(user_id={self.user_id}, action='{self.action_type}', "
            f"score={self.anomaly_score:.2f}, risk={self.risk_level})>"
        )


class ThreatRecord(Base, TimestampMixin):
    """Reputation record for an (IP address, threat type) pair"""
    __tablename__ = "threat_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    threat_type: Mapped[str] = mapped_column(String(100), nullable=False)
    severity: Mapped[ThreatSeverity] = mapped_column(SQLEnum(ThreatSeverity), nullable=False)
    threat_source: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    confidence_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    first_seen: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    last_seen: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=_utcnow)
    report_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_whitelisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_blacklisted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    country: Mapped[Optional[str]] = mapped_column(String(100))

    __table_args__ = (
        Index("ix_threat_records_ip_type", "ip_address", "threat_type", unique=True),
        Index("ix_threat_records_ip", "ip_address"),
        Index("ix_threat_records_last_seen", "last_seen"),
    )

    def __repr__(self) -> str:
        return (
            f"<ThreatRecord(ip='{self.ip_address}', type='{self.threat_type}', "
            f"severity={self.severity}, confidence={self.confidence_score})>"
        )
