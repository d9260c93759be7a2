"""
TaskGuard Database Models
SQLAlchemy 2.0 base classes and the subscription / quota reference data
"""

from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import (
    Boolean, DateTime, ForeignKey, Index, Integer, String, TypeDecorator, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    Values are normalised to UTC on the way in and returned as aware UTC
    datetimes on the way out, including on backends (SQLite) that drop tzinfo.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False
    )


class SubscriptionTier(Base, TimestampMixin):
    """Named subscription class governing daily quota and default rate limits"""
    __tablename__ = "subscription_tiers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))
    is_system_tier: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    bypass_standard_rate_limits: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    daily_api_quota: Mapped[int] = mapped_column(Integer, default=1000, nullable=False)
    default_rate_limit: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    default_time_window_seconds: Mapped[int] = mapped_column(Integer, default=60, nullable=False)

    # Relationships
    rate_limit_rules: Mapped[List["RateLimitRule"]] = relationship(
        "RateLimitRule",
        back_populates="subscription_tier",
        cascade="all, delete-orphan"
    )
    user_quotas: Mapped[List["UserQuota"]] = relationship("UserQuota", back_populates="subscription_tier")

    __table_args__ = (
        UniqueConstraint("name", "is_system_tier", name="uq_subscription_tier_name"),
    )


class RateLimitRule(Base, TimestampMixin):
    """Per-tier rate limit for endpoints matching a wildcard pattern"""
    __tablename__ = "rate_limit_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subscription_tier_id: Mapped[int] = mapped_column(ForeignKey("subscription_tiers.id"), nullable=False)
    endpoint_pattern: Mapped[str] = mapped_column(String(255), nullable=False)
    rate_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    time_window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    match_priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    subscription_tier: Mapped["SubscriptionTier"] = relationship("SubscriptionTier", back_populates="rate_limit_rules")

    __table_args__ = (
        Index("ix_rate_limit_rules_tier_priority", "subscription_tier_id", "match_priority"),
        UniqueConstraint("subscription_tier_id", "endpoint_pattern", name="uq_rate_limit_rule_pattern"),
    )


class UserQuota(Base):
    """Daily API call counter for a single user"""
    __tablename__ = "user_quotas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    subscription_tier_id: Mapped[int] = mapped_column(ForeignKey("subscription_tiers.id"), nullable=False)
    api_calls_used_today: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_daily_api_calls: Mapped[int] = mapped_column(Integer, nullable=False)
    last_reset_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_updated_time: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    is_exempt_from_quota: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    has_received_quota_warning: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quota_warning_threshold_percent: Mapped[int] = mapped_column(Integer, default=80, nullable=False)

    subscription_tier: Mapped["SubscriptionTier"] = relationship("SubscriptionTier", back_populates="user_quotas")

    __table_args__ = (
        Index("ix_user_quotas_user_id", "user_id"),
    )

    def needs_reset(self, now: datetime) -> bool:
        """True when the counter belongs to an earlier UTC day"""
        return self.last_reset_time.date() < now.astimezone(timezone.utc).date()
