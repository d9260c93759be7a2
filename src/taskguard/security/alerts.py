"""
Security Alerts
In-process publication of "risk elevated" facts to subscribed handlers.
Delivery channels are the subscribers' concern.
"""

import hashlib
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from taskguard.core.logging import LoggerMixin
from taskguard.core.timeutils import utc_now

BEHAVIOR_HIGH_RISK = "behavior.high_risk"
QUOTA_WARNING = "quota.warning"
THREAT_BLACKLISTED = "threat.blacklisted"


class AlertSeverity(Enum):
    """Alert severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


@dataclass
class SecurityAlert:
    """Alert instance"""
    event: str
    severity: AlertSeverity
    title: str
    message: str
    labels: Dict[str, str] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    fingerprint: str = ""

    def __post_init__(self):
        if not self.fingerprint:
            self.fingerprint = self._generate_fingerprint()

    def _generate_fingerprint(self) -> str:
        content = f"{self.event}:{self.title}:{sorted(self.labels.items())}"
        return hashlib.md5(content.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            **asdict(self),
            "severity": self.severity.value,
            "raised_at": self.raised_at.isoformat(),
        }


AlertHandler = Callable[[SecurityAlert], None]


class SecurityAlertDispatcher(LoggerMixin):
    """
    Fan-out of security alerts to plain callables.

    Handler failures are logged and never propagate to the publisher.
    """

    def __init__(self):
        self._handlers: Dict[Optional[str], List[AlertHandler]] = {}
        self._lock = threading.Lock()
        self.published_count = 0

    def subscribe(self, handler: AlertHandler, event: Optional[str] = None) -> None:
        """Register a handler for one event name, or for all events when event is None"""
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

    def unsubscribe(self, handler: AlertHandler, event: Optional[str] = None) -> bool:
        with self._lock:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)
                return True
            return False

    def publish(self, alert: SecurityAlert) -> None:
        self.log_with_context(
            logging.WARNING if alert.severity in (AlertSeverity.CRITICAL, AlertSeverity.HIGH) else logging.INFO,
            f"Security alert: {alert.title}",
            {"event": alert.event, "alert_id": alert.id, **alert.labels},
        )
        self.published_count += 1

        with self._lock:
            handlers = list(self._handlers.get(alert.event, [])) + list(self._handlers.get(None, []))

        for handler in handlers:
            try:
                handler(alert)
            except Exception as e:
                self.logger.error(f"Alert handler failed for {alert.event}: {e}", exc_info=True)

    def raise_alert(
        self,
        event: str,
        severity: AlertSeverity,
        title: str,
        message: str,
        **labels: Any
    ) -> SecurityAlert:
        alert = SecurityAlert(
            event=event,
            severity=severity,
            title=title,
            message=message,
            labels={key: str(value) for key, value in labels.items()},
        )
        self.publish(alert)
        return alert
