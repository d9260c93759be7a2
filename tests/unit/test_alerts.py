"""
Unit tests for security alert publication and the JSON log formatter.
"""
import json
import logging

from taskguard.core.logging import JSONFormatter
from taskguard.security.alerts import (
    BEHAVIOR_HIGH_RISK,
    QUOTA_WARNING,
    AlertSeverity,
    SecurityAlert,
    SecurityAlertDispatcher,
)


class TestSecurityAlert:

    def test_fingerprint_ignores_message(self):
        first = SecurityAlert(QUOTA_WARNING, AlertSeverity.MEDIUM, "Quota", "80%", labels={"user_id": "1"})
        second = SecurityAlert(QUOTA_WARNING, AlertSeverity.MEDIUM, "Quota", "85%", labels={"user_id": "1"})
        other = SecurityAlert(QUOTA_WARNING, AlertSeverity.MEDIUM, "Quota", "80%", labels={"user_id": "2"})

        assert first.fingerprint == second.fingerprint
        assert first.fingerprint != other.fingerprint
        assert first.id != second.id

    def test_to_dict(self):
        alert = SecurityAlert(BEHAVIOR_HIGH_RISK, AlertSeverity.CRITICAL, "Risk", "details")
        data = alert.to_dict()

        assert data["severity"] == "critical"
        assert data["event"] == BEHAVIOR_HIGH_RISK
        assert isinstance(data["raised_at"], str)


class TestSecurityAlertDispatcher:

    def test_event_and_wildcard_subscribers(self):
        dispatcher = SecurityAlertDispatcher()
        quota_alerts, all_alerts = [], []
        dispatcher.subscribe(quota_alerts.append, QUOTA_WARNING)
        dispatcher.subscribe(all_alerts.append)

        dispatcher.raise_alert(QUOTA_WARNING, AlertSeverity.MEDIUM, "Quota", "80%", user_id=1)
        dispatcher.raise_alert(BEHAVIOR_HIGH_RISK, AlertSeverity.HIGH, "Risk", "0.8")

        assert [a.event for a in quota_alerts] == [QUOTA_WARNING]
        assert [a.event for a in all_alerts] == [QUOTA_WARNING, BEHAVIOR_HIGH_RISK]
        assert quota_alerts[0].labels == {"user_id": "1"}
        assert dispatcher.published_count == 2

    def test_failing_handler_does_not_stop_delivery(self):
        dispatcher = SecurityAlertDispatcher()
        received = []

        def broken(alert):
            raise RuntimeError("webhook down")

        dispatcher.subscribe(broken)
        dispatcher.subscribe(received.append)

        alert = dispatcher.raise_alert(QUOTA_WARNING, AlertSeverity.LOW, "Quota", "msg")

        assert received == [alert]

    def test_unsubscribe(self):
        dispatcher = SecurityAlertDispatcher()
        received = []
        dispatcher.subscribe(received.append, QUOTA_WARNING)

        assert dispatcher.unsubscribe(received.append, QUOTA_WARNING) is True
        assert dispatcher.unsubscribe(received.append, QUOTA_WARNING) is False

        dispatcher.raise_alert(QUOTA_WARNING, AlertSeverity.LOW, "Quota", "msg")
        assert received == []


class TestJSONFormatter:

    def test_extra_data_is_embedded(self):
        record = logging.LogRecord("taskguard.test", logging.WARNING, __file__, 10, "blocked %s", ("1.2.3.4",), None)
        record.extra_data = {"event": "threat.blacklisted"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["message"] == "blocked 1.2.3.4"
        assert entry["extra"] == {"event": "threat.blacklisted"}
