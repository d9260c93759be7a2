"""
Unit tests for the anomaly scoring heuristics.
"""
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from taskguard.security.anomaly_scoring import (
    REASON_HIGH_VELOCITY,
    REASON_NEW_IP,
    REASON_NEW_USER,
    REASON_OFF_HOURS,
    REASON_UNUSUAL_ACTION,
    REASON_UNUSUAL_HOUR,
    AnomalyThresholds,
    baseline_deviation,
    explain_activity,
    pattern_risk_score,
    recommended_action_for,
    risk_level_for,
    risk_rank,
    score_activity,
)
from taskguard.security.models import RiskLevel

NOW = datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)


def make_history(count=20, hour=14, action="GET", ip="203.0.113.5", **overrides):
    base = NOW.replace(hour=hour) - timedelta(days=1)
    return [
        SimpleNamespace(
            timestamp=base - timedelta(days=i % 7),
            action_type=overrides.get("actions", {}).get(i, action),
            ip_address=overrides.get("ips", {}).get(i, ip),
        )
        for i in range(count)
    ]


class TestScoreActivity:

    def test_empty_history_scores_exactly_half(self):
        assert score_activity([], "203.0.113.5", "login", NOW, 0) == 0.5

    def test_familiar_activity_scores_zero(self):
        assert score_activity(make_history(), "203.0.113.5", "GET", NOW, 0) == 0.0

    def test_unusual_hour_penalty(self):
        assert score_activity(make_history(hour=9), "203.0.113.5", "GET", NOW, 0) == pytest.approx(0.3)

    def test_rare_action_penalty(self):
        assert score_activity(make_history(), "203.0.113.5", "DELETE", NOW, 0) == pytest.approx(0.2)

    def test_rare_ip_penalty(self):
        assert score_activity(make_history(), "198.51.100.1", "GET", NOW, 0) == pytest.approx(0.3)

    def test_velocity_penalty_is_strictly_above_threshold(self):
        history = make_history()
        assert score_activity(history, "203.0.113.5", "GET", NOW, 10) == 0.0
        assert score_activity(history, "203.0.113.5", "GET", NOW, 11) == pytest.approx(0.4)

    def test_custom_velocity_threshold(self):
        assert score_activity(make_history(), "203.0.113.5", "GET", NOW, 4, velocity_threshold=3) == pytest.approx(0.4)

    def test_stacked_penalties_are_capped_at_one(self):
        score = score_activity(make_history(hour=3), "198.51.100.1", "DELETE", NOW, 50)
        assert score == 1.0

    def test_action_at_exactly_ten_percent_is_not_rare(self):
        history = make_history(actions={0: "POST", 1: "POST"})
        assert score_activity(history, "203.0.113.5", "POST", NOW, 0) == 0.0

    @pytest.mark.parametrize("count", [1, 2, 5, 30])
    def test_score_always_within_unit_interval(self, count):
        for ip in ("203.0.113.5", "198.51.100.1"):
            for action in ("GET", "DELETE"):
                for recent in (0, 100):
                    score = score_activity(make_history(count=count, hour=3), ip, action, NOW, recent)
                    assert 0.0 <= score <= 1.0


class TestExplainActivity:

    def test_new_user_gets_single_reason(self):
        assert explain_activity([], "203.0.113.5", "login", NOW, 0) == [REASON_NEW_USER]

    def test_familiar_activity_has_no_reasons(self):
        assert explain_activity(make_history(), "203.0.113.5", "GET", NOW, 0) == []

    def test_all_reasons_in_check_order(self):
        saturday_night = datetime(2024, 3, 16, 23, 0, tzinfo=timezone.utc)
        reasons = explain_activity(make_history(), "198.51.100.1", "DELETE", saturday_night, 20)
        assert reasons == [
            REASON_UNUSUAL_HOUR,
            REASON_NEW_IP,
            REASON_UNUSUAL_ACTION,
            REASON_HIGH_VELOCITY,
            REASON_OFF_HOURS,
        ]

    def test_rarely_seen_ip_scores_but_is_not_explained(self):
        history = make_history(ips={0: "198.51.100.1"})
        assert score_activity(history, "198.51.100.1", "GET", NOW, 0) == pytest.approx(0.3)
        assert REASON_NEW_IP not in explain_activity(history, "198.51.100.1", "GET", NOW, 0)

    def test_action_at_exactly_ten_percent_is_explained_but_not_scored(self):
        history = make_history(actions={0: "POST", 1: "POST"})
        assert score_activity(history, "203.0.113.5", "POST", NOW, 0) == 0.0
        assert explain_activity(history, "203.0.113.5", "POST", NOW, 0) == [REASON_UNUSUAL_ACTION]


class TestRiskLevels:

    @pytest.mark.parametrize("score,level", [
        (0.0, RiskLevel.LOW),
        (0.39, RiskLevel.LOW),
        (0.4, RiskLevel.MEDIUM),
        (0.5, RiskLevel.MEDIUM),
        (0.6, RiskLevel.HIGH),
        (0.79, RiskLevel.HIGH),
        (0.8, RiskLevel.CRITICAL),
        (1.0, RiskLevel.CRITICAL),
    ])
    def test_step_function(self, score, level):
        assert risk_level_for(score) == level

    def test_monotonic(self):
        scores = [i / 100 for i in range(101)]
        ranks = [risk_rank(risk_level_for(score)) for score in scores]
        assert ranks == sorted(ranks)

    def test_custom_thresholds(self):
        thresholds = AnomalyThresholds(low=0.2, medium=0.3, high=0.9)
        assert risk_level_for(0.25, thresholds) == RiskLevel.MEDIUM
        assert risk_level_for(0.85, thresholds) == RiskLevel.HIGH

    def test_rank_accepts_plain_values(self):
        assert risk_rank("Critical") == 3

    def test_recommended_actions(self):
        assert recommended_action_for(RiskLevel.CRITICAL) == "Immediate investigation required"
        assert recommended_action_for(RiskLevel.LOW) == "Continue monitoring"


class TestPatternAndBaselineMath:

    def test_pattern_risk_score(self):
        assert pattern_risk_score(3, 100, 0.3) == pytest.approx(0.09)
        assert pattern_risk_score(5, 10, 0.5) == 1.0

    def test_pattern_risk_score_without_records(self):
        assert pattern_risk_score(0, 0, 0.5) == 0.0

    def test_baseline_deviation_is_binary(self):
        assert baseline_deviation(["GET", "POST"], "GET") == 0.1
        assert baseline_deviation(["GET", "POST"], "DELETE") == 0.8
        assert baseline_deviation([], "GET") == 0.8
