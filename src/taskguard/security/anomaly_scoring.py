"""
Anomaly scoring heuristics.

Pure functions over a user's recent behavior history. The score and the
human-readable reasons are computed by two separately maintained heuristics
that can disagree (e.g. the score counts an IP as rare below 10% of history
while the reasons only flag IPs never seen before); callers may rely on
either, so they are kept apart.
"""

from collections import Counter
from datetime import datetime
from typing import Iterable, List, NamedTuple, Sequence

from taskguard.core.timeutils import ensure_utc
from taskguard.security.classifier import is_off_hours
from taskguard.security.models import RiskLevel

NEW_USER_SCORE = 0.5

UNUSUAL_HOUR_PENALTY = 0.3
RARE_ACTION_PENALTY = 0.2
RARE_IP_PENALTY = 0.3
VELOCITY_PENALTY = 0.4
RARITY_RATIO = 0.1

TYPICAL_ACTION_DEVIATION = 0.1
UNUSUAL_ACTION_DEVIATION = 0.8

REASON_NEW_USER = "New user - no historical behavior"
REASON_UNUSUAL_HOUR = "Access outside typical hours"
REASON_NEW_IP = "Access from new IP address"
REASON_UNUSUAL_ACTION = "Unusual action type"
REASON_HIGH_VELOCITY = "High velocity activity"
REASON_OFF_HOURS = "Off-hours access"

_RISK_RANKS = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}

_RECOMMENDED_ACTIONS = {
    RiskLevel.CRITICAL: "Immediate investigation required",
    RiskLevel.HIGH: "Review and monitor closely",
    RiskLevel.MEDIUM: "Monitor and log",
    RiskLevel.LOW: "Continue monitoring",
}


class AnomalyThresholds(NamedTuple):
    low: float = 0.4
    medium: float = 0.6
    high: float = 0.8


def score_activity(
    history: Sequence,
    ip_address: str,
    action_type: str,
    timestamp: datetime,
    recent_count: int,
    velocity_threshold: int = 10
) -> float:
    """
    Anomaly score in [0, 1] for one action against the user's history.

    ``history`` holds the user's records from the trailing baseline window and
    ``recent_count`` the number of records in the minute before ``timestamp``.
    An empty history scores exactly 0.5.
    """
    if not history:
        return NEW_USER_SCORE

    score = 0.0
    total = len(history)

    if ensure_utc(timestamp).hour not in {ensure_utc(b.timestamp).hour for b in history}:
        score += UNUSUAL_HOUR_PENALTY

    action_ratio = sum(1 for b in history if b.action_type == action_type) / total
    if action_ratio < RARITY_RATIO:
        score += RARE_ACTION_PENALTY

    ip_ratio = sum(1 for b in history if b.ip_address == ip_address) / total
    if ip_ratio < RARITY_RATIO:
        score += RARE_IP_PENALTY

    if recent_count > velocity_threshold:
        score += VELOCITY_PENALTY

    return min(score, 1.0)


def explain_activity(
    history: Sequence,
    ip_address: str,
    action_type: str,
    timestamp: datetime,
    recent_count: int,
    velocity_threshold: int = 10
) -> List[str]:
    """Human-readable anomaly reasons, deduplicated, in check order"""
    if not history:
        return [REASON_NEW_USER]

    reasons: List[str] = []
    timestamp = ensure_utc(timestamp)

    if timestamp.hour not in {ensure_utc(b.timestamp).hour for b in history}:
        reasons.append(REASON_UNUSUAL_HOUR)

    if ip_address not in {b.ip_address for b in history}:
        reasons.append(REASON_NEW_IP)

    action_counts = Counter(b.action_type for b in history)
    common_actions = {action for action, count in action_counts.items() if count > len(history) * RARITY_RATIO}
    if action_type not in common_actions:
        reasons.append(REASON_UNUSUAL_ACTION)

    if recent_count > velocity_threshold:
        reasons.append(REASON_HIGH_VELOCITY)

    if is_off_hours(timestamp):
        reasons.append(REASON_OFF_HOURS)

    return list(dict.fromkeys(reasons))


def risk_level_for(score: float, thresholds: AnomalyThresholds = AnomalyThresholds()) -> RiskLevel:
    if score >= thresholds.high:
        return RiskLevel.CRITICAL
    if score >= thresholds.medium:
        return RiskLevel.HIGH
    if score >= thresholds.low:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def risk_rank(level: RiskLevel) -> int:
    return _RISK_RANKS[RiskLevel(level)]


def recommended_action_for(level: RiskLevel) -> str:
    return _RECOMMENDED_ACTIONS.get(RiskLevel(level), "No action required")


def pattern_risk_score(pattern_count: int, total_count: int, base_weight: float) -> float:
    """Frequency-weighted pattern risk, capped at 1.0"""
    if total_count <= 0:
        return 0.0
    return min((pattern_count / total_count) * base_weight * 10, 1.0)


def baseline_deviation(typical_action_types: Iterable[str], action_type: str) -> float:
    """
    Deviation of an action from a user's baseline.

    Binary for now: 0.1 for one of the user's typical action types, else 0.8.
    """
    if action_type in set(typical_action_types):
        return TYPICAL_ACTION_DEVIATION
    return UNUSUAL_ACTION_DEVIATION
