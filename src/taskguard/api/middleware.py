"""
TaskGuard API Middleware
Adaptive rate limiting, daily quota enforcement and security monitoring
"""

import math
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, Hashable, List, NamedTuple, Optional, Tuple

import psutil
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from taskguard.core.cache import TTLCache
from taskguard.core.config import Settings, settings as default_settings
from taskguard.core.logging import LoggerMixin, get_logger
from taskguard.core.timeutils import Clock, utc_now
from taskguard.security.alerts import SecurityAlertDispatcher
from taskguard.security.behavioral_analytics import BehavioralAnalyticsService
from taskguard.security.models import RecommendedAction
from taskguard.security.threat_intelligence import ThreatIntelligenceService
from taskguard.services.subscription_service import (
    RateLimit, SubscriptionConfigurationError, UserSubscriptionService
)

logger = get_logger(__name__)

DEFAULT_EXCLUDED_PATHS = ["/health", "/docs", "/redoc", "/openapi.json"]
MIN_REDUCED_LIMIT = 5


# =============================================================================
# RATE LIMIT PRIMITIVES
# =============================================================================

class RateLimitLease(NamedTuple):
    acquired: bool
    remaining: int
    reset_at: float


class FixedWindowRateLimiter:
    """
    In-process fixed-window counters keyed by caller and endpoint.

    A window starts with the first request for a key and admits ``limit``
    requests until ``window_seconds`` have elapsed. Requests are never queued.
    """

    def __init__(self, timer: Callable[[], float] = time.time, max_tracked_keys: int = 10000):
        self._timer = timer
        self._windows: Dict[Hashable, List[float]] = {}
        self._lock = threading.Lock()
        self.max_tracked_keys = max_tracked_keys

    def acquire(self, key: Hashable, limit: int, window_seconds: int) -> RateLimitLease:
        now = self._timer()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window[0] + window[2]:
                self._windows.pop(key, None)
                if len(self._windows) >= self.max_tracked_keys:
                    self._purge(now)
                window = [now, 0, window_seconds]
                self._windows[key] = window

            reset_at = window[0] + window[2]
            if window[1] >= limit:
                return RateLimitLease(False, 0, reset_at)

            window[1] += 1
            return RateLimitLease(True, max(0, limit - int(window[1])), reset_at)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def _purge(self, now: float) -> None:
        """Drop expired windows, then the oldest live ones while still at capacity"""
        expired = [key for key, (started, _, length) in self._windows.items() if now >= started + length]
        for key in expired:
            del self._windows[key]

        overflow = len(self._windows) - self.max_tracked_keys + 1
        if overflow > 0:
            oldest = sorted(self._windows, key=lambda k: self._windows[k][0])[:overflow]
            for key in oldest:
                del self._windows[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


def _psutil_sample() -> Tuple[float, float]:
    return psutil.cpu_percent(interval=None), psutil.virtual_memory().percent


class SystemLoadMonitor(LoggerMixin):
    """Periodic CPU and memory sampling that flags sustained high load"""

    def __init__(
        self,
        threshold_percent: int = 80,
        interval_seconds: int = 30,
        sampler: Callable[[], Tuple[float, float]] = _psutil_sample,
        timer: Callable[[], float] = time.monotonic
    ):
        self.threshold_percent = threshold_percent
        self.interval_seconds = interval_seconds
        self._sampler = sampler
        self._timer = timer
        self._last_check: Optional[float] = None
        self.cpu_percent = 0.0
        self.memory_percent = 0.0
        self.is_high_load = False

    def check(self) -> bool:
        """Refresh the high-load flag at most once per interval"""
        now = self._timer()
        if self._last_check is not None and now - self._last_check < self.interval_seconds:
            return self.is_high_load

        self._last_check = now
        try:
            self.cpu_percent, self.memory_percent = self._sampler()
            was_high_load = self.is_high_load
            self.is_high_load = (
                self.cpu_percent > self.threshold_percent
                or self.memory_percent > self.threshold_percent
            )

            if self.is_high_load and not was_high_load:
                self.logger.warning(
                    f"System under high load (CPU: {self.cpu_percent:.1f}%, "
                    f"Memory: {self.memory_percent:.1f}%). Rate limits reduced"
                )
            elif was_high_load and not self.is_high_load:
                self.logger.info(
                    f"System returned to normal load (CPU: {self.cpu_percent:.1f}%, "
                    f"Memory: {self.memory_percent:.1f}%). Rate limits restored"
                )
        except Exception as e:
            self.logger.error(f"Error checking system load: {e}", exc_info=True)
            self.is_high_load = False

        return self.is_high_load


def apply_high_load_reduction(limit: int, reduction_percent: int) -> int:
    return max(limit * (100 - reduction_percent) // 100, MIN_REDUCED_LIMIT)


def default_rate_limit(endpoint: str, app_settings: Settings) -> RateLimit:
    """Endpoint-class limits for callers without an identity"""
    endpoint = endpoint.lower()
    if any(marker in endpoint for marker in ("/auth/login", "/auth/register", "/auth/refresh-token")):
        return RateLimit(app_settings.RATE_LIMIT_AUTH_LIMIT, app_settings.RATE_LIMIT_AUTH_WINDOW_SECONDS)
    if "/tasks" in endpoint or "/taskitems" in endpoint:
        return RateLimit(app_settings.RATE_LIMIT_TASK_LIMIT, app_settings.RATE_LIMIT_TASK_WINDOW_SECONDS)
    return RateLimit(app_settings.RATE_LIMIT_DEFAULT_LIMIT, app_settings.RATE_LIMIT_DEFAULT_WINDOW_SECONDS)


def current_user_id(request: Request) -> Optional[int]:
    """Positive integer user id placed on request.state by the host application"""
    value = getattr(request.state, "user_id", None)
    try:
        user_id = int(value) if value is not None else 0
    except (TypeError, ValueError):
        return None
    return user_id if user_id > 0 else None


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class _QuotaDecision(NamedTuple):
    exceeded: bool
    trusted: bool
    reset_time: Optional[datetime]
    rate_limit: Optional[RateLimit]


# =============================================================================
# MIDDLEWARE
# =============================================================================

class AdaptiveRateLimitingMiddleware(BaseHTTPMiddleware):
    """Tier-aware rate limiting with daily quotas and high-load reduction"""

    def __init__(
        self,
        app,
        session_factory: sessionmaker,
        app_settings: Optional[Settings] = None,
        limiter: Optional[FixedWindowRateLimiter] = None,
        load_monitor: Optional[SystemLoadMonitor] = None,
        tier_cache: Optional[TTLCache] = None,
        rule_cache: Optional[TTLCache] = None,
        alerts: Optional[SecurityAlertDispatcher] = None,
        clock: Optional[Clock] = None,
        exclude_paths: Optional[List[str]] = None
    ):
        super().__init__(app)
        self.session_factory = session_factory
        self.settings = app_settings or default_settings
        self.clock = clock or utc_now
        self.limiter = limiter or FixedWindowRateLimiter()
        self.load_monitor = load_monitor or SystemLoadMonitor(
            threshold_percent=self.settings.HIGH_LOAD_THRESHOLD_PERCENT,
            interval_seconds=self.settings.PERFORMANCE_CHECK_INTERVAL_SECONDS,
        )
        self.tier_cache = tier_cache if tier_cache is not None else TTLCache(clock=self.clock)
        self.rule_cache = rule_cache if rule_cache is not None else TTLCache(clock=self.clock)
        self.alerts = alerts
        self.exclude_paths = exclude_paths if exclude_paths is not None else DEFAULT_EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next):
        """Apply quota and rate limits before the request reaches a route"""
        path = request.url.path
        if any(path.startswith(excluded) for excluded in self.exclude_paths):
            return await call_next(request)

        high_load = self.load_monitor.check()
        user_id = current_user_id(request)
        endpoint = path.lower()

        try:
            decision = await run_in_threadpool(self._evaluate, user_id, endpoint)
        except SubscriptionConfigurationError as e:
            logger.error(f"Rate limiting unavailable: {e}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={
                    "error": True,
                    "message": "Subscription configuration error",
                    "code": "SUBSCRIPTION_CONFIGURATION_ERROR"
                }
            )
        except Exception as e:
            logger.error(f"Rate limiting error: {e}", exc_info=True)
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content={
                    "error": True,
                    "message": "Rate limiting service error",
                    "code": "RATE_LIMIT_SERVICE_ERROR"
                }
            )

        if decision.exceeded:
            return self._quota_exceeded_response(user_id, decision.reset_time)

        if decision.trusted:
            response = await call_next(request)
            response.headers["X-RateLimit-Status"] = "exempt"
            return response

        limit, window_seconds = decision.rate_limit or default_rate_limit(endpoint, self.settings)
        if high_load:
            limit = apply_high_load_reduction(limit, self.settings.HIGH_LOAD_REDUCTION_PERCENT)

        key = ("user", user_id, endpoint) if user_id else ("ip", client_ip(request), endpoint)
        lease = self.limiter.acquire(key, limit, window_seconds)

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(lease.remaining),
            "X-RateLimit-Reset": str(int(lease.reset_at)),
        }
        if high_load:
            headers["X-System-Load"] = "high"
            headers["X-Rate-Limit-Reduced"] = "true"

        if not lease.acquired:
            logger.warning(
                f"Rate limit exceeded for {key[0]} {key[1]} on {endpoint}",
                extra={"limit": limit, "window_seconds": window_seconds, "path": path}
            )
            headers["Retry-After"] = str(window_seconds)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": True,
                    "message": "Rate limit exceeded. Please try again later.",
                    "code": "RATE_LIMIT_EXCEEDED",
                    "retry_after": window_seconds
                },
                headers=headers
            )

        if user_id:
            try:
                await run_in_threadpool(self._record_usage, user_id)
            except Exception as e:
                logger.error(f"Failed to increment API usage for user {user_id}: {e}", exc_info=True)

        response = await call_next(request)
        for name, value in headers.items():
            response.headers[name] = value
        return response

    def _service(self, db) -> UserSubscriptionService:
        return UserSubscriptionService.from_settings(
            db,
            self.settings,
            clock=self.clock,
            tier_cache=self.tier_cache,
            rule_cache=self.rule_cache,
            alerts=self.alerts,
        )

    def _evaluate(self, user_id: Optional[int], endpoint: str) -> _QuotaDecision:
        if not user_id:
            return _QuotaDecision(False, False, None, None)

        db = self.session_factory()
        try:
            service = self._service(db)
            if service.has_exceeded_daily_quota(user_id):
                _, reset_time = service.get_remaining_quota(user_id)
                return _QuotaDecision(True, False, reset_time, None)

            if service.is_trusted_system_account(user_id):
                return _QuotaDecision(False, True, None, None)

            return _QuotaDecision(False, False, None, service.get_rate_limit(user_id, endpoint))
        finally:
            db.close()

    def _record_usage(self, user_id: int) -> None:
        db = self.session_factory()
        try:
            self._service(db).increment_usage(user_id)
        finally:
            db.close()

    def _quota_exceeded_response(self, user_id: int, reset_time: datetime) -> Response:
        logger.warning(f"User {user_id} has exceeded their daily API quota")
        retry_after = max(0, math.ceil((reset_time - self.clock()).total_seconds()))
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": True,
                "message": "Daily API quota exceeded. Quota will reset at the start of the next day (UTC).",
                "code": "DAILY_QUOTA_EXCEEDED",
                "daily_quota": {"remaining": 0, "reset_time": reset_time.isoformat()}
            },
            headers={
                "Retry-After": str(retry_after),
                "X-Rate-Limit-Daily-Reset": str(int(reset_time.timestamp())),
            }
        )


class SecurityMonitoringMiddleware(BaseHTTPMiddleware):
    """Reputation gate on the client IP and behavior logging for identified users"""

    def __init__(
        self,
        app,
        session_factory: sessionmaker,
        app_settings: Optional[Settings] = None,
        alerts: Optional[SecurityAlertDispatcher] = None,
        clock: Optional[Clock] = None,
        exclude_paths: Optional[List[str]] = None
    ):
        super().__init__(app)
        self.session_factory = session_factory
        self.settings = app_settings or default_settings
        self.alerts = alerts
        self.clock = clock or utc_now
        self.exclude_paths = exclude_paths if exclude_paths is not None else DEFAULT_EXCLUDED_PATHS

    async def dispatch(self, request: Request, call_next):
        """Reject Block-rated addresses, then log the action once it has been served"""
        path = request.url.path
        if any(path.startswith(excluded) for excluded in self.exclude_paths):
            return await call_next(request)

        ip_address = client_ip(request)

        if self.settings.BLOCK_THREAT_IPS:
            action = await run_in_threadpool(self._recommended_action, ip_address)
            if action == RecommendedAction.BLOCK:
                logger.warning(
                    f"Blocked request from threat IP {ip_address}",
                    extra={"client_ip": ip_address, "path": path, "method": request.method}
                )
                return JSONResponse(
                    status_code=status.HTTP_403_FORBIDDEN,
                    content={
                        "error": True,
                        "message": "Access denied",
                        "code": "IP_BLOCKED"
                    }
                )

        response = await call_next(request)

        user_id = current_user_id(request)
        if user_id:
            await run_in_threadpool(
                self._log_activity,
                user_id,
                str(getattr(request.state, "username", "") or ""),
                ip_address,
                request.headers.get("user-agent", ""),
                request.method.upper(),
                path,
                int(response.headers.get("content-length", 0) or 0),
            )

        return response

    def _recommended_action(self, ip_address: str) -> RecommendedAction:
        db = self.session_factory()
        try:
            service = ThreatIntelligenceService(db, self.settings, clock=self.clock, alerts=self.alerts)
            return service.check_ip_reputation(ip_address).recommended_action
        finally:
            db.close()

    def _log_activity(self, *args: Any) -> None:
        db = self.session_factory()
        try:
            service = BehavioralAnalyticsService(db, self.settings, clock=self.clock, alerts=self.alerts)
            if not service.log_user_activity(*args):
                logger.warning(f"Behavior for user {args[0]} was not recorded")
        finally:
            db.close()


# =============================================================================
# DEPENDENCIES
# =============================================================================

async def get_current_user(request: Request) -> Dict[str, Any]:
    """Extract current user from request state"""
    user_id = current_user_id(request)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )

    return {
        "user_id": user_id,
        "username": getattr(request.state, "username", None),
        "roles": list(getattr(request.state, "roles", None) or []),
    }


async def get_current_admin_user(request: Request) -> Dict[str, Any]:
    """Extract current admin user from request state"""
    current_user = await get_current_user(request)

    if "admin" not in current_user.get("roles", []):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )

    return current_user


__all__ = [
    "AdaptiveRateLimitingMiddleware",
    "SecurityMonitoringMiddleware",
    "FixedWindowRateLimiter",
    "SystemLoadMonitor",
    "apply_high_load_reduction",
    "default_rate_limit",
    "get_current_user",
    "get_current_admin_user",
]
