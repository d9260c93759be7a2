"""
TaskGuard FastAPI Application
Security administration API with adaptive rate limiting and behavior monitoring
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from taskguard.api.middleware import (
    AdaptiveRateLimitingMiddleware,
    FixedWindowRateLimiter,
    SecurityMonitoringMiddleware,
    SystemLoadMonitor,
)
from taskguard.api.routes import health, security
from taskguard.core.cache import TTLCache
from taskguard.core.config import Settings, settings as default_settings
from taskguard.core.logging import get_logger
from taskguard.core.timeutils import Clock, utc_now
from taskguard.security.alerts import SecurityAlertDispatcher
from taskguard.services.subscription_service import SubscriptionConfigurationError

logger = get_logger(__name__)


def _error_response(status_code: int, message, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": True,
            "message": message,
            "status_code": status_code,
            "timestamp": time.time(),
            **extra,
        },
    )


def create_app(
    app_settings: Optional[Settings] = None,
    session_factory: Optional[sessionmaker] = None,
    alerts: Optional[SecurityAlertDispatcher] = None,
    clock: Optional[Clock] = None,
    load_monitor: Optional[SystemLoadMonitor] = None,
    limiter: Optional[FixedWindowRateLimiter] = None,
    init_schema: bool = False
) -> FastAPI:
    """
    Build the API around an explicit settings object and session factory.

    Shared state (caches, alert dispatcher, limiter) lives on ``app.state`` and
    is handed to the middleware at construction time.
    """
    app_settings = app_settings or default_settings
    clock = clock or utc_now

    if session_factory is None:
        from taskguard.database.connection_manager import SessionLocal
        session_factory = SessionLocal

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan management"""
        logger.info("🚀 TaskGuard API starting up...")

        if init_schema:
            from taskguard.database.connection_manager import init_database
            from taskguard.database.init_database import seed_default_tiers

            bind = session_factory.kw.get("bind")
            init_database(bind=bind)
            db = session_factory()
            try:
                seed_default_tiers(db)
            finally:
                db.close()

        logger.info("✅ TaskGuard API startup complete")
        yield
        logger.info("🛑 TaskGuard API shutting down...")
        app.state.tier_cache.clear()
        app.state.rule_cache.clear()
        logger.info("✅ TaskGuard API shutdown complete")

    app = FastAPI(
        title=app_settings.PROJECT_NAME,
        version=app_settings.VERSION,
        description="Behavioral anomaly detection, IP reputation and API quota enforcement",
        openapi_url=f"{app_settings.API_V1_STR}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.settings = app_settings
    app.state.session_factory = session_factory
    app.state.clock = clock
    app.state.alerts = alerts or SecurityAlertDispatcher()
    app.state.tier_cache = TTLCache(clock=clock)
    app.state.rule_cache = TTLCache(clock=clock)
    app.state.limiter = limiter or FixedWindowRateLimiter()

    # =========================================================================
    # MIDDLEWARE CONFIGURATION
    # =========================================================================

    # Added first so it runs inside the rate limiter
    app.add_middleware(
        SecurityMonitoringMiddleware,
        session_factory=session_factory,
        app_settings=app_settings,
        alerts=app.state.alerts,
        clock=clock,
    )

    app.add_middleware(
        AdaptiveRateLimitingMiddleware,
        session_factory=session_factory,
        app_settings=app_settings,
        limiter=app.state.limiter,
        load_monitor=load_monitor,
        tier_cache=app.state.tier_cache,
        rule_cache=app.state.rule_cache,
        alerts=app.state.alerts,
        clock=clock,
    )

    @app.middleware("http")
    async def add_process_time_header(request: Request, call_next):
        """Add response time header"""
        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Process-Time"] = str(time.time() - start_time)
        return response

    # =========================================================================
    # EXCEPTION HANDLERS
    # =========================================================================

    @app.exception_handler(SubscriptionConfigurationError)
    async def subscription_configuration_handler(request: Request, exc: SubscriptionConfigurationError):
        logger.error(f"Subscription configuration error on {request.url.path}: {exc}")
        return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc))

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions"""
        logger.warning(
            f"HTTP exception: {exc.status_code}",
            extra={"url": str(request.url), "method": request.method, "detail": exc.detail}
        )
        return _error_response(exc.status_code, exc.detail)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors"""
        logger.warning(
            "Validation error",
            extra={"url": str(request.url), "method": request.method}
        )
        return _error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Validation error",
            details=jsonable_errors(exc),
        )

    # =========================================================================
    # ROUTE REGISTRATION
    # =========================================================================

    app.include_router(health.router, tags=["Health"])
    app.include_router(
        security.router,
        prefix=f"{app_settings.API_V1_STR}/security",
        tags=["Security"],
    )

    @app.get("/")
    def root():
        """Root endpoint with API information"""
        return {
            "message": f"{app_settings.APP_NAME} API",
            "version": app_settings.VERSION,
            "environment": app_settings.ENVIRONMENT,
            "docs_url": "/docs",
            "health_url": "/health",
            "api_prefix": app_settings.API_V1_STR,
        }

    return app


def jsonable_errors(exc: RequestValidationError):
    """Validation errors without the raw exception objects pydantic attaches"""
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        create_app(init_schema=True),
        host=default_settings.API_HOST,
        port=default_settings.API_PORT,
        log_level="debug" if default_settings.DEBUG else "info",
    )
