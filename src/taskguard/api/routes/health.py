"""
TaskGuard Health Check Routes
Liveness and readiness endpoints
"""

from datetime import datetime
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from taskguard.api.dependencies import get_session
from taskguard.core.logging import get_logger
from taskguard.core.timeutils import utc_now

logger = get_logger(__name__)
router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    components: Dict[str, Any]


@router.get("/health", response_model=HealthResponse)
def health_check(request: Request):
    """Liveness probe; does not touch the database"""
    app_settings = request.app.state.settings
    return HealthResponse(
        status="healthy",
        version=app_settings.VERSION,
        environment=app_settings.ENVIRONMENT,
        timestamp=utc_now(),
        components={"api": {"status": "healthy", "message": "API server running"}},
    )


@router.get("/health/ready")
def readiness_check(db: Session = Depends(get_session)):
    """Readiness probe: the ledger store must answer"""
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ready", "database": "healthy"}
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "database": "unhealthy"},
        )
