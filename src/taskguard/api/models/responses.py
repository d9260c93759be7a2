"""
TaskGuard API Response Models
Pydantic models for security endpoint responses
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from taskguard.core.timeutils import utc_now


class BaseResponse(BaseModel):
    """Base response model"""
    success: bool = Field(..., description="Operation success status")
    message: str = Field(..., description="Response message")
    timestamp: datetime = Field(default_factory=utc_now, description="Response timestamp")


class CleanupResponse(BaseResponse):
    """Retention run result"""
    removed: int = Field(..., description="Number of records removed")
    days_old: Optional[int] = Field(default=None, description="Retention window used")


class RateLimitResponse(BaseModel):
    """Resolved limit for a user and endpoint"""
    user_id: int
    endpoint: str
    limit: int
    time_window_seconds: int
