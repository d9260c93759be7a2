"""
TaskGuard API Request Models
Pydantic models for security endpoint requests
"""

import ipaddress

from pydantic import BaseModel, Field, field_validator

from taskguard.security.models import ThreatSeverity


def _validate_ip(value: str) -> str:
    value = value.strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        raise ValueError(f"'{value}' is not a valid IP address")
    return value


# =============================================================================
# BEHAVIOR MODELS
# =============================================================================

class AnalyzeBehaviorRequest(BaseModel):
    """Score an action without recording it"""
    user_id: int = Field(..., gt=0, description="Acting user")
    ip_address: str = Field(..., min_length=1, max_length=45, description="Source IP address")
    user_agent: str = Field(default="", max_length=500, description="Raw user-agent header")
    action_type: str = Field(..., min_length=1, max_length=100, description="Action category, e.g. GET")
    resource_accessed: str = Field(default="", max_length=500, description="Resource path")


# =============================================================================
# THREAT MODELS
# =============================================================================

class AddThreatRequest(BaseModel):
    """Report a threat sighting for an IP address"""
    ip_address: str = Field(..., description="Threat IP address")
    threat_type: str = Field(..., min_length=1, max_length=100, description="Threat category")
    severity: ThreatSeverity = Field(..., description="Low, Medium, High or Critical")
    source: str = Field(..., min_length=1, max_length=100, description="Reporting source")
    description: str = Field(default="", max_length=1000)
    confidence_score: int = Field(default=50, ge=0, le=100)

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v):
        return _validate_ip(v)

    @field_validator("severity", mode="before")
    @classmethod
    def parse_severity(cls, v):
        return ThreatSeverity.parse(v)


class IPListRequest(BaseModel):
    """Whitelist or blacklist an IP address"""
    ip_address: str = Field(..., description="IP address")
    reason: str = Field(..., min_length=1, max_length=500, description="Why the address is listed")

    @field_validator("ip_address")
    @classmethod
    def validate_ip_address(cls, v):
        return _validate_ip(v)


class ThreatStatusRequest(BaseModel):
    is_active: bool


# =============================================================================
# QUOTA MODELS
# =============================================================================

class UpdateTierRequest(BaseModel):
    """Move a user to another subscription tier"""
    tier_id: int = Field(..., gt=0)
