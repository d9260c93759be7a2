"""
TaskGuard Core Configuration
Environment-driven settings for anomaly detection, threat reputation and quota enforcement.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, FrozenSet, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """
    TaskGuard Configuration Settings
    """

    # Application
    APP_NAME: str = "TaskGuard"
    VERSION: str = "0.1.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # API Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "TaskGuard API"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # Database
    DATABASE_URL: str = "sqlite:///./taskguard.db"
    DATABASE_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("logs")
    LOG_TO_FILE: bool = True

    # Subscriptions
    DEFAULT_FREE_TIER_ID: int = 0
    SYSTEM_TIER_ID: int = 0
    TRUSTED_SYSTEM_ACCOUNTS: Annotated[List[int], NoDecode] = []
    TIER_CACHE_TTL_SECONDS: int = 15 * 60
    RATE_LIMIT_CACHE_TTL_SECONDS: int = 30 * 60
    QUOTA_WARNING_THRESHOLD_PERCENT: int = 80

    # Anomaly Detection
    ANOMALY_LOW_THRESHOLD: float = 0.4
    ANOMALY_MEDIUM_THRESHOLD: float = 0.6
    ANOMALY_HIGH_THRESHOLD: float = 0.8
    VELOCITY_THRESHOLD: int = 10
    MAX_ACTIONS_PER_MINUTE: int = 30
    BASELINE_DAYS: int = 30
    PATTERN_WINDOW_DAYS: int = 7
    SESSION_GAP_HOURS: int = 8

    # Retention
    BEHAVIOR_RETENTION_DAYS: int = 30
    THREAT_RETENTION_DAYS: int = 90

    # Rate Limiting (anonymous callers and load adaptation)
    RATE_LIMIT_DEFAULT_LIMIT: int = 30
    RATE_LIMIT_DEFAULT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_AUTH_LIMIT: int = 5
    RATE_LIMIT_AUTH_WINDOW_SECONDS: int = 60
    RATE_LIMIT_TASK_LIMIT: int = 20
    RATE_LIMIT_TASK_WINDOW_SECONDS: int = 30
    PERFORMANCE_CHECK_INTERVAL_SECONDS: int = 30
    HIGH_LOAD_THRESHOLD_PERCENT: int = 80
    HIGH_LOAD_REDUCTION_PERCENT: int = 50
    BLOCK_THREAT_IPS: bool = True

    @field_validator("TRUSTED_SYSTEM_ACCOUNTS", mode="before")
    @classmethod
    def assemble_trusted_accounts(cls, v: Any) -> List[int]:
        if v is None or v == "":
            return []
        if isinstance(v, str):
            v = v.strip().strip("[]")
            return [int(i.strip()) for i in v.split(",") if i.strip()]
        elif isinstance(v, (list, tuple, set, frozenset)):
            return [int(i) for i in v]
        raise ValueError(v)

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str) and v:
            return v
        # Default to SQLite for development
        return "sqlite:///./taskguard.db"

    @field_validator("ANOMALY_LOW_THRESHOLD", "ANOMALY_MEDIUM_THRESHOLD", "ANOMALY_HIGH_THRESHOLD")
    @classmethod
    def check_threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"Anomaly thresholds must be within [0, 1], got {v}")
        return v

    @property
    def trusted_system_account_ids(self) -> FrozenSet[int]:
        """Trusted accounts as an immutable set for injection into services"""
        return frozenset(self.TRUSTED_SYSTEM_ACCOUNTS)

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
