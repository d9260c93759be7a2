"""
TaskGuard - Behavioral Security Core
Anomaly detection, IP reputation and subscription quota enforcement for the task tracker backend.
"""

__version__ = "0.1.0"
__author__ = "TaskGuard Maintainers"

from taskguard.core.config import settings
from taskguard.core.logging import get_logger

logger = get_logger(__name__)
logger.debug(f"TaskGuard v{__version__} initialized")

__all__ = ["settings", "get_logger", "__version__"]
