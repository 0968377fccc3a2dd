"""
ScriptWatch Backend Utilities Package.

Configuration and logging shared across all backend modules.
Requires Python 3.11+.
"""

from utils.config import Settings, get_settings
from utils.logger import (
    LoggerMixin,
    configure_logging,
    get_logger,
    get_script_logger,
    logger,
)

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "get_script_logger",
    "logger",
    "LoggerMixin",
]
