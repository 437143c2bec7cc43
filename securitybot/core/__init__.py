"""Core settings, bot configuration loading, errors, and database."""

from securitybot.core.config import get_settings, settings
from securitybot.core.database import get_db

__all__ = ["get_settings", "settings", "get_db"]
