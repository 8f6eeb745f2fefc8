"""Shared configuration and logging setup."""

from core.config import Settings, get_settings
from core.log_config import configure_logging

__all__ = ["Settings", "get_settings", "configure_logging"]
