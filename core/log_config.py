"""Logging setup shared by scripts and background workers."""

import logging
from typing import Optional

from core.config import Settings, get_settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Optional[Settings] = None) -> int:
    """
    Configure root logging from settings.

    Args:
        settings: Settings to read the level from. Uses cached settings if omitted.

    Returns:
        The numeric level that was applied.
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Invalid log level: {settings.log_level}")

    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)
    return level
