"""
Logging setup for StateGraph.

Library modules only create loggers; applications call configure_logging()
once at startup.
"""

from typing import Optional
import logging

from stategraph.config import settings


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure the root logger from settings (or explicit arguments)."""
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=fmt or settings.LOG_FORMAT,
    )
    logging.getLogger(__name__).debug(f"Logging configured at {level_name}")
