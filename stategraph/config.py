"""
Configuration settings for the StateGraph engine.

These are process-wide defaults. Per-run parameters are resolved on top of
them by stategraph.engine.config.ConfigResolver.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    """Engine settings with environment variable support (STATEGRAPH_*)."""

    model_config = SettingsConfigDict(
        env_prefix="STATEGRAPH_",
        env_file=".env",
        extra="ignore",
    )

    # Application
    APP_NAME: str = "StateGraph"
    APP_VERSION: str = "1.0.0"

    # Defaults for the built-in run parameters
    MAX_ITERATIONS: int = 25
    NODE_TIMEOUT: Optional[float] = None  # Seconds
    RUN_TIMEOUT: Optional[float] = None  # Seconds
    MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF: float = 0.5
    RETRY_BACKOFF_MAX: float = 8.0
    EVENT_BUFFER_SIZE: int = 100
    BACKPRESSURE: Literal["drop_oldest", "block"] = "drop_oldest"
    EVENT_BLOCK_TIMEOUT: float = 5.0
    STRICT_ROUTING: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# Global settings instance
settings = Settings()
