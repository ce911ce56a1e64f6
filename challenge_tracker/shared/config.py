"""Application settings for the challenge tracker.

Settings are read from the environment (prefix ``CHALLENGE_TRACKER_``) and an
optional ``.env`` file. Use :func:`get_settings` rather than instantiating
:class:`Settings` directly so every caller shares one cached instance.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHALLENGE_TRACKER_",
        env_file=".env",
        extra="ignore",
    )

    environment: str = "development"

    # Database
    database_url: str = "postgresql+asyncpg://localhost/challenge_tracker"
    database_echo: bool = False
    database_pool_size: int = Field(default=5, ge=1)

    # Logging
    log_level: str = "INFO"

    # Scoring
    media_bonus_points: float = 1.0
    points_precision: int = Field(default=2, ge=0)

    # Ledger policy for activities removed by a third-party sync
    import_delete_floor_at_zero: bool = True

    # Synthetic activity types created on demand
    achievement_bonus_type_name: str = "Achievement Bonus"
    mini_game_bonus_type_name: str = "Mini-Game Bonus"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_testing(self) -> bool:
        return self.environment == "testing"


@lru_cache
def get_settings() -> Settings:
    """Return the cached application settings."""
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Apply the configured log level to the root logger."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
