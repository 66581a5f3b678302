"""Engine configuration"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

BACKEND_DIR = Path(__file__).parent.parent.parent


class EngineSettings(BaseSettings):
    """Engine settings"""

    model_config = SettingsConfigDict(
        env_file=BACKEND_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (empty = in-memory store)
    database_url: str = Field(default="", description="PostgreSQL database URL")
    database_ssl: str = Field(default="prefer", description="asyncpg ssl mode")

    # Overlay server
    overlay_host: str = Field(default="0.0.0.0", description="Overlay server host")
    # Render sets PORT, which takes precedence
    overlay_port: int = Field(
        default=4344,
        validation_alias=AliasChoices("port", "overlay_port"),
        description="Overlay server port",
    )

    # Delivery queue
    alert_delay_ms: int = Field(default=500, ge=0, description="Gap between alerts (ms)")
    alert_history_limit: int = Field(default=100, ge=1, description="Alerts kept in history")

    # Alert policies
    enable_follow_alerts: bool = True
    enable_subscribe_alerts: bool = True
    enable_raid_alerts: bool = True
    enable_donation_alerts: bool = True
    enable_cheer_alerts: bool = True
    min_raid_viewers: int = Field(default=2, ge=0)
    min_donation_amount: float = Field(default=1.0, ge=0)
    min_cheer_bits: int = Field(default=100, ge=0)

    # Environment
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Validate database URL starts with postgresql://"""
        if v and not v.startswith("postgresql://"):
            raise ValueError("DATABASE_URL must start with 'postgresql://'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @property
    def uses_database(self) -> bool:
        return bool(self.database_url)


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance"""
    return EngineSettings()
