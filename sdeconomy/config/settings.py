"""
Supply/Demand Economy Service
Centralized Configuration Management

Pydantic settings with environment variable support. The economy core never
reads these directly; the service translates them into constructor arguments.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sdeconomy.economy.product import DecayType


class DatabaseSettings(BaseSettings):
    """Durable storage configuration"""

    model_config = SettingsConfigDict(env_prefix="SDECONOMY_DB_")

    url: str = Field(
        default="sqlite+aiosqlite:///./sdeconomy.db",
        description="SQLAlchemy async connection URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements")
    operation_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound in seconds for a single storage operation",
    )


class EconomySettings(BaseSettings):
    """Pricing, decay and snapshot configuration"""

    model_config = SettingsConfigDict(env_prefix="SDECONOMY_")

    snapshot_interval: float = Field(
        default=300.0, gt=0, description="Seconds between bulk product snapshots"
    )
    populate_database: bool = Field(
        default=False, description="Create default products for every known item type"
    )
    use_max_items_per_buy: bool = Field(default=False, description="Cap units per buy")
    max_items_per_buy: int = Field(default=64, ge=1, description="Unit cap per buy")

    # Defaults for newly created products
    default_mod_factor: float = Field(default=0.1, description="Elasticity coefficient")
    default_base_price: float = Field(default=1.0, description="Base price")
    default_decay_amount: int = Field(default=64, ge=0, description="Decay amount or percentage")
    default_decay_interval: int = Field(
        default=43_200_000, description="Decay interval in milliseconds (<= 0 disables)"
    )
    default_decay_type: DecayType = Field(default=DecayType.CONSTANT, description="Decay policy")


class MonitoringSettings(BaseSettings):
    """Logging configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")
    log_file: Optional[str] = Field(default=None, description="Log file path")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    app_name: str = Field(default="sdeconomy", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")
    version: str = Field(default="1.0.0", description="Application version")

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    economy: EconomySettings = Field(default_factory=EconomySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
