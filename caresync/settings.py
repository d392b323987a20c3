"""Settings configuration for CareSync."""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict
from dotenv import load_dotenv

# Load environment variables from .env file in the same directory as this file
env_path = Path(__file__).parent / ".env"
load_dotenv(dotenv_path=env_path)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Record Store Configuration
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL connection URL; records are kept in memory when unset"
    )

    db_pool_min_size: int = Field(
        default=2,
        description="Minimum database connection pool size"
    )

    db_pool_max_size: int = Field(
        default=10,
        description="Maximum database connection pool size"
    )

    # Remote Authority Configuration
    authority_base_url: Optional[str] = Field(
        default=None,
        description="Base URL of the relationship authority; verification is UNKNOWN when unset"
    )

    remote_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for verification and disconnect notification calls"
    )

    # Alert Delivery Configuration
    alert_webhook_url: Optional[str] = Field(
        default=None,
        description="Webhook receiving geofence alert payloads"
    )

    alert_timeout_seconds: float = Field(
        default=8.0,
        description="Timeout for alert webhook delivery"
    )

    alert_suppression_minutes: int = Field(
        default=60,
        description="Minimum interval between two geofence alerts for one actor"
    )

    # Geofence Configuration
    safe_radius_meters: float = Field(
        default=500.0,
        gt=0,
        description="Radius around the home anchor considered safe"
    )

    location_cache_ttl_seconds: float = Field(
        default=300.0,
        description="How long a cached current location is served without a store read"
    )

    # Session Configuration
    reactivation_block_ms: int = Field(
        default=3000,
        description="Window after a deactivation during which a patient cannot be re-activated"
    )

    reactivation_lock_seconds: float = Field(
        default=5.0,
        description="How long the forced reactivation block lasts after removing the active patient"
    )

    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )


def load_settings() -> Settings:
    """Load settings with proper error handling."""
    try:
        return Settings()
    except Exception as e:
        error_msg = f"Failed to load settings: {e}"
        if "database_url" in str(e).lower():
            error_msg += "\nMake sure DATABASE_URL in your .env file is a valid PostgreSQL URL"
        if "authority_base_url" in str(e).lower():
            error_msg += "\nMake sure AUTHORITY_BASE_URL in your .env file is a valid URL"
        raise ValueError(error_msg) from e
