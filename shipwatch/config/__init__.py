"""
Configuration Module
====================

Process settings (environment / .env) and the shared vocabulary of the
escalation engine, using Pydantic.

Engine policy knobs (thresholds, hysteresis, risk weights) are not here:
they live in the hot-reloadable YAML file described by
``shipwatch.escalation.domain.value_objects.EngineConfig``.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="shipwatch", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/shipments",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== Escalation Engine ==========
    escalation_config_path: Path = Field(
        default=Path("escalation_config.yaml"),
        description="Path to the escalation policy YAML file"
    )
    risk_scan_interval_seconds: int = Field(
        default=900,
        description="Seconds between SLA risk scans",
        ge=10
    )
    ladder_advance_interval_seconds: int = Field(
        default=60,
        description="Seconds between ladder timeout sweeps",
        ge=5
    )
    scheduler_enabled: bool = Field(
        default=True,
        description="Run the periodic jobs in this process (enable on one instance only)"
    )
    system_actor: str = Field(
        default="system",
        description="Actor recorded for escalations opened or advanced by jobs"
    )

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for escalation notifications"
    )
    slack_channel: str = Field(
        default="#shipment-escalations",
        description="Slack channel for escalation notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:5173"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class ShipmentStatus(str):
    """Shipment lifecycle statuses."""
    PENDING = "pending"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETURNED = "returned"


class ServiceLevel(str):
    """Service priority tiers."""
    STANDARD = "standard"
    EXPRESS = "express"
    SAME_DAY = "same_day"


class IssueStatus(str):
    """Delivery issue lifecycle statuses."""
    OPEN = "open"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"
    CLOSED = "closed"


class EscalationEventKind(str):
    """Event kind recorded on an escalation attempt."""
    TRIGGERED = "triggered"
    ADVANCED = "advanced"
    ACKNOWLEDGED = "acknowledged"


class EscalationStatus(str):
    """Derived status of a shipment's escalation chain."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class NotificationChannel(str):
    """Named channels on the notification sink."""
    ESCALATION_TRIGGERED = "escalation.triggered"
    ESCALATION_ADVANCED = "escalation.advanced"
    ESCALATION_ACKNOWLEDGED = "escalation.acknowledged"



TERMINAL_SHIPMENT_STATUSES = [
    ShipmentStatus.DELIVERED, ShipmentStatus.FAILED, ShipmentStatus.RETURNED
]
