"""
Configuration module for the Release Orchestrator service.

Uses pydantic-settings for environment variable management with type validation.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorConfig(BaseSettings):
    """Configuration for the approval-gated release orchestrator."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the service")
    port: int = Field(default=8000, description="Port to bind the service")
    reload: bool = Field(default=False, description="Enable auto-reload for development")

    # Pipeline Definition & State
    definition_path: str = Field(
        default="./pipeline.yaml",
        description="Path to the pipeline definition YAML (stages, approvers, tools)",
    )
    state_path: Optional[str] = Field(
        default="./.release-state/state.json",
        description="Path of the JSON state snapshot (None keeps state in memory)",
    )
    state_poll_interval_seconds: float = Field(
        default=1.0,
        gt=0,
        description="How often waits and running pipelines re-read the shared state file",
    )
    lease_ttl_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Heartbeat age after which a running pipeline's owner is presumed gone",
    )

    # Attestation Signing
    signing_key_id: str = Field(
        default="release-key-v1", description="Key ID used to sign new attestations"
    )
    signing_secret: Optional[str] = Field(
        default=None, description="HMAC secret for the signing key (dev fallback if unset)"
    )
    key_dir: Optional[str] = Field(
        default=None,
        description="Directory of <key_id>.key files and revoked_keys.json",
    )

    # Approval Gate
    approval_timeout_seconds: float = Field(
        default=86400.0,
        ge=0,
        description="How long a change may wait for approvals before it expires (0 disables)",
    )
    expiry_sweep_interval_seconds: float = Field(
        default=60.0, gt=0, description="Interval of the background expiry sweep"
    )

    # Stage Execution
    default_stage_timeout_seconds: float = Field(
        default=1800.0, gt=0, description="Stage timeout when a definition sets none"
    )
    retry_base_delay_seconds: float = Field(
        default=1.0, ge=0, description="Base delay for exponential retry backoff"
    )
    retry_max_delay_seconds: float = Field(
        default=60.0, ge=0, description="Upper bound for a single retry delay"
    )

    # Notification Feed
    event_webhook_url: Optional[str] = Field(
        default=None, description="Dashboard/notification webhook receiving pipeline events"
    )
    event_queue_size: int = Field(
        default=1000, ge=1, description="Maximum number of undelivered events kept"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("retry_max_delay_seconds")
    @classmethod
    def validate_retry_max_delay(cls, v: float, info) -> float:
        """Ensure the backoff cap is not below the base delay."""
        base = info.data.get("retry_base_delay_seconds", 0.0)
        if v < base:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return v

    @field_validator("lease_ttl_seconds")
    @classmethod
    def validate_lease_ttl(cls, v: float, info) -> float:
        """A lease must outlive several heartbeats."""
        interval = info.data.get("state_poll_interval_seconds", 0.0)
        if v <= 2 * interval:
            raise ValueError("lease_ttl_seconds must be more than twice state_poll_interval_seconds")
        return v


# Global config instance
config = OrchestratorConfig()
