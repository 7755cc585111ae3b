"""
Pydantic settings for the erasure pipeline and its subsystem clients.

This module provides centralized configuration management with:
- Required secrets validation at startup (fail-fast, no default signing key)
- Type-safe access to retention windows, batch sizes and timeouts
- Connection settings for the four erasure subsystems
- Singleton pattern for consistent access
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Required secrets will raise ValidationError if not provided.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars not in schema
    )

    # ==========================================
    # Required Secrets - fail fast if missing
    # ==========================================
    certificate_signing_secret: str
    user_hash_salt: str

    # ==========================================
    # Primary Store Configuration
    # ==========================================
    database_url: str = "sqlite:///./erasure.db"
    deletion_batch_size: int = 500

    # ==========================================
    # Object Storage Configuration
    # ==========================================
    object_storage_bucket: str = "user-uploads"
    object_storage_endpoint_url: str = ""
    object_storage_region: str = "us-east-1"
    storage_delete_batch_size: int = 100

    # ==========================================
    # Analytics Warehouse Configuration
    # ==========================================
    warehouse_url: str = "sqlite:///./warehouse.db"
    warehouse_tables: str = "users_anonymized,training_sessions"
    # Query failures during verification count as verified when enabled
    analytics_verify_fail_open: bool = False

    # ==========================================
    # Identity Provider Configuration
    # ==========================================
    identity_provider_url: str = "http://identity:8080/admin"
    identity_provider_token: str = ""
    identity_provider_timeout: float = 10.0

    # ==========================================
    # Retention Windows
    # ==========================================
    deletion_grace_period_days: int = 30
    hard_deletion_delay_hours: int = 1
    recover_deadline_margin_hours: int = 1
    recovery_code_ttl_hours: int = 24
    recovery_code_max_attempts: int = 5

    # ==========================================
    # Pipeline Configuration
    # ==========================================
    stage_timeout_seconds: float = 120.0
    certificate_issuer: str = "erasure-pipeline"
    sweep_interval_seconds: int = 3600
    sweep_batch_limit: int = 500

    # ==========================================
    # Logging Configuration
    # ==========================================
    log_level: str = "INFO"
    log_format_json: bool = True

    # ==========================================
    # Validators
    # ==========================================
    @field_validator("certificate_signing_secret")
    @classmethod
    def validate_signing_secret(cls, v: str) -> str:
        """Signing secret must be at least 32 characters for security."""
        if len(v) < 32:
            raise ValueError("CERTIFICATE_SIGNING_SECRET must be at least 32 characters")
        return v

    @field_validator("user_hash_salt")
    @classmethod
    def validate_user_hash_salt(cls, v: str) -> str:
        """An empty salt would make user hashes trivially reversible."""
        if not v.strip():
            raise ValueError("USER_HASH_SALT must not be empty")
        return v

    @field_validator(
        "deletion_batch_size",
        "storage_delete_batch_size",
        "recovery_code_max_attempts",
        "sweep_batch_limit",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @property
    def warehouse_table_names(self) -> list[str]:
        """Analytics tables holding rows keyed by user hash."""
        return [t.strip() for t in self.warehouse_tables.split(",") if t.strip()]


# ==========================================
# Singleton Access
# ==========================================
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the singleton Settings instance.

    Returns:
        Settings: The application settings

    Raises:
        ValidationError: If required settings are missing or invalid
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset the settings singleton (used by tests)."""
    global _settings
    _settings = None
