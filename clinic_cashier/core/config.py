# clinic_cashier/core/config.py - Centralized settings management using Pydantic
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings with validation and type safety"""

    # Application Environment
    ENV: str = Field(default="dev", description="Environment: dev, staging, prod")
    DEBUG: bool = Field(default=False, description="Debug mode")
    API_TITLE: str = Field(default="Clinic Cashier API", description="API title")
    API_VERSION: str = Field(default="1.0.0", description="API version")

    # Clinic backend (invoice store, payment ledger, queue service)
    CLINIC_API_URL: str = Field(default="http://localhost:5000/api", description="Clinic REST API base URL")
    CLINIC_API_TIMEOUT_SECONDS: float = Field(default=30.0, ge=1, le=300, description="Clinic API request timeout")

    # JWT Configuration (tokens are issued by the clinic backend)
    JWT_SECRET: str = Field(
        default="change_me_now_change_me_now_change_me_now",
        min_length=32,
        description="Shared JWT signing secret"
    )
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT algorithm")
    JWT_AUDIENCE: Optional[str] = Field(default=None, description="Expected JWT audience")
    CASHIER_ROLES: List[str] = Field(default=["cashier", "admin"], description="Roles allowed on the cashier surface")

    # Settlement policy
    MAX_OUTSTANDING_INVOICES: int = Field(default=2, ge=1, le=10, description="Unpaid invoices per patient before the limit applies")
    COMPLETED_PAGE_SIZE: int = Field(default=50, ge=1, le=500, description="Completed invoices fetched per refresh")

    # Recovery marker
    RECOVERY_STORE: str = Field(default="memory", description="Recovery marker store: memory, file, redis")
    RECOVERY_MARKER_KEY: str = Field(default="pendingPayment", description="Well-known recovery marker key")
    RECOVERY_STALENESS_SECONDS: int = Field(default=300, ge=1, description="Markers older than this are discarded")
    RECOVERY_FILE_PATH: str = Field(default="./.cashier_recovery.json", description="Marker file for the file store")
    REDIS_URL: Optional[str] = Field(default=None, description="Redis connection URL for the redis store")

    # CORS Configuration
    CORS_ORIGINS: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",  # Vite dev server
            "http://127.0.0.1:5173"
        ],
        description="CORS allowed origins"
    )

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: str = Field(default="detailed", description="Log format: simple, detailed, json")
    LOG_FILE_PATH: Optional[str] = Field(default=None, description="Log file path")
    LOG_MAX_SIZE: int = Field(default=10485760, description="Max log file size in bytes (10MB)")
    LOG_BACKUP_COUNT: int = Field(default=5, description="Number of log backup files")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # Ignore extra environment variables

    @field_validator("ENV")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed_envs = ["dev", "development", "test", "staging", "prod", "production"]
        if v.lower() not in allowed_envs:
            raise ValueError(f"ENV must be one of: {allowed_envs}")
        return v.lower()

    @field_validator("CLINIC_API_URL")
    @classmethod
    def validate_clinic_api_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("CLINIC_API_URL must be an http(s) URL")
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed_levels:
            raise ValueError(f"LOG_LEVEL must be one of: {allowed_levels}")
        return v.upper()

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in ("simple", "detailed", "json"):
            raise ValueError("LOG_FORMAT must be one of: simple, detailed, json")
        return v.lower()

    @field_validator("RECOVERY_STORE")
    @classmethod
    def validate_recovery_store(cls, v: str) -> str:
        if v.lower() not in ("memory", "file", "redis"):
            raise ValueError("RECOVERY_STORE must be one of: memory, file, redis")
        return v.lower()

    @field_validator("CORS_ORIGINS", "CASHIER_ROLES", mode="before")
    @classmethod
    def parse_csv_list(cls, v):
        if isinstance(v, str):
            # Handle comma-separated string
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.ENV in ["dev", "development"]

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.ENV in ["prod", "production"]


# Create settings instance with validation
settings = Settings()


def validate_critical_settings():
    """Validate critical settings that must be present"""
    critical_errors = []

    if settings.is_production and settings.JWT_SECRET.startswith("change_me_now"):
        critical_errors.append("JWT_SECRET must be set to a secure value in production")

    if settings.RECOVERY_STORE == "redis" and not settings.REDIS_URL:
        critical_errors.append("REDIS_URL is required when RECOVERY_STORE=redis")

    if critical_errors:
        error_msg = "Critical configuration errors:\n" + "\n".join(f"  - {error}" for error in critical_errors)
        raise ValueError(error_msg)


# Validate on import
validate_critical_settings()

# Export settings
__all__ = ["settings", "Settings"]
