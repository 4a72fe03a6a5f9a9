"""
Configuration management for the biometric attendance sync service
"""
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Required settings
    DATABASE_URL: str = Field(..., description="Attendance store database URL")
    JWT_SECRET_KEY: str = Field(..., description="JWT secret key for realtime login tokens")

    # Optional settings with defaults
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT algorithm")
    JWT_EXPIRE_MINUTES: int = Field(default=480, description="Realtime login token expiration in minutes (8h)")

    APP_ENV: str = Field(default="local", description="Application environment: local, staging, prod")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")

    # CORS settings
    ALLOWED_ORIGINS: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins. Use '*' for local only."
    )

    # Version (can be git SHA or semver)
    VERSION: Optional[str] = Field(default=None, description="Application version (git SHA or semver)")

    # Device client
    DEVICE_DEFAULT_PORT: int = Field(default=4370, description="Default terminal TCP port")
    DEVICE_CONNECT_TIMEOUT: int = Field(default=60, description="Protocol session connect timeout in seconds")
    DEVICE_PROBE_TIMEOUT: float = Field(default=5.0, description="Reachability probe (connect-and-close) timeout in seconds")
    DEVICE_LATENCY_CEILING_MS: int = Field(
        default=1000,
        description="Probe latency above which a device is treated as offline",
    )
    DEVICE_INFO_TIMEOUT: float = Field(default=30.0, description="Per-device time limit for the device-info sweep in seconds")

    # Batch sync
    SYNC_MAX_WORKERS: int = Field(default=4, description="Bounded fan-out for all-device runs (1 = sequential)")

    # Realtime watch loop
    WATCH_POLL_INTERVAL: float = Field(default=3.0, description="Seconds between polls of a watched device")
    WATCH_HEALTH_INTERVAL: float = Field(default=10.0, description="Seconds between supervisor health checks")
    WATCH_WINDOW_SECONDS: float = Field(default=5.0, description="Trailing window for realtime punch candidates")
    WATCH_CONNECT_TIMEOUT: int = Field(default=5, description="Connect timeout used by each poll in seconds")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        """Validate APP_ENV"""
        allowed = ["local", "staging", "prod"]
        if v not in allowed:
            raise ValueError(f"APP_ENV must be one of {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate LOG_LEVEL"""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL must be one of {allowed}")
        return v.upper()

    @field_validator(
        "DEVICE_CONNECT_TIMEOUT",
        "DEVICE_PROBE_TIMEOUT",
        "DEVICE_LATENCY_CEILING_MS",
        "DEVICE_INFO_TIMEOUT",
        "SYNC_MAX_WORKERS",
        "WATCH_POLL_INTERVAL",
        "WATCH_HEALTH_INTERVAL",
        "WATCH_WINDOW_SECONDS",
        "WATCH_CONNECT_TIMEOUT",
    )
    @classmethod
    def validate_positive(cls, v):
        """Timeouts, intervals and pool sizes must be positive"""
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("DEVICE_DEFAULT_PORT")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate DEVICE_DEFAULT_PORT"""
        if not 0 < v < 65536:
            raise ValueError("DEVICE_DEFAULT_PORT must be between 1 and 65535")
        return v

    def validate_production(self) -> None:
        """
        Validate settings for production environment

        Raises:
            ValueError: If production settings are invalid
        """
        if self.APP_ENV == "prod":
            # JWT_SECRET_KEY must be at least 32 characters in production
            if len(self.JWT_SECRET_KEY) < 32:
                raise ValueError(
                    "JWT_SECRET_KEY must be at least 32 characters in production environment"
                )

            # ALLOWED_ORIGINS must not be wildcard in production
            if self.ALLOWED_ORIGINS == "*" or not self.ALLOWED_ORIGINS:
                raise ValueError(
                    "ALLOWED_ORIGINS must be explicitly set (not '*') in production environment"
                )

    def get_allowed_origins_list(self) -> List[str]:
        """
        Get list of allowed CORS origins

        Returns:
            List of allowed origins (or ['*'] for local)
        """
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]


# Create settings instance
settings = Settings()

# Validate production settings if in prod
if settings.APP_ENV == "prod":
    settings.validate_production()
