"""Configuration management for the PolicyGuard operator."""

from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class Settings(BaseSettings):
    """Operator settings, read from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "PolicyGuard Controller"
    app_version: str = "0.1.0"
    environment: Environment = Environment.DEVELOPMENT

    # Namespace holding the generated policy server infrastructure
    namespace: str = Field("policyguard", description="Deployments namespace")
    policy_server_image: str = "ghcr.io/policyguard/policy-server:latest"

    # Scheduling
    worker_count: int = Field(3, ge=1)
    requeue_base_delay: float = Field(0.005, gt=0)  # seconds
    requeue_max_delay: float = Field(1000.0, gt=0)  # seconds

    # Logging
    log_level: LogLevel = LogLevel.INFO
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_json: bool = False

    # Metrics and probes
    metrics_enabled: bool = True
    metrics_port: int = 9090
    liveness_endpoint: Optional[str] = "http://0.0.0.0:8080/healthz"

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v):
        """Namespaces must be non-empty DNS labels."""
        v = v.strip()
        if not v:
            raise ValueError("namespace must not be empty")
        return v

    @field_validator("liveness_endpoint", mode="before")
    @classmethod
    def parse_liveness_endpoint(cls, v):
        """An empty string disables the liveness endpoint."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
