"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
import socket
import uuid
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="memcached-operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    log_level: str = Field(default="INFO", description="Logging level")
    instance_id: str = Field(
        default_factory=lambda: f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}",
        description="Identity of this operator replica in logs and leader election",
    )

    # Probe / metrics server
    host: str = Field(default="0.0.0.0", description="Probe server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Probe server port")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    kubeconfig_content: Optional[str] = Field(
        default=None, description="Base64-encoded kubeconfig, takes precedence over kubeconfig_path"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    k8s_verify_ssl: bool = Field(default=True, description="Verify API server certificates")
    watch_namespace: Optional[str] = Field(
        default=None, description="Namespace to watch (None watches all namespaces)"
    )
    watch_timeout_seconds: int = Field(default=300, ge=30, le=3600, description="Server-side watch timeout")

    # Memcached
    memcached_image_registry: str = Field(default="kubedb", description="Registry for memcached images")
    memcached_default_storage_class: Optional[str] = Field(
        default=None, description="Storage class used when spec.storage omits one"
    )

    # Reconciler
    reconcile_workers: int = Field(default=4, ge=1, le=64, description="Concurrent reconcile workers")
    resync_period_seconds: int = Field(default=300, ge=10, le=3600, description="Full resync interval")
    readiness_requeue_seconds: float = Field(default=5.0, ge=0.0, description="Requeue delay while waiting for readiness")
    terminating_requeue_seconds: float = Field(default=5.0, ge=0.0, description="Requeue delay after partial cleanup")
    backoff_base_seconds: float = Field(default=1.0, ge=0.0, description="Initial per-key failure backoff")
    backoff_max_seconds: float = Field(default=300.0, ge=1.0, description="Maximum per-key failure backoff")
    conflict_retry_attempts: int = Field(default=5, ge=1, le=20, description="Immediate retries on write conflicts")
    cleanup_verify_attempts: int = Field(default=4, ge=1, le=20, description="Re-list attempts per cleanup partition")
    cleanup_verify_delay_seconds: float = Field(default=0.5, ge=0.0, description="Initial delay between cleanup re-lists")
    cleanup_verify_max_delay_seconds: float = Field(default=4.0, ge=0.0, description="Maximum delay between cleanup re-lists")

    # Leader election (Redis)
    leader_election_enabled: bool = Field(default=False, description="Gate the controller on Redis leader election")
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")
    redis_connect_attempts: int = Field(default=10, ge=1, le=50, description="Redis connection attempts at startup")
    leader_lease_seconds: int = Field(default=30, ge=5, le=300, description="Leader lease duration")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development."""
        return self.environment == "development"


# Global settings instance
settings = Settings()
