"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from datetime import timedelta
from typing import List, Optional

from pydantic import Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dbcluster.config.reconciler import ReconcilerConfig


class Settings(BaseSettings):
    """Main application settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="DB Cluster Operator", description="Application name")
    app_version: str = Field(default="0.4.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server (health and metrics only)
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, ge=1, le=65535, description="Server port")
    prometheus_enabled: bool = Field(default=True, description="Expose Prometheus metrics on /metrics")

    # Redis (leader election)
    redis_url: RedisDsn = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")
    leader_lease_duration: int = Field(default=30, ge=5, le=300, description="Leader lease duration in seconds")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: Optional[str] = Field(
        default=None, description="Namespace to watch for clusters (None for all namespaces)"
    )
    cluster_group: str = Field(default="dbcluster.io", description="API group of the cluster resources")
    cluster_version: str = Field(default="v1alpha1", description="API version of the cluster resources")
    cluster_plural: str = Field(default="dbclusters", description="Plural name of the cluster resource")
    backup_plural: str = Field(default="physicalbackups", description="Plural name of the backup resource")

    # Reconciler
    default_requeue_interval: int = Field(
        default=300, ge=10, le=3600, description="Long requeue interval in seconds for drift detection"
    )
    resync_interval: int = Field(default=60, ge=5, le=3600, description="Seconds between full resyncs")
    max_concurrent_reconciles: int = Field(
        default=4, ge=1, le=64, description="Reconcile passes allowed to run concurrently"
    )
    error_backoff_initial: float = Field(default=1.0, ge=0.1, description="Initial error backoff in seconds")
    error_backoff_max: float = Field(default=300.0, ge=1.0, description="Maximum error backoff in seconds")
    automatic_failover_delay: int = Field(
        default=0, ge=0, description="Default seconds to wait before promoting a new primary"
    )
    replica_error_duration_threshold: int = Field(
        default=300, ge=0, description="Default seconds a replica error may last before recovery"
    )
    non_recoverable_io_error_codes: List[int] = Field(
        default=[1236], description="Replica I/O error codes that trigger recovery straight away"
    )
    volume_termination_timeout: int = Field(default=120, ge=1, description="Seconds to wait for a PVC to be gone")
    pod_initializing_timeout: int = Field(default=120, ge=1, description="Seconds to wait for a Pod to initialize")
    replication_configured_timeout: int = Field(
        default=60, ge=1, description="Seconds to wait for replication to be configured"
    )
    replica_recovered_timeout: int = Field(
        default=60, ge=1, description="Seconds to wait for a recovered replica to report no errors"
    )
    database_client_timeout: float = Field(
        default=3.0, ge=0.1, description="Seconds before a database probe is considered unreachable"
    )
    conflict_retries: int = Field(default=5, ge=1, le=20, description="Retries on resourceVersion conflicts")

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
        valid_envs = ["development", "testing", "staging", "production"]
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

    def reconciler_config(self) -> ReconcilerConfig:
        """Build the reconciler configuration injected into the controllers."""
        return ReconcilerConfig(
            default_requeue_interval=timedelta(seconds=self.default_requeue_interval),
            automatic_failover_delay=timedelta(seconds=self.automatic_failover_delay),
            replica_error_duration_threshold=timedelta(seconds=self.replica_error_duration_threshold),
            non_recoverable_io_error_codes=frozenset(self.non_recoverable_io_error_codes),
            volume_termination_timeout=timedelta(seconds=self.volume_termination_timeout),
            pod_initializing_timeout=timedelta(seconds=self.pod_initializing_timeout),
            replication_configured_timeout=timedelta(seconds=self.replication_configured_timeout),
            replica_recovered_timeout=timedelta(seconds=self.replica_recovered_timeout),
            database_client_timeout=timedelta(seconds=self.database_client_timeout),
            conflict_retries=self.conflict_retries,
        )


# Global settings instance
settings = Settings()
