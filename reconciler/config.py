from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_ANNOTATION_PREFIX = "reconciler.io"
_PROD_ENV_NAMES = {"prod", "production"}


class Settings(BaseSettings):
    app_name: str = Field(default="ClusterReconciler")
    app_env: str = Field(default="dev")
    app_version: str = Field(default="0.1.0")

    log_level: str = Field(default="INFO")
    log_file: str = Field(default="")

    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=8080)
    metrics_enabled: bool = Field(default=True)

    annotation_prefix: str = Field(default=DEFAULT_ANNOTATION_PREFIX)
    reconcile_interval_seconds: int = Field(default=120)
    worker_pool_size: int = Field(default=4)

    operation_timeout_ms: int = Field(default=300_000)
    roller_backoff_base_ms: int = Field(default=250)
    roller_backoff_factor: int = Field(default=2)
    roller_backoff_max_attempts: int = Field(default=10)
    roll_dependents_on_clients_ca_key: bool = Field(default=False)
    dependent_deployments: str = Field(default="entity-operator,exporter,cruise-control")

    operator_cert_validity_days: int = Field(default=30)
    operator_cert_renewal_days: int = Field(default=5)

    etcd_enabled: bool = Field(default=True)
    etcd_endpoints: str = Field(default="http://127.0.0.1:2379")
    etcd_prefix: str = Field(default="/reconciler")
    etcdctl_command: str = Field(default="etcdctl")
    etcd_dial_timeout_seconds: int = Field(default=5)
    etcd_command_timeout_seconds: int = Field(default=10)

    lxd_command: str = Field(default="lxc")
    lxd_project: str = Field(default="default")
    lxd_health_poll_seconds: float = Field(default=1.0)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_rollout_settings(self) -> "Settings":
        issues: list[str] = []
        if self.operation_timeout_ms <= 0:
            issues.append("OPERATION_TIMEOUT_MS must be positive.")
        if self.roller_backoff_base_ms <= 0:
            issues.append("ROLLER_BACKOFF_BASE_MS must be positive.")
        if self.roller_backoff_factor < 1:
            issues.append("ROLLER_BACKOFF_FACTOR must be at least 1.")
        if self.roller_backoff_max_attempts < 1:
            issues.append("ROLLER_BACKOFF_MAX_ATTEMPTS must be at least 1.")
        if self.worker_pool_size < 1:
            issues.append("WORKER_POOL_SIZE must be at least 1.")
        if not self.annotation_prefix.strip():
            issues.append("ANNOTATION_PREFIX must not be empty.")
        if self.app_env.strip().lower() in _PROD_ENV_NAMES and not self.etcd_endpoints.strip():
            issues.append("ETCD_ENDPOINTS must be set in production.")
        if issues:
            raise ValueError(" ".join(issues))
        return self

    def dependent_deployment_names(self) -> list[str]:
        return [item.strip() for item in self.dependent_deployments.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
