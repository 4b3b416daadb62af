from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class InstanceConfig(BaseModel):
    name: str = "tierflow"


class TelemetryConfig(BaseModel):
    log_level: str = "INFO"
    json_logs: bool = True


class DatabaseConfig(BaseModel):
    url: str = "sqlite:///tierflow.db"


class UpgradeConfig(BaseModel):
    max_transform_attempts: int = Field(default=3, ge=1)
    transform_backoff_seconds: float = Field(default=0.05, ge=0.0)
    step_timeout_seconds: int = Field(default=30, ge=1)
    auto_rollback: bool = True
    supported_intervals: list[str] = Field(default_factory=lambda: ["monthly", "yearly"])
    retained_sessions: int = Field(default=500, ge=0)


class SnapshotConfig(BaseModel):
    retention: Literal["archive", "discard"] = "archive"
    retention_days: int = Field(default=30, ge=0)


class MonitorConfig(BaseModel):
    poll_interval_seconds: float = Field(default=2.0, gt=0.0)


class BillingConfig(BaseModel):
    mode: Literal["sandbox", "http"] = "sandbox"
    base_url: str | None = None
    api_key_env: str = "TIERFLOW_BILLING_API_KEY"
    timeout_seconds: int = 20
    refund_attempts: int = Field(default=3, ge=1)


class ApiConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8090
    admin_token_env: str = "TIERFLOW_ADMIN_TOKEN"


class AppConfig(BaseModel):
    instance: InstanceConfig = Field(default_factory=InstanceConfig)
    environment: str = "dev"
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    upgrade: UpgradeConfig = Field(default_factory=UpgradeConfig)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    # Partial per-tier overrides merged over the built-in catalog.
    tiers: dict[str, dict[str, Any]] = Field(default_factory=dict)
