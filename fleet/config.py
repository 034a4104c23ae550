from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

Algorithm = Literal["round_robin", "least_connections", "weighted", "random", "ip_hash"]
Strategy = Literal["rolling", "blue-green", "canary", "recreate"]


class LoadBalancingConfig(BaseModel):
    algorithm: Algorithm = "least_connections"
    healthy_only: bool = True
    max_consecutive_failures: int = Field(3, ge=1, description="Jitter threshold for routable instances")
    session_affinity: bool = False


class CircuitBreakerConfig(BaseModel):
    enabled: bool = True
    failure_threshold: int = Field(5, ge=1)
    reset_timeout_s: float = Field(60.0, ge=0)
    half_open_max_requests: int = Field(3, ge=1)


class RollingUpdateConfig(BaseModel):
    max_surge: int = Field(1, ge=0)
    max_unavailable: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _can_make_progress(self) -> "RollingUpdateConfig":
        if self.max_surge == 0 and self.max_unavailable == 0:
            raise ValueError("max_surge and max_unavailable cannot both be 0")
        return self


class CanaryAnalysisConfig(BaseModel):
    interval_s: float = Field(60.0, ge=0)
    iterations: int = Field(10, ge=1)
    threshold: float = Field(0.95, ge=0, le=1)
    traffic_percent: float = Field(10.0, gt=0, le=100)


class DeploymentConfig(BaseModel):
    default_strategy: Strategy = "rolling"
    rolling_update: RollingUpdateConfig = Field(default_factory=RollingUpdateConfig)
    canary_analysis: CanaryAnalysisConfig = Field(default_factory=CanaryAnalysisConfig)
    readiness_timeout_s: float = Field(120.0, gt=0)
    readiness_poll_s: float = Field(2.0, ge=0)
    max_duration_s: float = Field(3600.0, gt=0)


class ProvisioningConfig(BaseModel):
    attempts: int = Field(3, ge=1)
    backoff_s: float = Field(0.5, ge=0)
    max_backoff_s: float = Field(10.0, ge=0)
    timeout_s: float = Field(30.0, gt=0)


class MonitoringConfig(BaseModel):
    enabled: bool = True
    interval_s: float = Field(10.0, gt=0)
    alerting: bool = True


class HealthConfig(BaseModel):
    unhealthy_threshold: int = Field(2, ge=1)
    self_heal: bool = True
    restart_threshold: int = Field(5, ge=1)


class ScalingConfig(BaseModel):
    enabled: bool = True
    scale_up_cooldown_s: float = Field(300.0, ge=0)
    scale_down_cooldown_s: float = Field(300.0, ge=0)
    staleness_s: float = Field(60.0, gt=0)


class OrchestratorConfig(BaseModel):
    """Runtime configuration of the control plane.

    Loaded from the configuration store at startup and saved back whenever it
    is updated through ``Orchestrator.update_configuration``.
    """

    load_balancing: LoadBalancingConfig = Field(default_factory=LoadBalancingConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    deployment: DeploymentConfig = Field(default_factory=DeploymentConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)

    def merged(self, partial: dict[str, Any]) -> "OrchestratorConfig":
        """Return a new config with ``partial`` deep-merged over this one."""
        return OrchestratorConfig.model_validate(_deep_merge(self.model_dump(), partial))


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out
