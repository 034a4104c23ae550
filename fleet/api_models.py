from __future__ import annotations

from dataclasses import asdict
from typing import Any, Optional

from pydantic import BaseModel, Field

from .config import Strategy
from .models import Deployment, Endpoints, Instance, MetricsSample, Service, ServiceConfig


class ServiceConfigModel(BaseModel):
    min_instances: int = Field(1, ge=0, le=100)
    max_instances: int = Field(10, ge=1, le=100)
    target_cpu: float = Field(70.0, gt=0, le=100)
    target_memory: float = Field(80.0, gt=0, le=100)
    health_check_interval_s: float = Field(30.0, gt=0)
    health_check_timeout_s: float = Field(5.0, gt=0, le=300)
    graceful_shutdown_timeout_s: float = Field(30.0, ge=0)

    def to_config(self) -> ServiceConfig:
        return ServiceConfig(**self.model_dump())


class RegisterServiceRequest(BaseModel):
    name: str = Field(..., description="Logical service name (dns-safe)")
    version: str = Field("1.0.0", description="Version label, e.g. 1.0.0, v2")
    category: str = Field("core", description="core|feature|utility|integration")
    replicas: Optional[int] = Field(None, ge=0, le=100, description="Initial instances (defaults to min_instances)")
    health_path: str = Field("/health", description="Health endpoint path")
    metrics_path: str = Field("/metrics", description="Metrics endpoint path")
    config: ServiceConfigModel = Field(default_factory=ServiceConfigModel)
    required_dependencies: list[str] = Field(default_factory=list)
    optional_dependencies: list[str] = Field(default_factory=list)
    strategy: Optional[Strategy] = None

    def endpoints(self) -> Endpoints:
        return Endpoints(health=self.health_path, metrics=self.metrics_path)


class DeployRequest(BaseModel):
    version: str
    strategy: Optional[Strategy] = None
    replicas: Optional[int] = Field(None, ge=1, le=100)
    canary_percent: Optional[float] = Field(None, gt=0, le=100)


class ScaleRequest(BaseModel):
    replicas: int = Field(..., ge=0, le=100)


class MetricsSampleRequest(BaseModel):
    cpu: float = Field(..., ge=0, le=100)
    memory: float = Field(..., ge=0, le=100)
    connections: int = Field(0, ge=0)
    requests_per_second: float = Field(0.0, ge=0)
    error_rate: float = Field(0.0, ge=0, le=100)
    response_time_ms: Optional[float] = Field(None, ge=0)

    def to_sample(self) -> MetricsSample:
        return MetricsSample(**self.model_dump())


def instance_view(inst: Instance) -> dict[str, Any]:
    return {
        "id": inst.id,
        "service_id": inst.service_id,
        "address": inst.address,
        "host": inst.host,
        "port": inst.port,
        "version": inst.version,
        "weight": inst.weight,
        "status": inst.status,
        "health": {
            "last_check": inst.health.last_check,
            "consecutive_failures": inst.health.consecutive_failures,
            "response_time_ms": inst.health.response_time_ms,
        },
        "metrics": asdict(inst.metrics),
        "lifecycle": asdict(inst.lifecycle),
        "metadata": dict(inst.metadata),
    }


def service_view(svc: Service) -> dict[str, Any]:
    return {
        "id": svc.id,
        "name": svc.name,
        "version": svc.version,
        "category": svc.category,
        "status": svc.status,
        "config": asdict(svc.config),
        "dependencies": {"required": list(svc.required_dependencies), "optional": list(svc.optional_dependencies)},
        "endpoints": asdict(svc.endpoints),
        "metrics": asdict(svc.metrics),
        "deployment": asdict(svc.deployment),
        "instances": [instance_view(i) for i in svc.instances],
        "created_at": svc.created_at,
        "updated_at": svc.updated_at,
    }


def deployment_view(dep: Deployment) -> dict[str, Any]:
    d = asdict(dep)
    d["active"] = dep.active
    return d
