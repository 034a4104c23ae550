from __future__ import annotations

import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SERVICE_CATEGORIES = {"core", "feature", "utility", "integration"}
SERVICE_STATUSES = {"healthy", "degraded", "unhealthy", "starting", "stopping", "stopped"}
INSTANCE_STATUSES = {"healthy", "unhealthy", "starting", "stopping"}
STRATEGIES = {"rolling", "blue-green", "canary", "recreate"}
DEPLOYMENT_STATUSES = {"pending", "deploying", "deployed", "failed", "rollback"}
ACTIVE_DEPLOYMENT_STATUSES = {"pending", "deploying"}

HEALTH_HISTORY_SIZE = 10

# instance metadata flag: provisioned but not routable yet (blue-green green set)
STANDBY = "standby"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(6)}"


@dataclass(frozen=True)
class HealthCheckResult:
    name: str
    status: str  # pass|fail|warn
    message: str
    timestamp: float


@dataclass
class InstanceHealth:
    last_check: float = 0.0
    consecutive_failures: int = 0
    response_time_ms: float = 0.0
    checks: deque = field(default_factory=lambda: deque(maxlen=HEALTH_HISTORY_SIZE))

    def record(self, result: HealthCheckResult) -> None:
        self.checks.append(result)
        self.last_check = result.timestamp


@dataclass
class InstanceMetrics:
    cpu: float = 0.0
    memory: float = 0.0
    connections: int = 0
    requests_per_second: float = 0.0
    error_rate: float = 0.0
    sampled_at: float | None = None


@dataclass(frozen=True)
class MetricsSample:
    """One numeric sample for an instance, as delivered by a metrics feed."""

    cpu: float
    memory: float
    connections: int = 0
    requests_per_second: float = 0.0
    error_rate: float = 0.0
    response_time_ms: float | None = None


@dataclass
class Lifecycle:
    start_time: float = field(default_factory=time.time)
    ready_time: float | None = None
    last_restart: float | None = None
    restart_count: int = 0


@dataclass
class Instance:
    id: str
    service_id: str
    host: str
    port: int
    version: str
    weight: int = 100
    status: str = "starting"
    health: InstanceHealth = field(default_factory=InstanceHealth)
    metrics: InstanceMetrics = field(default_factory=InstanceMetrics)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f"http://{self.host}:{int(self.port)}"

    @property
    def utilization(self) -> float:
        return max(self.metrics.cpu, self.metrics.memory)


@dataclass
class ServiceConfig:
    min_instances: int = 1
    max_instances: int = 10
    target_cpu: float = 70.0
    target_memory: float = 80.0
    health_check_interval_s: float = 30.0
    health_check_timeout_s: float = 5.0
    graceful_shutdown_timeout_s: float = 30.0


@dataclass
class Endpoints:
    health: str = "/health"
    metrics: str = "/metrics"
    ready: str = "/ready"
    config: str = "/config"


@dataclass
class ServiceMetrics:
    requests_per_second: float = 0.0
    average_response_time_ms: float = 0.0
    error_rate: float = 0.0
    availability_percent: float = 100.0
    total_requests: int = 0
    total_errors: int = 0


@dataclass
class DeploymentInfo:
    strategy: str = "rolling"
    rollout_status: str = "stable"  # stable|deploying|rollback|failed
    current_deployment: str = "initial"
    previous_deployment: str | None = None


@dataclass
class Service:
    id: str
    name: str
    version: str = "1.0.0"
    category: str = "core"
    status: str = "starting"
    config: ServiceConfig = field(default_factory=ServiceConfig)
    required_dependencies: list[str] = field(default_factory=list)
    optional_dependencies: list[str] = field(default_factory=list)
    endpoints: Endpoints = field(default_factory=Endpoints)
    metrics: ServiceMetrics = field(default_factory=ServiceMetrics)
    deployment: DeploymentInfo = field(default_factory=DeploymentInfo)
    instances: list[Instance] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def healthy_instances(self) -> list[Instance]:
        return [i for i in self.instances if i.status == "healthy"]


@dataclass(frozen=True)
class HistoryEntry:
    timestamp: float
    action: str
    status: str
    message: str


@dataclass
class RolloutProgress:
    start_time: float | None = None
    completion_time: float | None = None
    current_replicas: int = 0
    target_replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0


@dataclass
class CanaryState:
    traffic_percent: float
    iteration: int = 0
    success_rate: float | None = None
    status: str = "running"  # running|success|failed|cancelled


@dataclass
class Deployment:
    id: str
    service_id: str
    version: str
    strategy: str
    replicas: int
    status: str = "pending"
    rollout: RolloutProgress = field(default_factory=RolloutProgress)
    canary: CanaryState | None = None
    history: list[HistoryEntry] = field(default_factory=list)
    previous_version: str | None = None
    previous_replicas: int = 0
    cancel_requested: bool = False
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_DEPLOYMENT_STATUSES

    def log(self, action: str, message: str, now: float | None = None) -> HistoryEntry:
        entry = HistoryEntry(
            timestamp=now if now is not None else time.time(),
            action=action,
            status=self.status,
            message=message,
        )
        self.history.append(entry)
        self.updated_at = entry.timestamp
        return entry
