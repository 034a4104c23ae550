from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Callable, Iterator

from .balancer import LoadBalancer
from .breaker import CircuitBreakers
from .config import OrchestratorConfig
from .db import ConfigStore, SqliteSpanSink, Store
from .deployments import DeploymentManager, DeploySpec, DeploymentWorker
from .discovery import ServiceDiscovery
from .errors import DeploymentConflict, NotFound, ProvisioningFailure
from .health import HealthChecker, least_utilized
from .metrics import MetricsCollector, MetricsFeed, is_fresh
from .models import (
    SERVICE_CATEGORIES,
    STRATEGIES,
    Deployment,
    Endpoints,
    Instance,
    MetricsSample,
    Service,
    ServiceConfig,
    new_id,
)
from .provisioning import (
    Prober,
    Provisioner,
    Provisioning,
    validate_health_path,
    validate_service_name,
    validate_version,
)
from .registry import ServiceRegistry
from .tracing import Tracer


@dataclass
class ServiceSpec:
    """Registration request for a new service."""

    name: str
    version: str = "1.0.0"
    category: str = "core"
    replicas: int | None = None
    config: ServiceConfig = field(default_factory=ServiceConfig)
    endpoints: Endpoints = field(default_factory=Endpoints)
    required_dependencies: list[str] = field(default_factory=list)
    optional_dependencies: list[str] = field(default_factory=list)
    strategy: str | None = None


class Orchestrator:
    """Control plane facade.

    Owns the registry, routing (balancer + breakers + discovery), the
    deployment manager and the three background loops. Built once per process
    and passed around explicitly.
    """

    def __init__(
        self,
        store: Store,
        provisioner: Provisioner,
        prober: Prober,
        feed: MetricsFeed,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        workers: int = 8,
        trace_queue_size: int = 1000,
        deployment_poll_s: float = 1.0,
    ):
        self.store = store
        self.store.init_db()
        self.config_store = ConfigStore(store)
        self._config = self.config_store.load()
        self._config_lock = Lock()
        self.clock = clock

        self.pool = ThreadPoolExecutor(max_workers=max(2, workers), thread_name_prefix="fleet-call")
        self.tracer = Tracer(SqliteSpanSink(store), queue_size=trace_queue_size)
        self.registry = ServiceRegistry(clock)
        self.balancer = LoadBalancer(self.registry, self._config.load_balancing)
        self.breakers = CircuitBreakers(self.balancer, self._config.circuit_breaker, clock)
        self.provisioning = Provisioning(provisioner, self._config.provisioning, self.pool)
        self.prober = prober
        self.discovery = ServiceDiscovery(self.registry, lambda: self.config.load_balancing)
        self.deployments = DeploymentManager(
            self.registry,
            self.provisioning,
            prober,
            lambda: self.config,
            store,
            self.tracer,
            self.pool,
            clock=clock,
            sleep=sleep,
        )
        self.health = HealthChecker(
            self.registry,
            prober,
            self.provisioning,
            self.breakers,
            lambda: self.config,
            store,
            self.tracer,
            self.pool,
            deployment_active=self.deployments.is_active,
            clock=clock,
        )
        self.metrics = MetricsCollector(self.registry, feed, lambda: self.config, store, self.tracer, clock)
        self.worker = DeploymentWorker(self.deployments, store, deployment_poll_s)

    @property
    def config(self) -> OrchestratorConfig:
        with self._config_lock:
            return self._config

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self.tracer.start()
        self.health.start()
        self.metrics.start()
        self.worker.start()
        self.store.log_event("INFO", "Orchestrator started")

    def stop(self) -> None:
        self.worker.stop()
        self.metrics.stop()
        self.health.stop()
        self.tracer.stop()
        self.pool.shutdown(wait=False, cancel_futures=True)
        self.store.log_event("INFO", "Orchestrator stopped")

    # -- services ----------------------------------------------------------

    def register_service(self, spec: ServiceSpec) -> Service:
        validate_service_name(spec.name)
        validate_version(spec.version)
        validate_health_path(spec.endpoints.health)
        if spec.category not in SERVICE_CATEGORIES:
            raise ValueError(f"Unknown service category '{spec.category}'")
        if spec.strategy is not None and spec.strategy not in STRATEGIES:
            raise ValueError(f"Unknown deployment strategy '{spec.strategy}'")
        sc = spec.config
        if sc.min_instances < 0 or sc.max_instances < 1 or sc.min_instances > sc.max_instances:
            raise ValueError("Instance bounds must satisfy 0 <= min_instances <= max_instances and max_instances >= 1")
        replicas = spec.replicas if spec.replicas is not None else max(sc.min_instances, 1)
        if not (sc.min_instances <= replicas <= sc.max_instances):
            raise ValueError(f"replicas must be within [{sc.min_instances}, {sc.max_instances}]")

        svc = Service(
            id=new_id("svc"),
            name=spec.name,
            version=spec.version,
            category=spec.category,
            config=sc,
            endpoints=spec.endpoints,
            required_dependencies=list(spec.required_dependencies),
            optional_dependencies=list(spec.optional_dependencies),
            created_at=self.clock(),
        )
        svc.deployment.strategy = spec.strategy or self.config.deployment.default_strategy
        self.registry.register(svc)

        with self.tracer.span("service.register", service=spec.name, replicas=replicas):
            try:
                for _ in range(replicas):
                    inst = self.provisioning.create(self.registry.get(svc.id), spec.version)
                    self.registry.add_instance(svc.id, inst)
            except ProvisioningFailure as e:
                self.store.log_event("ERROR", f"Registration failed: {e}", spec.name, spec.version)
                self._teardown(svc.id)
                raise

        self.health.check_service(svc.id)
        self.store.log_event("INFO", f"Registered service with {replicas} instances", spec.name, spec.version)
        return self.registry.get(svc.id)

    def deregister_service(self, service_id: str) -> Service:
        svc = self._teardown(service_id)
        self.store.log_event("INFO", "Deregistered service", svc.name, svc.version)
        return svc

    def _teardown(self, service_id: str) -> Service:
        self.deployments.forget_service(service_id)
        svc = self.registry.deregister(service_id)
        for inst in svc.instances:
            try:
                self.provisioning.destroy(inst.id, svc.config.graceful_shutdown_timeout_s)
            except ProvisioningFailure as e:
                self.store.log_event("ERROR", str(e), svc.name, inst.version)
        self.breakers.discard(service_id)
        self.health.forget(service_id)
        return svc

    def get_service(self, service_id: str) -> Service:
        return self.registry.get(service_id)

    def list_services(self) -> list[Service]:
        return self.registry.list_services()

    # -- deployments -------------------------------------------------------

    def deploy(self, service_id: str, spec: DeploySpec) -> str:
        return self.deployments.deploy(service_id, spec)

    def rollback(self, deployment_id: str) -> Deployment:
        return self.deployments.rollback(deployment_id)

    def cancel_deployment(self, deployment_id: str) -> Deployment:
        return self.deployments.cancel(deployment_id)

    def get_deployment(self, deployment_id: str) -> Deployment:
        return self.deployments.get(deployment_id)

    def list_deployments(self, service_id: str | None = None) -> list[Deployment]:
        return self.deployments.list(service_id)

    # -- scaling -----------------------------------------------------------

    def scale(self, service_id: str, replicas: int) -> Service:
        """Set the instance count directly; scale-down removes least-utilized instances."""
        svc = self.registry.get(service_id)
        lo, hi = svc.config.min_instances, svc.config.max_instances
        if not (lo <= replicas <= hi):
            raise ValueError(f"replicas must be within [{lo}, {hi}], got {replicas}")

        with self._no_deployment(service_id), self.health.scaling_lock(service_id):
            svc = self.registry.get(service_id)
            current = len(svc.instances)
            if replicas > current:
                for _ in range(replicas - current):
                    inst = self.provisioning.create(svc, svc.version)
                    self.registry.add_instance(service_id, inst)
                self.health.check_service(service_id)
            elif replicas < current:
                remaining = list(svc.instances)
                victims: list[Instance] = []
                for _ in range(current - replicas):
                    victim = least_utilized(remaining)
                    remaining.remove(victim)
                    victims.append(victim)
                self.registry.remove_instances(service_id, [v.id for v in victims])
                for v in victims:
                    self.provisioning.destroy(v.id, svc.config.graceful_shutdown_timeout_s)
            self.store.log_event("INFO", f"Scaled {current} -> {replicas} instances", svc.name, svc.version)
        return self.registry.get(service_id)

    @contextmanager
    def _no_deployment(self, service_id: str) -> Iterator[None]:
        if self.deployments.is_active(service_id):
            raise DeploymentConflict(f"A deployment is active for service {service_id}")
        with self.deployments.exclusive():
            if self.deployments.is_active(service_id):
                raise DeploymentConflict(f"A deployment is active for service {service_id}")
            yield

    # -- health / metrics --------------------------------------------------

    def get_health(self, service_id: str) -> dict[str, Any]:
        svc = self.registry.get(service_id)
        return {
            "service_id": svc.id,
            "name": svc.name,
            "status": svc.status,
            "availability_percent": svc.metrics.availability_percent,
            "circuit_breaker": self.breakers.status(service_id),
            "instances": [
                {
                    "id": i.id,
                    "status": i.status,
                    "version": i.version,
                    "consecutive_failures": i.health.consecutive_failures,
                    "response_time_ms": i.health.response_time_ms,
                    "last_check": i.health.last_check,
                    "checks": [
                        {"name": c.name, "status": c.status, "message": c.message, "timestamp": c.timestamp}
                        for c in i.health.checks
                    ],
                }
                for i in svc.instances
            ],
        }

    def get_metrics(self, service_id: str) -> dict[str, Any]:
        svc = self.registry.get(service_id)
        now = self.clock()
        staleness = self.config.scaling.staleness_s
        m = svc.metrics
        return {
            "service_id": svc.id,
            "name": svc.name,
            "requests_per_second": m.requests_per_second,
            "average_response_time_ms": m.average_response_time_ms,
            "error_rate": m.error_rate,
            "availability_percent": m.availability_percent,
            "total_requests": m.total_requests,
            "total_errors": m.total_errors,
            "instances": [
                {
                    "id": i.id,
                    "cpu": i.metrics.cpu,
                    "memory": i.metrics.memory,
                    "connections": i.metrics.connections,
                    "requests_per_second": i.metrics.requests_per_second,
                    "error_rate": i.metrics.error_rate,
                    "fresh": is_fresh(i, now, staleness),
                }
                for i in svc.instances
            ],
        }

    def record_metrics(self, instance_id: str, sample: MetricsSample) -> None:
        self.registry.record_metrics(instance_id, sample)

    def global_metrics(self) -> dict[str, Any]:
        services = self.registry.list_services()
        instances = [i for s in services for i in s.instances]
        by_status: dict[str, int] = {}
        for s in services:
            by_status[s.status] = by_status.get(s.status, 0) + 1
        inst_by_status: dict[str, int] = {}
        for i in instances:
            inst_by_status[i.status] = inst_by_status.get(i.status, 0) + 1
        deployments: dict[str, int] = {}
        for d in self.deployments.list():
            deployments[d.status] = deployments.get(d.status, 0) + 1
        n = len(services)
        return {
            "services": {"total": n, **by_status},
            "instances": {"total": len(instances), **inst_by_status},
            "requests_per_second": round(sum(s.metrics.requests_per_second for s in services), 3),
            "average_response_time_ms": (
                round(sum(s.metrics.average_response_time_ms for s in services) / n, 3) if n else 0.0
            ),
            "error_rate": round(sum(s.metrics.error_rate for s in services) / n, 3) if n else 0.0,
            "deployments": deployments,
            "traces_dropped": self.tracer.dropped,
        }

    # -- routing -----------------------------------------------------------

    def resolve(self, service_name: str) -> list[str]:
        with self.tracer.span("discovery.resolve", service=service_name) as span:
            endpoints = self.discovery.resolve(service_name)
            span["endpoints"] = len(endpoints)
            return endpoints

    def call(self, service_id: str, operation: Callable[[Instance], Any], session_key: str | None = None) -> Any:
        """Run ``operation`` against one instance picked by the balancer, behind the breaker."""
        if not self.registry.exists(service_id):
            raise NotFound(f"Unknown service '{service_id}'")
        with self.tracer.span("routing.call", service_id=service_id):
            return self.breakers.call(service_id, operation, session_key=session_key)

    # -- configuration -----------------------------------------------------

    def update_configuration(self, partial: dict[str, Any]) -> OrchestratorConfig:
        """Deep-merge ``partial`` into the running config, persist it and apply it."""
        with self._config_lock:
            new = self._config.merged(partial)
            self.config_store.save(new)
            self._config = new
        self.balancer.update_config(new.load_balancing)
        self.breakers.update_config(new.circuit_breaker)
        self.provisioning.config = new.provisioning
        self.store.log_event("INFO", f"Configuration updated: {', '.join(sorted(partial)) or 'no changes'}")
        return new
