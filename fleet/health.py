from __future__ import annotations

import copy
import time
from contextlib import contextmanager
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterator

from .breaker import CircuitBreakers
from .config import OrchestratorConfig
from .db import Store
from .errors import HealthCheckTimeout, NotFound, ProvisioningFailure
from .loops import ControlLoop
from .metrics import is_fresh
from .models import HealthCheckResult, Instance, Service
from .provisioning import Prober, Provisioning, run_with_timeout
from .registry import ServiceRegistry
from .tracing import Tracer


@dataclass(frozen=True)
class ProbeOutcome:
    ok: bool
    message: str
    latency_ms: float | None
    timed_out: bool = False


def derive_status(service: Service) -> tuple[str, float]:
    """Return (status, availability %) from the instances' current status."""
    total = len(service.instances)
    healthy = len(service.healthy_instances())
    if healthy == 0:
        status = "unhealthy"
    elif healthy < total:
        status = "degraded"
    else:
        status = "healthy"
    availability = round(healthy / total * 100.0, 2) if total else 0.0
    return status, availability


class HealthChecker(ControlLoop):
    """Probes every instance, derives service status, heals and scales.

    One ``tick()`` per monitoring interval; a service is only checked once its
    own ``health_check_interval_s`` has passed since its last check:
      1) probe instances (bounded by the service health-check timeout)
      2) update instance health and derived service status/availability
      3) replace instances that keep failing (self-healing)
      4) keep the instance count within [min, max], then auto-scale on
         mean CPU/memory with per-direction cooldowns
    """

    name = "health"

    def __init__(
        self,
        registry: ServiceRegistry,
        prober: Prober,
        provisioning: Provisioning,
        breakers: CircuitBreakers,
        config: Callable[[], OrchestratorConfig],
        events: Store,
        tracer: Tracer,
        pool: Executor,
        deployment_active: Callable[[str], bool] = lambda service_id: False,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(events, lambda: config().monitoring.interval_s)
        self.registry = registry
        self.prober = prober
        self.provisioning = provisioning
        self.breakers = breakers
        self.config = config
        self.tracer = tracer
        self.pool = pool
        self.deployment_active = deployment_active
        self.clock = clock
        self._lock = Lock()
        self._last_check: dict[str, float] = {}
        self._last_scale_up: dict[str, float] = {}
        self._last_scale_down: dict[str, float] = {}
        self._scaling: dict[str, Lock] = {}

    def tick(self) -> None:
        now = self.clock()
        for service_id in self.registry.service_ids():
            try:
                if not self._due(service_id, now):
                    continue
                with self.tracer.span("health.check", service_id=service_id):
                    self.check_service(service_id)
                with self.tracer.span("health.autoscale", service_id=service_id) as span:
                    span["action"] = self.autoscale(service_id)
            except NotFound:
                # deregistered mid-tick
                continue

    def _due(self, service_id: str, now: float) -> bool:
        interval = self.registry.get(service_id).config.health_check_interval_s
        with self._lock:
            last = self._last_check.get(service_id)
            if last is not None and now - last < interval:
                return False
            self._last_check[service_id] = now
            return True

    # -- probing -----------------------------------------------------------

    def probe(self, service: Service, inst: Instance) -> ProbeOutcome:
        timeout_s = service.config.health_check_timeout_s
        try:
            ok, msg, latency = run_with_timeout(
                self.pool, self.prober.probe, timeout_s, inst, service.endpoints.health, timeout_s
            )
            return ProbeOutcome(ok, msg, latency)
        except FutureTimeout:
            err = HealthCheckTimeout(f"Probe of {inst.id} exceeded {timeout_s}s")
            return ProbeOutcome(False, str(err), None, timed_out=True)
        except Exception as e:
            return ProbeOutcome(False, f"Error: {type(e).__name__}: {e}", None)

    def check_service(self, service_id: str) -> str:
        cfg = self.config()
        snapshot = self.registry.get(service_id)
        outcomes = {i.id: self.probe(snapshot, i) for i in snapshot.instances if i.status != "stopping"}

        transitions: list[tuple[str, str, str, str, str]] = []
        to_replace: list[Instance] = []
        now = self.clock()
        with self.registry.locked(service_id) as svc:
            for inst in svc.instances:
                outcome = outcomes.get(inst.id)
                if outcome is None:
                    continue
                prev = inst.status
                self._apply(inst, outcome, cfg.health.unhealthy_threshold, now)
                if prev != inst.status and inst.status in {"healthy", "unhealthy"}:
                    transitions.append((prev, inst.status, inst.id, inst.version, outcome.message))
                if (
                    cfg.health.self_heal
                    and not outcome.ok
                    and inst.health.consecutive_failures >= cfg.health.restart_threshold
                ):
                    to_replace.append(inst)
            svc.status, svc.metrics.availability_percent = derive_status(svc)
            status, name = svc.status, svc.name
            to_replace = [copy.deepcopy(i) for i in to_replace]

        for prev, current, iid, iversion, message in transitions:
            if current == "unhealthy":
                self.events.log_event("WARN", f"Instance {iid} became unhealthy: {message}", name, iversion)
            elif prev == "unhealthy":
                self.events.log_event("INFO", f"Instance {iid} recovered", name, iversion)

        for o in outcomes.values():
            if o.timed_out:
                self.breakers.record_failure(service_id)

        if to_replace and not self.deployment_active(service_id):
            for inst in to_replace:
                self._replace(service_id, inst)
        return status

    @staticmethod
    def _apply(inst: Instance, outcome: ProbeOutcome, unhealthy_threshold: int, now: float) -> None:
        h = inst.health
        if outcome.latency_ms is not None:
            h.response_time_ms = outcome.latency_ms
        if outcome.ok:
            h.consecutive_failures = 0
            inst.status = "healthy"
            if inst.lifecycle.ready_time is None:
                inst.lifecycle.ready_time = now
        else:
            h.consecutive_failures += 1
            if h.consecutive_failures >= unhealthy_threshold:
                inst.status = "unhealthy"
        h.record(
            HealthCheckResult(
                name="http-check",
                status="pass" if outcome.ok else "fail",
                message=outcome.message,
                timestamp=now,
            )
        )

    def _replace(self, service_id: str, old: Instance) -> None:
        svc = self.registry.get(service_id)
        self.events.log_event(
            "ERROR",
            f"Self-healing: replacing {old.id} after {old.health.consecutive_failures} failed checks",
            svc.name,
            old.version,
        )
        try:
            new = self.provisioning.create(svc, old.version)
        except ProvisioningFailure as e:
            self.events.log_event("ERROR", f"Self-healing failed: {e}", svc.name, old.version)
            return
        new.lifecycle.restart_count = old.lifecycle.restart_count + 1
        new.lifecycle.last_restart = self.clock()
        self.registry.add_instance(service_id, new)
        self._destroy(svc, old.id)

    # -- scaling -----------------------------------------------------------

    @contextmanager
    def scaling_lock(self, service_id: str) -> Iterator[None]:
        """Serialize scaling decisions (auto and manual) for one service."""
        with self._lock:
            lock = self._scaling.setdefault(service_id, Lock())
        with lock:
            yield

    def autoscale(self, service_id: str) -> str | None:
        """Apply at most one scaling action to the service; return "up", "down" or None."""
        if self.deployment_active(service_id):
            return None
        with self.scaling_lock(service_id):
            return self._autoscale(service_id)

    def _autoscale(self, service_id: str) -> str | None:
        cfg = self.config()
        svc = self.registry.get(service_id)
        count = len(svc.instances)
        lo, hi = svc.config.min_instances, svc.config.max_instances

        if count < lo:
            return "up" if self._scale_up(svc, f"below minimum ({count} < {lo})") else None
        if count > hi:
            return "down" if self._scale_down(svc, f"above maximum ({count} > {hi})") else None
        if not cfg.scaling.enabled:
            return None

        now = self.clock()
        fresh = [i for i in svc.instances if is_fresh(i, now, cfg.scaling.staleness_s)]
        if not fresh:
            # utilization unknown this tick
            return None
        avg_cpu = sum(i.metrics.cpu for i in fresh) / len(fresh)
        avg_mem = sum(i.metrics.memory for i in fresh) / len(fresh)
        target_cpu, target_mem = svc.config.target_cpu, svc.config.target_memory

        if (avg_cpu > target_cpu or avg_mem > target_mem) and count < hi:
            with self._lock:
                last = self._last_scale_up.get(service_id)
                if last is not None and now - last < cfg.scaling.scale_up_cooldown_s:
                    return None
            if self._scale_up(svc, f"cpu {avg_cpu:.1f}% / memory {avg_mem:.1f}%"):
                with self._lock:
                    self._last_scale_up[service_id] = now
                return "up"
            return None

        if avg_cpu < target_cpu * 0.5 and avg_mem < target_mem * 0.5 and count > lo:
            with self._lock:
                last = self._last_scale_down.get(service_id)
                if last is not None and now - last < cfg.scaling.scale_down_cooldown_s:
                    return None
            if self._scale_down(svc, f"cpu {avg_cpu:.1f}% / memory {avg_mem:.1f}%"):
                with self._lock:
                    self._last_scale_down[service_id] = now
                return "down"
        return None

    def forget(self, service_id: str) -> None:
        with self._lock:
            self._last_check.pop(service_id, None)
            self._last_scale_up.pop(service_id, None)
            self._last_scale_down.pop(service_id, None)
            self._scaling.pop(service_id, None)

    def _scale_up(self, svc: Service, reason: str) -> bool:
        count = len(svc.instances)
        try:
            inst = self.provisioning.create(svc, svc.version)
        except ProvisioningFailure as e:
            self.events.log_event("ERROR", f"Scale up failed: {e}", svc.name, svc.version)
            return False
        self.registry.add_instance(svc.id, inst)
        self.events.log_event("INFO", f"Scaling up {svc.name}: {count} -> {count + 1} ({reason})", svc.name, svc.version)
        return True

    def _scale_down(self, svc: Service, reason: str) -> bool:
        if not svc.instances:
            return False
        count = len(svc.instances)
        victim = least_utilized(svc.instances)
        if self.registry.remove_instance(victim.id) is None:
            return False
        self.events.log_event("INFO", f"Scaling down {svc.name}: {count} -> {count - 1} ({reason})", svc.name, svc.version)
        self._destroy(svc, victim.id)
        return True

    def _destroy(self, svc: Service, instance_id: str) -> None:
        self.registry.remove_instance(instance_id)
        try:
            self.provisioning.destroy(instance_id, svc.config.graceful_shutdown_timeout_s)
        except ProvisioningFailure as e:
            self.events.log_event("ERROR", str(e), svc.name, svc.version)


def least_utilized(instances: list[Instance]) -> Instance:
    return min(instances, key=lambda i: (i.utilization, i.metrics.cpu, i.id))
