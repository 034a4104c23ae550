from __future__ import annotations

import copy
import math
import time
from collections import deque
from contextlib import contextmanager
from concurrent.futures import Executor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Iterator, Protocol

from .config import OrchestratorConfig
from .db import Store
from .errors import DeploymentConflict, DeploymentFailed, NotFound
from .loops import ControlLoop
from .models import (
    STANDBY,
    STRATEGIES,
    CanaryState,
    Deployment,
    Instance,
    RolloutProgress,
    Service,
    new_id,
)
from .provisioning import Prober, Provisioning, run_with_timeout, validate_version
from .registry import ServiceRegistry
from .tracing import Tracer


class DeploymentCancelled(DeploymentFailed):
    pass


class CanaryAnalyzer(Protocol):
    def __call__(self, service: Service, canary_ids: list[str]) -> float: ...


def error_rate_analyzer(service: Service, canary_ids: list[str]) -> float:
    """Success rate of the canary subset: 1 - mean error rate."""
    wanted = set(canary_ids)
    canaries = [i for i in service.instances if i.id in wanted]
    if not canaries:
        return 0.0
    mean_error_pct = sum(i.metrics.error_rate for i in canaries) / len(canaries)
    return max(0.0, 1.0 - mean_error_pct / 100.0)


@dataclass
class DeploySpec:
    version: str
    strategy: str | None = None
    replicas: int | None = None
    canary_percent: float | None = None


@dataclass
class _Rollout:
    deployment_id: str
    service_id: str
    version: str
    replicas: int
    deadline: float
    cfg: OrchestratorConfig


class DeploymentManager:
    """Queues deployments and executes rollout strategies one at a time.

    Strategies: rolling, blue-green, canary (promotes through rolling) and
    recreate. A failed step leaves already created instances in place;
    ``rollback`` removes the deployment's instances and restores the previous
    version.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        provisioning: Provisioning,
        prober: Prober,
        config: Callable[[], OrchestratorConfig],
        events: Store,
        tracer: Tracer,
        pool: Executor,
        analyzer: CanaryAnalyzer = error_rate_analyzer,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.provisioning = provisioning
        self.prober = prober
        self.config = config
        self.events = events
        self.tracer = tracer
        self.pool = pool
        self.analyzer = analyzer
        self.clock = clock
        self.sleep = sleep
        self._lock = Lock()  # guards _deployments and _queue
        self._exec_lock = Lock()  # one rollout or rollback at a time
        self._deployments: dict[str, Deployment] = {}
        self._queue: deque[str] = deque()

    # -- public ------------------------------------------------------------

    def deploy(self, service_id: str, spec: DeploySpec) -> str:
        cfg = self.config()
        svc = self.registry.get(service_id)
        validate_version(spec.version)
        strategy = spec.strategy or cfg.deployment.default_strategy
        if strategy not in STRATEGIES:
            raise ValueError(f"Unknown deployment strategy '{strategy}'")
        replicas = spec.replicas if spec.replicas is not None else max(len(svc.instances), svc.config.min_instances, 1)
        if replicas < 1 or not (svc.config.min_instances <= replicas <= svc.config.max_instances):
            raise ValueError(
                f"replicas must be within [{max(1, svc.config.min_instances)}, {svc.config.max_instances}], got {replicas}"
            )

        now = self.clock()
        with self._lock:
            active = self._active_for(service_id)
            if active is not None:
                raise DeploymentConflict(
                    f"Deployment {active.id} is already {active.status} for service '{svc.name}'"
                )
            dep = Deployment(
                id=new_id("dep"),
                service_id=service_id,
                version=spec.version,
                strategy=strategy,
                replicas=replicas,
                rollout=RolloutProgress(current_replicas=len(svc.instances), target_replicas=replicas),
                previous_version=svc.version,
                previous_replicas=len(svc.instances),
                created_at=now,
                updated_at=now,
            )
            if strategy == "canary":
                pct = spec.canary_percent if spec.canary_percent is not None else cfg.deployment.canary_analysis.traffic_percent
                dep.canary = CanaryState(traffic_percent=float(pct))
            dep.log("created", "Deployment created", now)
            self._deployments[dep.id] = dep
            self._queue.append(dep.id)
        self.events.log_event(
            "INFO", f"Queued {strategy} deployment {dep.id} of {spec.version} ({replicas} replicas)", svc.name, spec.version
        )
        return dep.id

    def get(self, deployment_id: str) -> Deployment:
        with self._lock:
            dep = self._deployments.get(deployment_id)
            if dep is None:
                raise NotFound(f"Unknown deployment '{deployment_id}'")
            return copy.deepcopy(dep)

    def list(self, service_id: str | None = None) -> list[Deployment]:
        with self._lock:
            deps = [d for d in self._deployments.values() if service_id is None or d.service_id == service_id]
            return [copy.deepcopy(d) for d in sorted(deps, key=lambda d: d.created_at)]

    def is_active(self, service_id: str) -> bool:
        with self._lock:
            return self._active_for(service_id) is not None

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._queue)

    def cancel(self, deployment_id: str) -> Deployment:
        """Cancel a queued deployment, or ask a running one to stop after its current step."""
        with self._lock:
            dep = self._deployments.get(deployment_id)
            if dep is None:
                raise NotFound(f"Unknown deployment '{deployment_id}'")
            if dep.status == "pending":
                if deployment_id in self._queue:
                    self._queue.remove(deployment_id)
                dep.status = "failed"
                if dep.canary:
                    dep.canary.status = "cancelled"
                dep.log("cancelled", "Cancelled before start", self.clock())
            elif dep.status == "deploying":
                dep.cancel_requested = True
                dep.log("cancel_requested", "Cancellation requested; stopping after the current step", self.clock())
            else:
                raise DeploymentConflict(f"Deployment {deployment_id} is already {dep.status}")
            return copy.deepcopy(dep)

    def run_pending(self) -> int:
        """Execute queued deployments in FIFO order; return how many ran."""
        processed = 0
        while True:
            with self._lock:
                if not self._queue:
                    return processed
                deployment_id = self._queue.popleft()
            self.execute(deployment_id)
            processed += 1

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the execution lock so no rollout runs concurrently with the caller."""
        with self._exec_lock:
            yield

    def forget_service(self, service_id: str) -> None:
        with self._lock:
            for dep in self._deployments.values():
                if dep.service_id == service_id and dep.status == "pending":
                    if dep.id in self._queue:
                        self._queue.remove(dep.id)
                    dep.status = "failed"
                    dep.log("cancelled", "Service deregistered", self.clock())

    # -- execution ---------------------------------------------------------

    def execute(self, deployment_id: str) -> None:
        with self._exec_lock:
            cfg = self.config()
            now = self.clock()
            with self._lock:
                dep = self._deployments[deployment_id]
                if dep.status != "pending":
                    return
                dep.status = "deploying"
                dep.rollout.start_time = now
                dep.log("started", f"Deploying {dep.version} using {dep.strategy}", now)
                run = _Rollout(
                    deployment_id=dep.id,
                    service_id=dep.service_id,
                    version=dep.version,
                    replicas=dep.replicas,
                    deadline=now + cfg.deployment.max_duration_s,
                    cfg=cfg,
                )
                strategy = dep.strategy

            try:
                with self.registry.locked(run.service_id) as svc:
                    svc.deployment.strategy = strategy
                    svc.deployment.rollout_status = "deploying"
                    service_name = svc.name
                self.events.log_event("INFO", f"Deployment {run.deployment_id} started ({strategy})", service_name, run.version)
                with self.tracer.span("deployment.execute", deployment_id=run.deployment_id, strategy=strategy):
                    if strategy == "rolling":
                        self._rolling(run)
                    elif strategy == "blue-green":
                        self._blue_green(run)
                    elif strategy == "canary":
                        self._canary(run)
                    else:
                        self._recreate(run)
            except Exception as e:
                self._fail(run, e)
                return
            self._complete(run)

    def _complete(self, run: _Rollout) -> None:
        now = self.clock()
        with self._lock:
            dep = self._deployments[run.deployment_id]
            dep.status = "deployed"
            dep.rollout.completion_time = now
            dep.log("completed", f"Deployment of {run.version} completed", now)
        self._set_current_replicas(run)
        with self.registry.locked(run.service_id) as svc:
            svc.version = run.version
            svc.deployment.rollout_status = "stable"
            svc.deployment.previous_deployment = svc.deployment.current_deployment
            svc.deployment.current_deployment = run.deployment_id
            name = svc.name
        self.events.log_event("INFO", f"Deployment {run.deployment_id} completed", name, run.version)

    def _fail(self, run: _Rollout, error: Exception) -> None:
        now = self.clock()
        cancelled = isinstance(error, DeploymentCancelled)
        message = str(error) or type(error).__name__
        with self._lock:
            dep = self._deployments[run.deployment_id]
            dep.status = "failed"
            dep.rollout.completion_time = now
            if dep.canary and dep.canary.status == "running":
                dep.canary.status = "cancelled" if cancelled else "failed"
            dep.log("cancelled" if cancelled else "failed", message, now)
        name = None
        try:
            with self.registry.locked(run.service_id) as svc:
                svc.deployment.rollout_status = "failed"
                name = svc.name
            self._set_current_replicas(run)
        except NotFound:
            pass
        self.events.log_event("ERROR", f"Deployment {run.deployment_id} failed: {message}", name, run.version)

    # -- unit steps --------------------------------------------------------

    def _checkpoint(self, run: _Rollout) -> None:
        with self._lock:
            cancel = self._deployments[run.deployment_id].cancel_requested
        if cancel:
            raise DeploymentCancelled("Deployment cancelled")
        if self.clock() > run.deadline:
            raise DeploymentFailed(f"Deployment exceeded {run.cfg.deployment.max_duration_s}s")

    def _bump(self, run: _Rollout, updated: int = 0, ready: int = 0) -> None:
        with self._lock:
            r = self._deployments[run.deployment_id].rollout
            r.updated_replicas += updated
            r.ready_replicas += ready

    def _set_current_replicas(self, run: _Rollout) -> None:
        count = len(self.registry.get(run.service_id).instances)
        with self._lock:
            self._deployments[run.deployment_id].rollout.current_replicas = count

    def _create(self, run: _Rollout, standby: bool = False) -> Instance:
        svc = self.registry.get(run.service_id)
        inst = self.provisioning.create(svc, run.version)
        inst.status = "starting"
        if standby:
            inst.metadata[STANDBY] = True
        self.registry.add_instance(run.service_id, inst)
        self._bump(run, updated=1)
        self._set_current_replicas(run)
        return inst

    def _wait_ready(self, run: _Rollout, inst: Instance, promote: bool = True) -> None:
        """Poll the instance until it answers healthy, bounded by the readiness timeout."""
        cfg = run.cfg.deployment
        svc = self.registry.get(run.service_id)
        timeout_s = svc.config.health_check_timeout_s
        give_up = self.clock() + cfg.readiness_timeout_s
        while True:
            try:
                ok, _, _ = run_with_timeout(self.pool, self.prober.probe, timeout_s, inst, svc.endpoints.health, timeout_s)
            except FutureTimeout:
                ok = False
            if ok:
                break
            if self.clock() >= give_up:
                raise DeploymentFailed(f"Instance {inst.id} did not become ready within {cfg.readiness_timeout_s}s")
            self.sleep(cfg.readiness_poll_s)

        if promote:
            now = self.clock()
            with self.registry.locked(run.service_id) as live:
                for i in live.instances:
                    if i.id == inst.id:
                        i.status = "healthy"
                        i.health.consecutive_failures = 0
                        i.lifecycle.ready_time = i.lifecycle.ready_time or now
                        break
                else:
                    raise DeploymentFailed(f"Instance {inst.id} disappeared while starting")
        self._bump(run, ready=1)

    def _remove(self, run: _Rollout, instance_ids: list[str]) -> None:
        if not instance_ids:
            return
        grace_s = self._grace(run)
        self.registry.remove_instances(run.service_id, instance_ids)
        self._set_current_replicas(run)
        for iid in instance_ids:
            self.provisioning.destroy(iid, grace_s)

    def _grace(self, run: _Rollout) -> float:
        return self.registry.get(run.service_id).config.graceful_shutdown_timeout_s

    def _partition(self, run: _Rollout) -> tuple[list[Instance], list[Instance]]:
        """Split instances into (old, new-and-ready).

        Old instances are ordered for removal: not-ready ones first, then
        oldest first.
        """
        svc = self.registry.get(run.service_id)
        new = [i for i in svc.instances if i.version == run.version and i.status == "healthy"]
        old = [i for i in svc.instances if not (i.version == run.version and i.status == "healthy")]
        old.sort(key=lambda i: (i.status == "healthy", i.lifecycle.start_time, i.id))
        return old, new

    # -- strategies --------------------------------------------------------

    def _rolling(self, run: _Rollout) -> None:
        ru = run.cfg.deployment.rolling_update
        target = run.replicas
        while True:
            self._checkpoint(run)
            old, new = self._partition(run)
            if len(new) >= target and not old:
                return

            progressed = False
            room = target + ru.max_surge - (len(old) + len(new))
            for _ in range(max(0, min(room, target - len(new)))):
                inst = self._create(run)
                self._wait_ready(run, inst)
                progressed = True
                self._checkpoint(run)

            old, new = self._partition(run)
            floor = target - ru.max_unavailable
            removable = min(len(old), len(old) + len(new) - floor)
            if removable > 0:
                self._remove(run, [i.id for i in old[:removable]])
                progressed = True

            if not progressed:
                raise DeploymentFailed(
                    f"Rolling update stalled with {len(old)} old and {len(new)} new instances "
                    f"(max_surge={ru.max_surge}, max_unavailable={ru.max_unavailable})"
                )

    def _blue_green(self, run: _Rollout) -> None:
        blue = [i.id for i in self.registry.get(run.service_id).instances]
        green: list[Instance] = []
        for _ in range(run.replicas):
            self._checkpoint(run)
            green.append(self._create(run, standby=True))
        for inst in green:
            self._wait_ready(run, inst, promote=False)
        self._checkpoint(run)

        green_ids = [i.id for i in green]
        with self.tracer.span("deployment.cutover", deployment_id=run.deployment_id, green=len(green), blue=len(blue)):
            removed = self.registry.swap_instances(run.service_id, green_ids, blue)
        self._set_current_replicas(run)
        grace_s = self._grace(run)
        for inst in removed:
            self.provisioning.destroy(inst.id, grace_s)

    def _canary(self, run: _Rollout) -> None:
        analysis = run.cfg.deployment.canary_analysis
        with self._lock:
            pct = self._deployments[run.deployment_id].canary.traffic_percent
        count = max(1, math.ceil(run.replicas * pct / 100.0))

        canary_ids: list[str] = []
        for _ in range(count):
            self._checkpoint(run)
            inst = self._create(run)
            canary_ids.append(inst.id)
            self._wait_ready(run, inst)

        for iteration in range(1, analysis.iterations + 1):
            self._checkpoint(run)
            self.sleep(analysis.interval_s)
            rate = self.analyzer(self.registry.get(run.service_id), canary_ids)
            with self._lock:
                canary = self._deployments[run.deployment_id].canary
                canary.iteration = iteration
                canary.success_rate = round(rate, 4)
            if rate < analysis.threshold:
                with self._lock:
                    dep = self._deployments[run.deployment_id]
                    dep.canary.status = "failed"
                    dep.log("canary_failed", f"Removing {len(canary_ids)} canary instances", self.clock())
                self._remove(run, canary_ids)
                raise DeploymentFailed(
                    f"Canary analysis failed at iteration {iteration}: success rate {rate:.3f} < {analysis.threshold}"
                )

        with self._lock:
            dep = self._deployments[run.deployment_id]
            dep.canary.status = "success"
            dep.log("promoted", f"Canary passed {analysis.iterations} iterations; promoting via rolling update", self.clock())
        self._rolling(run)

    def _recreate(self, run: _Rollout) -> None:
        self._remove(run, [i.id for i in self.registry.get(run.service_id).instances])
        for _ in range(run.replicas):
            self._checkpoint(run)
            inst = self._create(run)
            self._wait_ready(run, inst)

    # -- rollback ----------------------------------------------------------

    def rollback(self, deployment_id: str) -> Deployment:
        """Remove the deployment's instances and restore the previous version."""
        cfg = self.config()
        with self._lock:
            dep = self._deployments.get(deployment_id)
            if dep is None:
                raise NotFound(f"Unknown deployment '{deployment_id}'")
            if dep.status not in {"deployed", "failed"}:
                raise DeploymentConflict(f"Cannot roll back deployment {deployment_id} while it is {dep.status}")
            if self._active_for(dep.service_id) is not None:
                raise DeploymentConflict(f"Another deployment is active for service {dep.service_id}")
            newer = self._superseded_by(dep)
            if newer is not None:
                raise DeploymentConflict(f"Deployment {deployment_id} was superseded by {newer}; roll that back first")
            service_id, version = dep.service_id, dep.version
            previous_version, previous_replicas = dep.previous_version, dep.previous_replicas

        if not self._exec_lock.acquire(timeout=cfg.deployment.max_duration_s):
            raise DeploymentConflict("Timed out waiting for the running deployment to finish")
        try:
            svc = self.registry.get(service_id)
            restore_version = previous_version or svc.version
            run = _Rollout(
                deployment_id=deployment_id,
                service_id=service_id,
                version=restore_version,
                replicas=previous_replicas,
                deadline=self.clock() + cfg.deployment.max_duration_s,
                cfg=cfg,
            )
            with self.tracer.span("deployment.rollback", deployment_id=deployment_id):
                doomed = [] if restore_version == version else [i.id for i in svc.instances if i.version == version]
                try:
                    self._remove(run, doomed)
                    with self.registry.locked(service_id) as live:
                        live.version = restore_version
                        live.deployment.rollout_status = "rollback"
                        if live.deployment.current_deployment == deployment_id and live.deployment.previous_deployment:
                            live.deployment.current_deployment = live.deployment.previous_deployment
                        want = max(live.config.min_instances, min(previous_replicas, live.config.max_instances))
                        missing = want - len(live.instances)
                        name = live.name
                    for _ in range(max(0, missing)):
                        inst = self._create(run)
                        self._wait_ready(run, inst)
                except Exception as e:
                    with self._lock:
                        self._deployments[deployment_id].log("rollback_failed", f"Rollback failed: {e}", self.clock())
                    self.events.log_event("ERROR", f"Rollback of {deployment_id} failed: {e}", svc.name, version)
                    raise DeploymentFailed(f"Rollback of {deployment_id} failed: {e}") from e

            with self._lock:
                dep = self._deployments[deployment_id]
                dep.status = "rollback"
                dep.log(
                    "rollback",
                    f"Rolled back to {restore_version}: removed {len(doomed)} instances of {version}",
                    self.clock(),
                )
                result = copy.deepcopy(dep)
            self.events.log_event("WARN", f"Deployment {deployment_id} rolled back to {restore_version}", name, version)
            return result
        finally:
            self._exec_lock.release()

    def _superseded_by(self, dep: Deployment) -> str | None:
        """Id of a later deployment of the same service that is still in place."""
        ids = list(self._deployments)
        for later_id in ids[ids.index(dep.id) + 1 :]:
            later = self._deployments[later_id]
            if later.service_id == dep.service_id and later.status == "deployed":
                return later_id
        return None

    def _active_for(self, service_id: str) -> Deployment | None:
        for dep in self._deployments.values():
            if dep.service_id == service_id and dep.active:
                return dep
        return None


class DeploymentWorker(ControlLoop):
    """Drains the deployment queue on its own thread."""

    name = "deployments"

    def __init__(self, manager: DeploymentManager, events: Store, poll_s: float = 1.0):
        super().__init__(events, lambda: poll_s)
        self.manager = manager

    def tick(self) -> None:
        self.manager.run_pending()
