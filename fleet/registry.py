from __future__ import annotations

import copy
import time
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Callable, Iterator

from .errors import NotFound
from .models import STANDBY, Instance, MetricsSample, Service


class ServiceRegistry:
    """Authoritative in-memory store of services and their instances.

    Services are indexed by id and instances by id (instance -> owning
    service). Mutations of one service are serialized by that service's own
    lock, so unrelated services never contend. ``_lock`` only guards the id
    maps and is never held while a service lock is being waited on.

    Reads return deep copies; callers never see a record that another thread
    is mutating.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._lock = Lock()
        self._services: dict[str, Service] = {}
        self._service_locks: dict[str, RLock] = {}
        self._instance_owner: dict[str, str] = {}  # instance_id -> service_id

    # -- internals ---------------------------------------------------------

    def _service_lock(self, service_id: str) -> RLock:
        with self._lock:
            lock = self._service_locks.get(service_id)
        if lock is None:
            raise NotFound(f"Unknown service '{service_id}'")
        return lock

    def _reindex(self, svc: Service, previous_ids: set[str]) -> None:
        current = {i.id for i in svc.instances}
        with self._lock:
            for iid in previous_ids - current:
                if self._instance_owner.get(iid) == svc.id:
                    del self._instance_owner[iid]
            for iid in current:
                self._instance_owner[iid] = svc.id

    @contextmanager
    def locked(self, service_id: str) -> Iterator[Service]:
        """Yield the live service record while holding its lock.

        Instance ownership is re-indexed and ``updated_at`` bumped on exit.
        """
        lock = self._service_lock(service_id)
        with lock:
            svc = self._services.get(service_id)
            if svc is None:
                raise NotFound(f"Unknown service '{service_id}'")
            before = {i.id for i in svc.instances}
            try:
                yield svc
            finally:
                for inst in svc.instances:
                    inst.service_id = svc.id
                self._reindex(svc, before)
                svc.updated_at = self.clock()

    # -- services ----------------------------------------------------------

    def register(self, service: Service) -> Service:
        for inst in service.instances:
            if inst.service_id != service.id:
                raise ValueError(f"Instance '{inst.id}' does not belong to service '{service.id}'")
        with self._lock:
            if service.id in self._services:
                raise ValueError(f"Service '{service.id}' is already registered")
            service.updated_at = self.clock()
            self._services[service.id] = service
            self._service_locks[service.id] = RLock()
            for inst in service.instances:
                self._instance_owner[inst.id] = service.id
        return copy.deepcopy(service)

    def deregister(self, service_id: str) -> Service:
        lock = self._service_lock(service_id)
        with lock:
            with self._lock:
                svc = self._services.pop(service_id, None)
                self._service_locks.pop(service_id, None)
                if svc is None:
                    raise NotFound(f"Unknown service '{service_id}'")
                for inst in svc.instances:
                    self._instance_owner.pop(inst.id, None)
            svc.status = "stopped"
            svc.updated_at = self.clock()
            return svc

    def get(self, service_id: str) -> Service:
        with self.locked_read(service_id) as svc:
            return copy.deepcopy(svc)

    @contextmanager
    def locked_read(self, service_id: str) -> Iterator[Service]:
        lock = self._service_lock(service_id)
        with lock:
            svc = self._services.get(service_id)
            if svc is None:
                raise NotFound(f"Unknown service '{service_id}'")
            yield svc

    def exists(self, service_id: str) -> bool:
        with self._lock:
            return service_id in self._services

    def service_ids(self) -> list[str]:
        with self._lock:
            return list(self._services)

    def list_services(self) -> list[Service]:
        out: list[Service] = []
        for sid in self.service_ids():
            try:
                out.append(self.get(sid))
            except NotFound:
                # deregistered between listing and reading
                continue
        return out

    def list_by_name(self, name: str) -> list[Service]:
        return [s for s in self.list_services() if s.name == name]

    # -- instances ---------------------------------------------------------

    def add_instance(self, service_id: str, instance: Instance) -> Instance:
        with self.locked(service_id) as svc:
            if any(i.id == instance.id for i in svc.instances):
                raise ValueError(f"Instance '{instance.id}' already exists")
            instance.service_id = service_id
            svc.instances.append(instance)
            return copy.deepcopy(instance)

    def owner_of(self, instance_id: str) -> str | None:
        with self._lock:
            return self._instance_owner.get(instance_id)

    def get_instance(self, instance_id: str) -> Instance:
        service_id = self.owner_of(instance_id)
        if service_id is None:
            raise NotFound(f"Unknown instance '{instance_id}'")
        with self.locked_read(service_id) as svc:
            for inst in svc.instances:
                if inst.id == instance_id:
                    return copy.deepcopy(inst)
        raise NotFound(f"Unknown instance '{instance_id}'")

    def remove_instance(self, instance_id: str) -> Instance | None:
        """Remove an instance; unknown ids are ignored."""
        service_id = self.owner_of(instance_id)
        if service_id is None:
            return None
        try:
            removed = self.remove_instances(service_id, [instance_id])
        except NotFound:
            return None
        return removed[0] if removed else None

    def remove_instances(self, service_id: str, instance_ids: list[str]) -> list[Instance]:
        """Atomically remove several instances of one service."""
        wanted = set(instance_ids)
        with self.locked(service_id) as svc:
            removed = [i for i in svc.instances if i.id in wanted]
            svc.instances = [i for i in svc.instances if i.id not in wanted]
            return removed

    def swap_instances(self, service_id: str, promote_ids: list[str], remove_ids: list[str]) -> list[Instance]:
        """Mark ``promote_ids`` healthy and routable, drop ``remove_ids``, in one step.

        Used for blue-green cutover: routers see either the old set or the new
        set, never a mix.
        """
        promote = set(promote_ids)
        now = self.clock()
        with self.locked(service_id) as svc:
            for inst in svc.instances:
                if inst.id in promote:
                    inst.status = "healthy"
                    inst.health.consecutive_failures = 0
                    if inst.lifecycle.ready_time is None:
                        inst.lifecycle.ready_time = now
                    inst.metadata.pop(STANDBY, None)
            doomed = set(remove_ids)
            removed = [i for i in svc.instances if i.id in doomed]
            svc.instances = [i for i in svc.instances if i.id not in doomed]
            return removed

    def record_metrics(self, instance_id: str, sample: MetricsSample) -> None:
        service_id = self.owner_of(instance_id)
        if service_id is None:
            raise NotFound(f"Unknown instance '{instance_id}'")
        with self.locked(service_id) as svc:
            for inst in svc.instances:
                if inst.id == instance_id:
                    apply_sample(inst, sample, self.clock())
                    return
        raise NotFound(f"Unknown instance '{instance_id}'")


def apply_sample(inst: Instance, sample: MetricsSample, now: float) -> None:
    m = inst.metrics
    m.cpu = float(sample.cpu)
    m.memory = float(sample.memory)
    m.connections = int(sample.connections)
    m.requests_per_second = float(sample.requests_per_second)
    m.error_rate = float(sample.error_rate)
    m.sampled_at = now
    if sample.response_time_ms is not None:
        inst.health.response_time_ms = float(sample.response_time_ms)
