from __future__ import annotations

import random
from threading import Lock

from .config import LoadBalancingConfig
from .errors import NoHealthyInstances
from .models import STANDBY, Instance, Service
from .registry import ServiceRegistry

ALGORITHMS = ("round_robin", "least_connections", "weighted", "random", "ip_hash")


def routable_instances(service: Service, config: LoadBalancingConfig) -> list[Instance]:
    """Healthy, non-standby set of a service, ordered by instance id.

    With ``healthy_only`` an instance must also be below the jitter threshold
    of consecutive failed probes.
    """
    out = []
    for inst in service.instances:
        if inst.status != "healthy" or inst.metadata.get(STANDBY):
            continue
        if config.healthy_only and inst.health.consecutive_failures >= config.max_consecutive_failures:
            continue
        out.append(inst)
    return sorted(out, key=lambda i: i.id)


def session_hash(key: str) -> int:
    h = 0
    for ch in key:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


class LoadBalancer:
    """Pick a healthy instance of a service.

    Strategy is one of ``ALGORITHMS`` and can be switched at runtime.
    """

    def __init__(self, registry: ServiceRegistry, config: LoadBalancingConfig, rng: random.Random | None = None):
        self.registry = registry
        self.config = config
        self.algorithm = config.algorithm
        self._rng = rng or random.Random()
        self._lock = Lock()
        self._rr_index: dict[str, int] = {}  # service_id -> cursor

    def set_algorithm(self, algorithm: str) -> None:
        if algorithm not in ALGORITHMS:
            raise ValueError(f"Unknown load balancing algorithm '{algorithm}'")
        self.algorithm = algorithm

    def update_config(self, config: LoadBalancingConfig) -> None:
        self.config = config
        self.set_algorithm(config.algorithm)

    def healthy_set(self, service_id: str) -> list[Instance]:
        return routable_instances(self.registry.get(service_id), self.config)

    def select_instance(self, service_id: str, session_key: str | None = None) -> Instance:
        instances = self.healthy_set(service_id)
        if not instances:
            raise NoHealthyInstances(f"No healthy instances for service '{service_id}'")

        algorithm = self.algorithm
        if self.config.session_affinity and session_key is not None:
            algorithm = "ip_hash"

        if algorithm == "round_robin":
            return instances[self._next_index(service_id, len(instances))]
        if algorithm == "least_connections":
            return min(instances, key=lambda i: (i.metrics.connections, i.id))
        if algorithm == "weighted":
            return self._weighted(instances)
        if algorithm == "ip_hash":
            if not session_key:
                return instances[0]
            return instances[session_hash(session_key) % len(instances)]
        return instances[self._rng.randrange(len(instances))]

    def _next_index(self, service_id: str, n: int) -> int:
        with self._lock:
            i = self._rr_index.get(service_id, 0) % n
            self._rr_index[service_id] = (i + 1) % n
            return i

    def _weighted(self, instances: list[Instance]) -> Instance:
        total = sum(max(0, i.weight) for i in instances)
        if total <= 0:
            return instances[0]
        draw = self._rng.random() * total
        for inst in instances:
            draw -= max(0, inst.weight)
            if draw < 0:
                return inst
        return instances[-1]
