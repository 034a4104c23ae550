from __future__ import annotations

from typing import Callable

from .balancer import routable_instances
from .config import LoadBalancingConfig
from .errors import NotFound
from .models import Instance
from .registry import ServiceRegistry


class ServiceDiscovery:
    """Name -> routable endpoints, using the same filter as the load balancer."""

    def __init__(self, registry: ServiceRegistry, config: Callable[[], LoadBalancingConfig]):
        self.registry = registry
        self.config = config

    def discover(self, service_name: str) -> list[Instance]:
        services = self.registry.list_by_name(service_name)
        if not services:
            raise NotFound(f"Unknown service '{service_name}'")
        cfg = self.config()
        out: list[Instance] = []
        for svc in sorted(services, key=lambda s: s.id):
            out.extend(routable_instances(svc, cfg))
        return out

    def resolve(self, service_name: str) -> list[str]:
        return [i.address for i in self.discover(service_name)]
