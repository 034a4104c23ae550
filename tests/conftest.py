import os as _os
import sys

import pytest

# Ensure project root is importable (so `import main` works without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fleet.db import Store  # noqa: E402
from fleet.metrics import StaticMetricsFeed  # noqa: E402
from fleet.models import Instance, Service, ServiceConfig  # noqa: E402
from fleet.orchestrator import Orchestrator, ServiceSpec  # noqa: E402
from fleet.provisioning import InMemoryProvisioner  # noqa: E402


class FakeClock:
    """Manually advanced clock; also usable as the ``sleep`` callable."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# No backoff, short bounded waits; the fake sleep advances the fake clock.
FAST_CONFIG = {
    "provisioning": {"attempts": 2, "backoff_s": 0, "max_backoff_s": 0, "timeout_s": 5},
    "deployment": {
        "readiness_timeout_s": 5,
        "readiness_poll_s": 1,
        "canary_analysis": {"interval_s": 1, "iterations": 3, "threshold": 0.95, "traffic_percent": 25},
    },
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    s = Store(str(tmp_path / "fleet.db"))
    s.init_db()
    return s


@pytest.fixture
def provisioner():
    return InMemoryProvisioner()


@pytest.fixture
def feed():
    return StaticMetricsFeed()


@pytest.fixture
def orch(store, provisioner, feed, clock):
    o = Orchestrator(store, provisioner, provisioner, feed, clock=clock, sleep=clock.advance, workers=4)
    o.update_configuration(FAST_CONFIG)
    yield o
    o.pool.shutdown(wait=False)


@pytest.fixture
def register(orch):
    def _register(name: str = "api", replicas: int = 3, min_instances: int = 1, max_instances: int = 10, **kw):
        spec = ServiceSpec(
            name=name,
            replicas=replicas,
            config=ServiceConfig(min_instances=min_instances, max_instances=max_instances),
            **kw,
        )
        return orch.register_service(spec)

    return _register


def make_service(service_id: str = "svc_a", name: str = "api", n: int = 3, status: str = "healthy") -> Service:
    svc = Service(id=service_id, name=name)
    for k in range(1, n + 1):
        svc.instances.append(
            Instance(id=f"i{k}", service_id=service_id, host=f"10.0.0.{k}", port=8080, version=svc.version, status=status)
        )
    return svc
