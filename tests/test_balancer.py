import random

import pytest

from conftest import make_service
from fleet.balancer import LoadBalancer, session_hash
from fleet.config import LoadBalancingConfig
from fleet.errors import NoHealthyInstances
from fleet.models import STANDBY
from fleet.registry import ServiceRegistry


def _balancer(svc, **cfg):
    reg = ServiceRegistry()
    reg.register(svc)
    return LoadBalancer(reg, LoadBalancingConfig(**cfg), rng=random.Random(7))


def test_round_robin_cycles_in_id_order():
    lb = _balancer(make_service(n=3), algorithm="round_robin")
    picks = [lb.select_instance("svc_a").id for _ in range(4)]
    assert picks == ["i1", "i2", "i3", "i1"]


def test_least_connections_breaks_ties_by_id():
    svc = make_service(n=3)
    svc.instances[0].metrics.connections = 5
    svc.instances[1].metrics.connections = 2
    svc.instances[2].metrics.connections = 2
    lb = _balancer(svc)
    assert lb.select_instance("svc_a").id == "i2"


def test_unhealthy_standby_and_jittery_instances_are_not_routable():
    svc = make_service(n=4)
    svc.instances[0].status = "unhealthy"
    svc.instances[1].metadata[STANDBY] = True
    svc.instances[2].health.consecutive_failures = 3
    lb = _balancer(svc, algorithm="round_robin")
    assert {lb.select_instance("svc_a").id for _ in range(5)} == {"i4"}


def test_jitter_filter_only_applies_with_healthy_only():
    svc = make_service(n=1)
    svc.instances[0].health.consecutive_failures = 10
    assert _balancer(svc, healthy_only=False).select_instance("svc_a").id == "i1"


def test_no_healthy_instances():
    lb = _balancer(make_service(n=2, status="unhealthy"))
    with pytest.raises(NoHealthyInstances):
        lb.select_instance("svc_a")


def test_weighted_skips_zero_weight():
    svc = make_service(n=2)
    svc.instances[0].weight = 0
    lb = _balancer(svc, algorithm="weighted")
    assert {lb.select_instance("svc_a").id for _ in range(20)} == {"i2"}


def test_ip_hash_is_sticky():
    assert session_hash("abc") == 96354
    lb = _balancer(make_service(n=3), algorithm="ip_hash")
    assert lb.select_instance("svc_a", session_key="abc").id == "i1"
    assert {lb.select_instance("svc_a", session_key="client-42").id for _ in range(5)} == {
        lb.select_instance("svc_a", session_key="client-42").id
    }


def test_session_affinity_overrides_algorithm():
    lb = _balancer(make_service(n=3), algorithm="round_robin", session_affinity=True)
    picks = {lb.select_instance("svc_a", session_key="abc").id for _ in range(3)}
    assert picks == {"i1"}


def test_random_only_picks_routable():
    svc = make_service(n=3)
    svc.instances[1].status = "starting"
    lb = _balancer(svc, algorithm="random")
    assert {lb.select_instance("svc_a").id for _ in range(30)} <= {"i1", "i3"}


def test_unknown_algorithm_rejected():
    lb = _balancer(make_service())
    with pytest.raises(ValueError):
        lb.set_algorithm("fastest")
