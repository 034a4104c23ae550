import pytest

from fleet.errors import NotFound


def test_resolve_returns_routable_endpoints(orch, register, provisioner):
    svc = register(name="payments", replicas=3)
    bad = svc.instances[0]
    provisioner.set_failing(bad.id)
    orch.health.check_service(svc.id)
    orch.health.check_service(svc.id)

    endpoints = orch.resolve("payments")

    assert len(endpoints) == 2
    assert bad.address not in endpoints
    assert all(e.startswith("http://payments-") for e in endpoints)


def test_resolve_spans_every_service_with_the_name(orch, register):
    register(name="search", replicas=1)
    register(name="search", replicas=2)
    assert len(orch.resolve("search")) == 3


def test_resolve_unknown_name_and_empty_set(orch, register, provisioner):
    with pytest.raises(NotFound):
        orch.resolve("nope")

    svc = register(name="quiet", replicas=1)
    provisioner.set_failing(svc.instances[0].id)
    orch.health.check_service(svc.id)
    orch.health.check_service(svc.id)
    assert orch.resolve("quiet") == []


def test_discover_matches_balancer_filter(orch, register):
    svc = register(name="cart", replicas=2)
    found = orch.discovery.discover("cart")
    assert [i.id for i in found] == [i.id for i in orch.balancer.healthy_set(svc.id)]
