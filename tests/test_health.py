import threading

from conftest import make_service
from fleet.deployments import DeploySpec
from fleet.health import derive_status, least_utilized
from fleet.models import MetricsSample, ServiceConfig
from fleet.orchestrator import ServiceSpec


def _messages(store):
    return [e["message"] for e in store.latest_events(limit=200)]


def test_registered_instances_become_healthy(register):
    svc = register(replicas=3)
    assert svc.status == "healthy"
    assert len(svc.healthy_instances()) == 3
    assert svc.metrics.availability_percent == 100.0


def test_status_is_derived_from_instance_health(orch, register, provisioner):
    svc = register(replicas=3)
    bad = svc.instances[0].id
    provisioner.set_failing(bad)

    # one failed probe is below the unhealthy threshold
    assert orch.health.check_service(svc.id) == "healthy"
    assert orch.health.check_service(svc.id) == "degraded"

    live = orch.get_service(svc.id)
    assert [i.status for i in live.instances if i.id == bad] == ["unhealthy"]
    assert live.metrics.availability_percent == 66.67

    for inst in live.instances:
        provisioner.set_failing(inst.id)
    orch.health.check_service(svc.id)
    assert orch.health.check_service(svc.id) == "unhealthy"


def test_recovery_is_logged(orch, register, provisioner, store):
    svc = register(replicas=2)
    bad = svc.instances[1].id
    provisioner.set_failing(bad)
    orch.health.check_service(svc.id)
    orch.health.check_service(svc.id)
    provisioner.set_failing(bad, False)

    assert orch.health.check_service(svc.id) == "healthy"
    messages = _messages(store)
    assert any(m.startswith(f"Instance {bad} became unhealthy") for m in messages)
    assert f"Instance {bad} recovered" in messages


def test_health_history_is_bounded(orch, register):
    svc = register(replicas=1)
    for _ in range(15):
        orch.health.check_service(svc.id)
    inst = orch.get_service(svc.id).instances[0]
    assert len(inst.health.checks) == 10
    assert inst.health.checks[-1].status == "pass"


def test_self_healing_replaces_persistently_failing_instance(orch, register, provisioner):
    svc = register(replicas=2)
    bad = svc.instances[0].id
    provisioner.set_failing(bad)

    for _ in range(5):
        orch.health.check_service(svc.id)

    live = orch.get_service(svc.id)
    ids = [i.id for i in live.instances]
    assert bad not in ids
    assert len(ids) == 2
    assert bad in provisioner.destroyed
    replacement = [i for i in live.instances if i.id != svc.instances[1].id][0]
    assert replacement.lifecycle.restart_count == 1
    assert replacement.lifecycle.last_restart is not None


def test_self_healing_can_be_disabled(orch, register, provisioner):
    orch.update_configuration({"health": {"self_heal": False}})
    svc = register(replicas=1)
    provisioner.set_failing(svc.instances[0].id)
    for _ in range(6):
        orch.health.check_service(svc.id)
    assert [i.id for i in orch.get_service(svc.id).instances] == [svc.instances[0].id]


def test_scale_up_on_high_cpu_with_cooldown(orch, register, feed, clock):
    svc = register(replicas=3)
    feed.default = MetricsSample(cpu=90.0, memory=50.0)

    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) == "up"
    assert len(orch.get_service(svc.id).instances) == 4

    # still hot, but inside the scale-up cooldown
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) is None
    assert len(orch.get_service(svc.id).instances) == 4

    clock.advance(301)
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) == "up"
    assert len(orch.get_service(svc.id).instances) == 5


def test_scale_up_respects_max_instances(orch, register, feed):
    svc = register(replicas=2, max_instances=2)
    feed.default = MetricsSample(cpu=99.0, memory=99.0)
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) is None
    assert len(orch.get_service(svc.id).instances) == 2


def test_scale_down_removes_least_utilized(orch, register, feed, provisioner):
    svc = register(replicas=3)
    a, b, c = (i.id for i in svc.instances)
    feed.set(a, MetricsSample(cpu=20.0, memory=10.0))
    feed.set(b, MetricsSample(cpu=5.0, memory=10.0))
    feed.set(c, MetricsSample(cpu=30.0, memory=10.0))

    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) == "down"
    assert sorted(i.id for i in orch.get_service(svc.id).instances) == sorted([a, c])
    assert b in provisioner.destroyed


def test_no_scaling_without_fresh_samples(orch, register, feed, clock):
    svc = register(replicas=2)
    assert orch.health.autoscale(svc.id) is None

    feed.default = MetricsSample(cpu=95.0, memory=95.0)
    orch.metrics.tick()
    clock.advance(61)
    assert orch.health.autoscale(svc.id) is None
    assert len(orch.get_service(svc.id).instances) == 2


def test_instance_count_is_restored_to_minimum(orch, register):
    orch.update_configuration({"scaling": {"enabled": False}})
    svc = register(replicas=2, min_instances=2)
    orch.registry.remove_instance(svc.instances[0].id)

    assert orch.health.autoscale(svc.id) == "up"
    assert len(orch.get_service(svc.id).instances) == 2


def test_no_autoscaling_during_a_deployment(orch, register, feed):
    svc = register(replicas=2)
    orch.deploy(svc.id, DeploySpec(version="2.0.0"))
    feed.default = MetricsSample(cpu=95.0, memory=95.0)
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) is None


def test_probe_timeout_counts_against_the_breaker(orch):
    release = threading.Event()

    class SlowProber:
        def probe(self, instance, health_path, timeout_s):
            release.wait(5)
            return True, "Healthy", 1.0

    svc = orch.register_service(
        ServiceSpec(name="slow", replicas=2, config=ServiceConfig(health_check_timeout_s=0.05))
    )
    orch.health.prober = SlowProber()
    try:
        for _ in range(2):
            orch.health.check_service(svc.id)
    finally:
        release.set()

    live = orch.get_service(svc.id)
    assert all(i.status == "unhealthy" for i in live.instances)
    assert "exceeded" in live.instances[0].health.checks[-1].message
    assert orch.breakers.status(svc.id)["failure_count"] == 4


def test_derive_status_without_instances():
    assert derive_status(make_service(n=0)) == ("unhealthy", 0.0)


def test_scale_down_respects_cooldown_and_minimum(orch, register, feed, clock):
    svc = register(replicas=4, min_instances=2)
    feed.default = MetricsSample(cpu=5.0, memory=5.0)

    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) == "down"
    assert len(orch.get_service(svc.id).instances) == 3

    # still idle, but inside the scale-down cooldown
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) is None
    assert len(orch.get_service(svc.id).instances) == 3

    clock.advance(301)
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) == "down"
    assert len(orch.get_service(svc.id).instances) == 2

    clock.advance(301)
    orch.metrics.tick()
    assert orch.health.autoscale(svc.id) is None
    assert len(orch.get_service(svc.id).instances) == 2


def test_services_are_checked_on_their_own_interval(orch, register, provisioner, clock):
    svc = register(replicas=1)
    iid = svc.instances[0].id
    orch.health.tick()
    provisioner.set_failing(iid)

    orch.health.tick()
    assert orch.get_service(svc.id).instances[0].health.consecutive_failures == 0

    clock.advance(30)
    orch.health.tick()
    assert orch.get_service(svc.id).instances[0].health.consecutive_failures == 1


def test_manual_and_automatic_scaling_never_exceed_max(orch, register, feed, provisioner, monkeypatch):
    svc = register(replicas=9, max_instances=10)
    feed.default = MetricsSample(cpu=95.0, memory=50.0)
    orch.metrics.tick()

    entered, release = threading.Event(), threading.Event()
    create = provisioner.create_instance

    def held_create(service, version):
        entered.set()
        release.wait(5)
        return create(service, version)

    monkeypatch.setattr(provisioner, "create_instance", held_create)
    manual = threading.Thread(target=orch.scale, args=(svc.id, 10))
    manual.start()
    assert entered.wait(5)
    monkeypatch.setattr(provisioner, "create_instance", create)

    result = {}
    auto = threading.Thread(target=lambda: result.update(action=orch.health.autoscale(svc.id)))
    auto.start()
    auto.join(0.2)
    # waits for the manual scale to finish before deciding
    assert auto.is_alive()

    release.set()
    manual.join(5)
    auto.join(5)
    assert result == {"action": None}
    assert len(orch.get_service(svc.id).instances) == 10


def test_least_utilized_goes_by_the_busier_resource():
    svc = make_service(n=2)
    a, b = svc.instances
    a.metrics.cpu, a.metrics.memory = 5.0, 60.0
    b.metrics.cpu, b.metrics.memory = 20.0, 10.0
    assert least_utilized(svc.instances) is b
