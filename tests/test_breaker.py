import pytest

from conftest import FakeClock, make_service
from fleet.balancer import LoadBalancer
from fleet.breaker import CircuitBreaker, CircuitBreakers, CircuitState
from fleet.config import CircuitBreakerConfig, LoadBalancingConfig
from fleet.errors import CircuitOpen, NoHealthyInstances
from fleet.registry import ServiceRegistry


def _trip(cb: CircuitBreaker, n: int) -> None:
    for _ in range(n):
        cb.acquire()
        cb.record_failure()


def test_opens_after_threshold_and_rejects():
    clock = FakeClock()
    cb = CircuitBreaker("svc_a", CircuitBreakerConfig(), clock=clock)

    _trip(cb, 4)
    assert cb.state == CircuitState.CLOSED
    _trip(cb, 1)
    assert cb.state == CircuitState.OPEN

    with pytest.raises(CircuitOpen) as exc:
        cb.acquire()
    assert exc.value.retry_after_s == pytest.approx(60.0)


def test_success_resets_failure_count_when_closed():
    cb = CircuitBreaker("svc_a", CircuitBreakerConfig(failure_threshold=3), clock=FakeClock())
    _trip(cb, 2)
    cb.acquire()
    cb.record_success()
    _trip(cb, 2)
    assert cb.state == CircuitState.CLOSED


def test_half_open_admits_limited_trials_then_closes():
    clock = FakeClock()
    cb = CircuitBreaker("svc_a", CircuitBreakerConfig(), clock=clock)
    _trip(cb, 5)

    clock.advance(60)
    assert cb.state == CircuitState.HALF_OPEN
    for _ in range(3):
        cb.acquire()
    with pytest.raises(CircuitOpen):
        cb.acquire()

    for _ in range(3):
        cb.record_success()
    assert cb.state == CircuitState.CLOSED
    assert cb.status()["failure_count"] == 0


def test_half_open_failure_reopens():
    clock = FakeClock()
    cb = CircuitBreaker("svc_a", CircuitBreakerConfig(), clock=clock)
    _trip(cb, 5)
    clock.advance(61)
    cb.acquire()
    cb.record_failure()
    assert cb.state == CircuitState.OPEN
    clock.advance(30)
    with pytest.raises(CircuitOpen):
        cb.acquire()


def _breakers(svc, clock, **cfg):
    reg = ServiceRegistry(clock=clock)
    reg.register(svc)
    lb = LoadBalancer(reg, LoadBalancingConfig(algorithm="round_robin"))
    return CircuitBreakers(lb, CircuitBreakerConfig(**cfg), clock=clock)


def test_call_counts_operation_failures():
    clock = FakeClock()
    breakers = _breakers(make_service(n=2), clock, failure_threshold=2)

    def boom(inst):
        raise ConnectionError(inst.id)

    for _ in range(2):
        with pytest.raises(ConnectionError):
            breakers.call("svc_a", boom)

    calls = []
    with pytest.raises(CircuitOpen):
        breakers.call("svc_a", calls.append)
    assert calls == []


def test_call_returns_operation_result():
    breakers = _breakers(make_service(n=2), FakeClock())
    assert breakers.call("svc_a", lambda inst: inst.id) == "i1"
    assert breakers.call("svc_a", lambda inst: inst.id) == "i2"


def test_no_healthy_instances_counts_as_failure():
    clock = FakeClock()
    breakers = _breakers(make_service(n=1, status="unhealthy"), clock, failure_threshold=1)
    with pytest.raises(NoHealthyInstances):
        breakers.call("svc_a", lambda inst: inst)
    assert breakers.status("svc_a")["state"] == "open"


def test_disabled_breaker_passes_through():
    breakers = _breakers(make_service(n=1), FakeClock(), enabled=False, failure_threshold=1)

    def boom(inst):
        raise RuntimeError("down")

    for _ in range(3):
        with pytest.raises(RuntimeError):
            breakers.call("svc_a", boom)
    assert breakers.call("svc_a", lambda inst: "ok") == "ok"


class _Interrupted(BaseException):
    pass


def test_interrupted_trial_call_reopens_circuit():
    clock = FakeClock()
    breakers = _breakers(make_service(n=1), clock, failure_threshold=1, half_open_max_requests=1)

    def boom(inst):
        raise ConnectionError(inst.id)

    with pytest.raises(ConnectionError):
        breakers.call("svc_a", boom)
    clock.advance(60)
    assert breakers.status("svc_a")["state"] == "half_open"

    def interrupted(inst):
        raise _Interrupted()

    with pytest.raises(_Interrupted):
        breakers.call("svc_a", interrupted)
    assert breakers.status("svc_a")["state"] == "open"

    clock.advance(60)
    assert breakers.call("svc_a", lambda inst: inst.id) == "i1"
    assert breakers.status("svc_a")["state"] == "closed"
