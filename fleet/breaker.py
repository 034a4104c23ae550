from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable

from .balancer import LoadBalancer
from .config import CircuitBreakerConfig
from .errors import CircuitOpen
from .models import Instance

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerState:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_time: float = 0.0
    half_open_requests: int = 0
    success_count: int = 0
    last_state_change: float = 0.0


class CircuitBreaker:
    """Failure-isolation state machine for one service.

    closed -> open after ``failure_threshold`` consecutive failures,
    open -> half_open once ``reset_timeout_s`` has passed since the last failure,
    half_open -> closed after ``half_open_max_requests`` successes,
    half_open -> open on any failure.

    At most ``half_open_max_requests`` trial calls are admitted per half-open
    period; later callers get ``CircuitOpen`` until the trials settle.
    """

    def __init__(self, service_id: str, config: CircuitBreakerConfig, clock: Callable[[], float] = time.time):
        self.service_id = service_id
        self.config = config
        self.clock = clock
        self._lock = Lock()
        self._st = BreakerState(last_state_change=clock())

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open(self.clock())
            return self._st.state

    def _set_state(self, state: CircuitState, now: float) -> None:
        prev = self._st.state
        self._st.state = state
        self._st.last_state_change = now
        if state == CircuitState.HALF_OPEN:
            self._st.half_open_requests = 0
            self._st.success_count = 0
        if state == CircuitState.CLOSED:
            self._st.failure_count = 0
            self._st.half_open_requests = 0
            self._st.success_count = 0
        if prev != state:
            logger.info("Circuit breaker for %s: %s -> %s", self.service_id, prev.value, state.value)

    def _maybe_half_open(self, now: float) -> None:
        if self._st.state == CircuitState.OPEN and now - self._st.last_failure_time >= self.config.reset_timeout_s:
            self._set_state(CircuitState.HALF_OPEN, now)

    def acquire(self) -> None:
        """Admit one call or raise ``CircuitOpen``."""
        with self._lock:
            now = self.clock()
            self._maybe_half_open(now)
            if self._st.state == CircuitState.OPEN:
                retry_after = self.config.reset_timeout_s - (now - self._st.last_failure_time)
                raise CircuitOpen(self.service_id, max(0.0, retry_after))
            if self._st.state == CircuitState.HALF_OPEN:
                if self._st.half_open_requests >= self.config.half_open_max_requests:
                    raise CircuitOpen(self.service_id)
                self._st.half_open_requests += 1

    def record_success(self) -> None:
        with self._lock:
            now = self.clock()
            if self._st.state == CircuitState.HALF_OPEN:
                self._st.success_count += 1
                if self._st.success_count >= self.config.half_open_max_requests:
                    self._set_state(CircuitState.CLOSED, now)
            elif self._st.state == CircuitState.CLOSED:
                self._st.failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            now = self.clock()
            self._st.failure_count += 1
            self._st.last_failure_time = now
            if self._st.state == CircuitState.HALF_OPEN:
                self._set_state(CircuitState.OPEN, now)
            elif self._st.state == CircuitState.CLOSED and self._st.failure_count >= self.config.failure_threshold:
                self._set_state(CircuitState.OPEN, now)

    def status(self) -> dict[str, Any]:
        with self._lock:
            now = self.clock()
            self._maybe_half_open(now)
            st = self._st
            return {
                "service_id": self.service_id,
                "state": st.state.value,
                "failure_count": st.failure_count,
                "time_since_last_failure": (now - st.last_failure_time) if st.last_failure_time else None,
                "time_in_current_state": now - st.last_state_change,
                "half_open_requests": st.half_open_requests if st.state == CircuitState.HALF_OPEN else None,
                "success_count": st.success_count if st.state == CircuitState.HALF_OPEN else None,
            }


class CircuitBreakers:
    """One ``CircuitBreaker`` per service, wrapping load-balanced calls."""

    def __init__(self, balancer: LoadBalancer, config: CircuitBreakerConfig, clock: Callable[[], float] = time.time):
        self.balancer = balancer
        self.config = config
        self.clock = clock
        self._lock = Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, service_id: str) -> CircuitBreaker:
        with self._lock:
            cb = self._breakers.get(service_id)
            if cb is None:
                cb = CircuitBreaker(service_id, self.config, clock=self.clock)
                self._breakers[service_id] = cb
            return cb

    def update_config(self, config: CircuitBreakerConfig) -> None:
        with self._lock:
            self.config = config
            for cb in self._breakers.values():
                cb.config = config

    def discard(self, service_id: str) -> None:
        with self._lock:
            self._breakers.pop(service_id, None)

    def call(self, service_id: str, operation: Callable[[Instance], Any], session_key: str | None = None) -> Any:
        """Run ``operation`` against a load-balanced instance of the service.

        Raises ``CircuitOpen`` without selecting an instance while the circuit
        is open. ``NoHealthyInstances`` counts as a failure and is re-raised.
        """
        if not self.config.enabled:
            return operation(self.balancer.select_instance(service_id, session_key))

        cb = self.get(service_id)
        cb.acquire()
        try:
            instance = self.balancer.select_instance(service_id, session_key)
            result = operation(instance)
        except BaseException:
            cb.record_failure()
            raise
        cb.record_success()
        return result

    def record_failure(self, service_id: str) -> None:
        if self.config.enabled:
            self.get(service_id).record_failure()

    def status(self, service_id: str) -> dict[str, Any]:
        return self.get(service_id).status()
