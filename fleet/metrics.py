from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Protocol

import httpx

from .config import OrchestratorConfig
from .db import Store
from .errors import NotFound
from .loops import ControlLoop
from .models import Instance, MetricsSample, Service
from .registry import ServiceRegistry
from .tracing import Tracer


class MetricsFeed(Protocol):
    def collect(self, service: Service) -> dict[str, MetricsSample]: ...


def is_fresh(inst: Instance, now: float, staleness_s: float) -> bool:
    sampled = inst.metrics.sampled_at
    return sampled is not None and now - sampled <= staleness_s


class StaticMetricsFeed:
    """Fixture feed: fixed samples per instance id, optional default for the rest."""

    def __init__(self, default: MetricsSample | None = None):
        self.default = default
        self._lock = Lock()
        self._samples: dict[str, MetricsSample] = {}

    def set(self, instance_id: str, sample: MetricsSample) -> None:
        with self._lock:
            self._samples[instance_id] = sample

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()
            self.default = None

    def collect(self, service: Service) -> dict[str, MetricsSample]:
        out: dict[str, MetricsSample] = {}
        with self._lock:
            for inst in service.instances:
                sample = self._samples.get(inst.id, self.default)
                if sample is not None:
                    out[inst.id] = sample
        return out


class HttpMetricsFeed:
    """Pull JSON samples from each instance's metrics endpoint.

    Expected JSON keys: cpu, memory, connections, requests_per_second,
    error_rate. Instances that do not answer are skipped for this round.
    """

    def __init__(self, timeout_s: float = 2.0):
        self.timeout_s = timeout_s

    def collect(self, service: Service) -> dict[str, MetricsSample]:
        out: dict[str, MetricsSample] = {}
        with httpx.Client(timeout=self.timeout_s, follow_redirects=False) as client:
            for inst in service.instances:
                if inst.status == "stopping":
                    continue
                start = time.time()
                try:
                    resp = client.get(f"{inst.address}{service.endpoints.metrics}")
                    if resp.status_code != 200:
                        continue
                    data = resp.json()
                except (httpx.HTTPError, ValueError):
                    continue
                if not isinstance(data, dict):
                    continue
                try:
                    out[inst.id] = MetricsSample(
                        cpu=float(data.get("cpu", 0.0)),
                        memory=float(data.get("memory", 0.0)),
                        connections=int(data.get("connections", 0)),
                        requests_per_second=float(data.get("requests_per_second", 0.0)),
                        error_rate=float(data.get("error_rate", 0.0)),
                        response_time_ms=round((time.time() - start) * 1000.0, 2),
                    )
                except (TypeError, ValueError):
                    continue
        return out


class MetricsCollector(ControlLoop):
    """Pulls samples from the feed, aggregates service metrics, checks alerts."""

    name = "metrics"

    def __init__(
        self,
        registry: ServiceRegistry,
        feed: MetricsFeed,
        config: Callable[[], OrchestratorConfig],
        events: Store,
        tracer: Tracer,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(events, lambda: config().monitoring.interval_s)
        self.registry = registry
        self.feed = feed
        self.config = config
        self.tracer = tracer
        self.clock = clock

    def tick(self) -> None:
        cfg = self.config()
        if not cfg.monitoring.enabled:
            return
        for service in self.registry.list_services():
            with self.tracer.span("metrics.collect", service=service.name) as span:
                samples = self.feed.collect(service)
                span["samples"] = len(samples)
                for instance_id, sample in samples.items():
                    try:
                        self.registry.record_metrics(instance_id, sample)
                    except NotFound:
                        # instance removed since the snapshot was taken
                        continue
                try:
                    self.aggregate(service.id)
                except NotFound:
                    continue
            if cfg.monitoring.alerting:
                try:
                    self.check_alerts(self.registry.get(service.id))
                except NotFound:
                    continue

    def aggregate(self, service_id: str) -> None:
        cfg = self.config()
        now = self.clock()
        with self.registry.locked(service_id) as svc:
            fresh = [i for i in svc.instances if is_fresh(i, now, cfg.scaling.staleness_s)]
            m = svc.metrics
            if not fresh:
                m.requests_per_second = 0.0
                return
            m.requests_per_second = round(sum(i.metrics.requests_per_second for i in fresh), 3)
            m.average_response_time_ms = round(sum(i.health.response_time_ms for i in fresh) / len(fresh), 3)
            m.error_rate = round(sum(i.metrics.error_rate for i in fresh) / len(fresh), 3)
            requests = int(m.requests_per_second * cfg.monitoring.interval_s)
            m.total_requests += requests
            m.total_errors += int(requests * m.error_rate / 100.0)

    def check_alerts(self, service: Service) -> list[str]:
        alerts = []
        if service.status == "unhealthy":
            alerts.append(f"Service {service.name} is unhealthy")
        if service.metrics.error_rate > 10:
            alerts.append(f"High error rate for {service.name}: {service.metrics.error_rate:.2f}%")
        if service.metrics.availability_percent < 90:
            alerts.append(f"Low availability for {service.name}: {service.metrics.availability_percent:.1f}%")
        for msg in alerts:
            self.events.log_event("WARN", f"ALERT: {msg}", service_name=service.name, version=service.version)
        return alerts
