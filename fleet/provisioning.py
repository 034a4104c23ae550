from __future__ import annotations

import itertools
import logging
import math
import re
import time
from concurrent.futures import Executor, Future, TimeoutError as FutureTimeout
from threading import Lock
from typing import Any, Callable, Protocol, TypeVar

import docker
import httpx
from docker.errors import DockerException, NotFound as DockerNotFound
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import ProvisioningConfig
from .errors import ProvisioningFailure
from .models import Instance, Service, new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERVICE_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
VERSION_RE = re.compile(r"^[a-z0-9][a-z0-9\-\._]{0,63}$", re.IGNORECASE)

ProbeResult = tuple[bool, str, "float | None"]


def validate_service_name(name: str) -> None:
    if not SERVICE_NAME_RE.match(name):
        raise ValueError(
            "Invalid service name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )


def validate_version(version: str) -> None:
    if not VERSION_RE.match(version):
        raise ValueError("Invalid version string. Use letters/numbers and -._ (max 64 chars).")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed at arbitrary hosts.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


class Provisioner(Protocol):
    def create_instance(self, service: Service, version: str) -> Instance: ...

    def destroy_instance(self, instance_id: str, grace_s: float = 0.0) -> None: ...


class Prober(Protocol):
    def probe(self, instance: Instance, health_path: str, timeout_s: float) -> ProbeResult: ...


def run_with_timeout(
    pool: Executor,
    fn: Callable[..., T],
    timeout_s: float,
    *args: Any,
    on_late: Callable[[T], None] | None = None,
) -> T:
    """Run ``fn`` on ``pool`` and wait at most ``timeout_s`` for it.

    Raises ``concurrent.futures.TimeoutError`` when the call overruns. The
    worker keeps running in the background; if it later succeeds, its result
    is handed to ``on_late`` instead of the caller.
    """
    fut = pool.submit(fn, *args)
    try:
        return fut.result(timeout=timeout_s)
    except FutureTimeout:
        if not fut.cancel() and on_late is not None:
            fut.add_done_callback(lambda f: _deliver_late(f, on_late))
        raise


def _deliver_late(fut: Future, on_late: Callable[[Any], None]) -> None:
    if fut.cancelled() or fut.exception() is not None:
        return
    try:
        on_late(fut.result())
    except Exception as e:
        logger.error("Cleanup of a late result failed: %s: %s", type(e).__name__, e)


class Provisioning:
    """Bounded, retried access to a ``Provisioner``."""

    def __init__(self, provisioner: Provisioner, config: ProvisioningConfig, pool: Executor):
        self.provisioner = provisioner
        self.config = config
        self.pool = pool

    def create(self, service: Service, version: str) -> Instance:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.attempts),
            wait=wait_exponential(multiplier=self.config.backoff_s, max=self.config.max_backoff_s),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    return run_with_timeout(
                        self.pool,
                        self.provisioner.create_instance,
                        self.config.timeout_s,
                        service,
                        version,
                        on_late=self._discard_late,
                    )
        except FutureTimeout as e:
            raise ProvisioningFailure(
                f"Creating an instance of {service.name}@{version} timed out after {self.config.attempts} attempts"
            ) from e
        except Exception as e:
            raise ProvisioningFailure(
                f"Creating an instance of {service.name}@{version} failed after {self.config.attempts} attempts: "
                f"{type(e).__name__}: {e}"
            ) from e
        raise ProvisioningFailure(f"Creating an instance of {service.name}@{version} failed")

    def _discard_late(self, instance: Instance) -> None:
        # A timed-out create finished after all; nobody registered it.
        logger.warning("Destroying instance %s created after its timeout", instance.id)
        self.provisioner.destroy_instance(instance.id)

    def destroy(self, instance_id: str, grace_s: float = 0.0) -> None:
        """Stop the instance, allowing it ``grace_s`` to shut down, then remove it."""
        try:
            run_with_timeout(
                self.pool, self.provisioner.destroy_instance, self.config.timeout_s + grace_s, instance_id, grace_s
            )
        except FutureTimeout as e:
            raise ProvisioningFailure(f"Destroying instance {instance_id} timed out") from e
        except Exception as e:
            raise ProvisioningFailure(f"Destroying instance {instance_id} failed: {type(e).__name__}: {e}") from e


class InMemoryProvisioner:
    """Simulated fleet: instances exist only as records in this object.

    It also answers health probes, so tests and the default ``memory`` mode can
    run the full control loop without containers. ``fail_next_creates`` and
    ``set_failing`` inject faults.
    """

    def __init__(self, base_port: int = 8080):
        self._lock = Lock()
        self._ports = itertools.count(base_port)
        self.live: dict[str, str] = {}  # instance_id -> version
        self.failing: set[str] = set()
        self.created: list[str] = []
        self.destroyed: list[str] = []
        self.grace: dict[str, float] = {}
        self.fail_next_creates = 0

    def create_instance(self, service: Service, version: str) -> Instance:
        with self._lock:
            if self.fail_next_creates > 0:
                self.fail_next_creates -= 1
                raise RuntimeError("simulated provisioning failure")
            iid = new_id("inst")
            inst = Instance(
                id=iid,
                service_id=service.id,
                host=f"{service.name}-{iid}",
                port=next(self._ports),
                version=version,
                metadata={"service_type": service.category, "deployment_strategy": service.deployment.strategy},
            )
            self.live[iid] = version
            self.created.append(iid)
            return inst

    def destroy_instance(self, instance_id: str, grace_s: float = 0.0) -> None:
        with self._lock:
            self.grace[instance_id] = grace_s
            self.live.pop(instance_id, None)
            self.failing.discard(instance_id)
            self.destroyed.append(instance_id)

    def set_failing(self, instance_id: str, failing: bool = True) -> None:
        with self._lock:
            if failing:
                self.failing.add(instance_id)
            else:
                self.failing.discard(instance_id)

    def probe(self, instance: Instance, health_path: str, timeout_s: float) -> ProbeResult:
        with self._lock:
            if instance.id not in self.live:
                return False, "No response", None
            if instance.id in self.failing:
                return False, "HTTP 503", 1.0
        return True, "Healthy", 1.0


def check_health(url: str, timeout_s: float = 2.0) -> ProbeResult:
    """Call a service health endpoint.

    Expected JSON: {"status": "healthy"}.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return False, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return True, "Healthy", latency_ms
        return False, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.ReadTimeout):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


class HttpProber:
    def probe(self, instance: Instance, health_path: str, timeout_s: float) -> ProbeResult:
        return check_health(f"{instance.address}{health_path}", timeout_s=timeout_s)


class DockerProvisioner:
    """Run each instance as a labelled container on a shared docker network.

    Containers are labelled so they can be re-discovered after restarts.
    """

    def __init__(self, network: str, image_template: str = "{service}:{version}", internal_port: int = 80):
        self.network = network
        self.image_template = image_template
        self.internal_port = int(internal_port)

    def _client(self):
        return docker.from_env()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except DockerNotFound:
            c.networks.create(self.network, driver="bridge")

    def create_instance(self, service: Service, version: str) -> Instance:
        validate_service_name(service.name)
        validate_version(version)
        self.ensure_network()

        iid = new_id("inst")
        name = f"fleet-{service.name}-{iid}"
        labels = {
            "fleet.service": service.name,
            "fleet.service_id": service.id,
            "fleet.version": version,
            "fleet.instance": iid,
        }
        c = self._client()
        c.containers.run(
            self.image_template.format(service=service.name, version=version),
            detach=True,
            name=name,
            network=self.network,
            labels=labels,
            # Self-healing is done by the health loop; keep Docker restart policy off.
            restart_policy={"Name": "no"},
        )
        return Instance(
            id=iid,
            service_id=service.id,
            host=name,
            port=self.internal_port,
            version=version,
            metadata={"container_name": name, "service_type": service.category},
        )

    def destroy_instance(self, instance_id: str, grace_s: float = 0.0) -> None:
        c = self._client()
        for cont in c.containers.list(all=True, filters={"label": [f"fleet.instance={instance_id}"]}):
            try:
                if grace_s > 0 and cont.status == "running":
                    cont.stop(timeout=math.ceil(grace_s))
                cont.remove(force=True)
            except DockerNotFound:
                continue
