from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("FLEET_DB_PATH", "fleet.db")
    provisioner: str = os.getenv("FLEET_PROVISIONER", "memory")  # memory|docker
    docker_network: str = os.getenv("FLEET_DOCKER_NETWORK", "fleet")
    docker_image_template: str = os.getenv("FLEET_DOCKER_IMAGE_TEMPLATE", "{service}:{version}")
    internal_port: int = _env_int("FLEET_INTERNAL_PORT", 80)

    # Control loops
    start_loops: bool = _env_bool("FLEET_START_LOOPS", True)
    deployment_poll_s: float = _env_float("FLEET_DEPLOYMENT_POLL_S", 1.0)
    loop_workers: int = _env_int("FLEET_LOOP_WORKERS", 8)

    # Tracing
    trace_queue_size: int = _env_int("FLEET_TRACE_QUEUE_SIZE", 1000)


settings = Settings()
