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
    db_path: str = os.getenv("HK_DB_PATH", "hellokube.db")
    poll_interval_s: float = _env_float("HK_POLL_INTERVAL_S", 2.0)
    pod_backend: str = os.getenv("HK_POD_BACKEND", "process")  # docker|process
    pod_workers: int = _env_int("HK_POD_WORKERS", 4)
    api_host: str = os.getenv("HK_API_HOST", "0.0.0.0")
    api_port: int = _env_int("HK_API_PORT", 8000)

    # Responder
    greeting: str = os.getenv("HK_GREETING", "Hello, World!")
    container_port: int = _env_int("PORT", 8080)

    # Pod lifecycle
    probe_timeout_s: float = _env_float("HK_PROBE_TIMEOUT_S", 2.0)
    fail_threshold: int = _env_int("HK_FAIL_THRESHOLD", 3)
    backoff_base_s: float = _env_float("HK_BACKOFF_BASE_S", 10.0)
    backoff_max_s: float = _env_float("HK_BACKOFF_MAX_S", 300.0)
    start_timeout_s: float = _env_float("HK_START_TIMEOUT_S", 60.0)

    # Docker backend
    docker_network: str = os.getenv("HK_DOCKER_NETWORK", "hellokube")
    docker_publish_host: str = os.getenv("HK_DOCKER_PUBLISH_HOST", "127.0.0.1")

    # Process backend: image names it knows how to run (tags are ignored).
    local_images: tuple[str, ...] = tuple(
        x.strip() for x in os.getenv("HK_LOCAL_IMAGES", "hellokube/hello").split(",") if x.strip()
    )

    # Service routing
    service_port: int = _env_int("HK_SERVICE_PORT", 80)
    node_port_min: int = _env_int("HK_NODE_PORT_MIN", 30000)
    node_port_max: int = _env_int("HK_NODE_PORT_MAX", 32767)
    node_address: str = os.getenv("HK_NODE_ADDRESS", "0.0.0.0")
    lb_address: str = os.getenv("HK_LB_ADDRESS", "127.0.0.1")
    connect_timeout_s: float = _env_float("HK_CONNECT_TIMEOUT_S", 5.0)
    enable_proxy: bool = _env_bool("HK_ENABLE_PROXY", True)


settings = Settings()
