from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from .images import ImageRef
from .labels import OWNER_LABEL, selector_matches


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class PodStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    CRASH_LOOP = "CrashLoop"
    TERMINATED = "Terminated"


LIVE_STATUSES = frozenset({PodStatus.PENDING, PodStatus.RUNNING})


class ServiceType(str, Enum):
    CLUSTER_INTERNAL = "ClusterInternal"
    NODE_EXPOSED = "NodePort"
    EXTERNAL_LOAD_BALANCED = "LoadBalancer"

    @property
    def uses_node_ports(self) -> bool:
        return self is not ServiceType.CLUSTER_INTERNAL


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"


@dataclass(frozen=True)
class PodTemplate:
    labels: dict[str, str]
    image: ImageRef
    container_port: int = 8080


@dataclass(frozen=True)
class Deployment:
    name: str
    desired_replicas: int
    selector: dict[str, str]
    template: PodTemplate
    created_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if self.desired_replicas < 0:
            raise ValueError("desired_replicas must be >= 0")
        if not self.selector:
            raise ValueError("selector must not be empty")
        if not selector_matches(self.selector, self.template.labels):
            raise ValueError("template labels must include every selector label")

    def pod_labels(self) -> dict[str, str]:
        """Template labels plus the ownership label."""
        return {**self.template.labels, OWNER_LABEL: self.name}


@dataclass
class Pod:
    id: str
    owner: str
    labels: dict[str, str]
    image: str
    container_port: int
    status: PodStatus = PodStatus.PENDING
    restart_count: int = 0
    not_before: float = 0.0  # epoch seconds; start is deferred until then (backoff)
    handle: str | None = None  # backend id: container id or process pid
    host: str | None = None
    ports: dict[int, int] = field(default_factory=dict)  # container port -> reachable port
    last_error: str | None = None
    seq: int = 0  # creation order, assigned by the store
    created_at: str = field(default_factory=utc_now)

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES

    def is_due(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) >= self.not_before


@dataclass(frozen=True)
class ServicePort:
    port: int = 80
    target_port: int = 8080
    protocol: Protocol = Protocol.TCP
    node_port: int | None = None


@dataclass(frozen=True)
class Service:
    name: str
    selector: dict[str, str]
    type: ServiceType = ServiceType.CLUSTER_INTERNAL
    ports: tuple[ServicePort, ...] = ()
    created_at: str = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        seen: set[tuple[Protocol, int]] = set()
        for p in self.ports:
            key = (p.protocol, p.port)
            if key in seen:
                raise ValueError(f"Duplicate port mapping {p.protocol.value}/{p.port} in service '{self.name}'.")
            seen.add(key)
            if p.node_port is not None and not self.type.uses_node_ports:
                raise ValueError(f"nodePort is not allowed for {self.type.value} services.")

    def node_ports(self) -> list[int]:
        return [p.node_port for p in self.ports if p.node_port is not None]
