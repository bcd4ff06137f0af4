from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from .labels import selector_matches
from .models import Pod, PodStatus, Protocol, Service, ServiceType


class NoHealthyBackends(Exception):
    pass


@dataclass(frozen=True)
class Endpoint:
    pod_id: str
    host: str
    port: int


@dataclass(frozen=True)
class Route:
    service: str
    protocol: Protocol
    port: int
    target_port: int
    node_port: int | None
    endpoints: tuple[Endpoint, ...]


def _empty() -> Mapping[Any, Route]:
    return MappingProxyType({})


@dataclass(frozen=True)
class ForwardingTable:
    """Immutable snapshot of every route; replaced wholesale, never edited."""

    version: int = 0
    cluster: Mapping[tuple[str, Protocol, int], Route] = field(default_factory=_empty)
    node: Mapping[tuple[Protocol, int], Route] = field(default_factory=_empty)
    external: Mapping[tuple[Protocol, int], Route] = field(default_factory=_empty)

    def to_dict(self) -> dict[str, Any]:
        def route(r: Route) -> dict[str, Any]:
            return {
                "service": r.service,
                "protocol": r.protocol.value,
                "port": r.port,
                "target_port": r.target_port,
                "node_port": r.node_port,
                "endpoints": [{"pod": e.pod_id, "host": e.host, "port": e.port} for e in r.endpoints],
            }

        return {
            "version": self.version,
            "routes": [route(r) for r in self.cluster.values()],
            "node_ports": sorted(port for _, port in self.node),
            "external_ports": sorted(port for _, port in self.external),
        }


def endpoints_for(selector: Mapping[str, str], target_port: int, pods: Iterable[Pod]) -> tuple[Endpoint, ...]:
    """Running pods matching ``selector`` that expose ``target_port``."""
    out: list[Endpoint] = []
    for p in pods:
        if p.status is not PodStatus.RUNNING:
            continue
        if not selector_matches(selector, p.labels):
            continue
        if not p.host or target_port not in p.ports:
            continue
        out.append(Endpoint(pod_id=p.id, host=p.host, port=p.ports[target_port]))
    return tuple(out)


def build_table(services: Iterable[Service], pods: Iterable[Pod], version: int) -> ForwardingTable:
    pods = list(pods)
    cluster: dict[tuple[str, Protocol, int], Route] = {}
    node: dict[tuple[Protocol, int], Route] = {}
    external: dict[tuple[Protocol, int], Route] = {}

    for svc in services:
        for sp in svc.ports:
            r = Route(
                service=svc.name,
                protocol=sp.protocol,
                port=sp.port,
                target_port=sp.target_port,
                node_port=sp.node_port,
                endpoints=endpoints_for(svc.selector, sp.target_port, pods),
            )
            cluster[(svc.name, sp.protocol, sp.port)] = r
            if svc.type.uses_node_ports and sp.node_port is not None:
                node[(sp.protocol, sp.node_port)] = r
            if svc.type is ServiceType.EXTERNAL_LOAD_BALANCED:
                external[(sp.protocol, sp.port)] = r

    return ForwardingTable(
        version=version,
        cluster=MappingProxyType(cluster),
        node=MappingProxyType(node),
        external=MappingProxyType(external),
    )


class RouteTable:
    """Shared forwarding state.

    Readers use ``snapshot`` without locking and always see one complete
    table. Publishers are serialized and swap the reference in one step.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._current = ForwardingTable()
        self._counters: dict[tuple[Any, ...], itertools.count] = {}
        self._subscribers: list[Callable[[ForwardingTable], None]] = []

    @property
    def snapshot(self) -> ForwardingTable:
        return self._current

    def subscribe(self, fn: Callable[[ForwardingTable], None]) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def publish(self, services: Iterable[Service], pods: Iterable[Pod]) -> ForwardingTable:
        with self._lock:
            table = build_table(services, pods, self._current.version + 1)
            self._current = table
            subscribers = list(self._subscribers)
        for fn in subscribers:
            fn(table)
        return table

    def pick(self, route: Route | None, what: str) -> Endpoint:
        """Round-robin across the route's endpoints."""
        if route is None:
            raise NoHealthyBackends(f"No route for {what}.")
        if not route.endpoints:
            raise NoHealthyBackends(f"No healthy backends for service '{route.service}'.")
        key = (route.service, route.protocol, route.port)
        counter = self._counters.get(key)
        if counter is None:
            counter = self._counters.setdefault(key, itertools.count())
        return route.endpoints[next(counter) % len(route.endpoints)]

    def resolve(self, service: str, port: int, protocol: Protocol = Protocol.TCP) -> Endpoint:
        route = self.snapshot.cluster.get((service, protocol, port))
        return self.pick(route, f"{service}:{protocol.value}/{port}")

    def resolve_node_port(self, node_port: int, protocol: Protocol = Protocol.TCP) -> Endpoint:
        return self.pick(self.snapshot.node.get((protocol, node_port)), f"nodePort {protocol.value}/{node_port}")

    def resolve_external(self, port: int, protocol: Protocol = Protocol.TCP) -> Endpoint:
        return self.pick(self.snapshot.external.get((protocol, port)), f"load balancer port {protocol.value}/{port}")
