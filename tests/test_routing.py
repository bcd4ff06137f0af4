import threading

import pytest

from hellokube.models import Pod, PodStatus, Protocol, Service, ServicePort, ServiceType
from hellokube.routing import NoHealthyBackends, RouteTable, build_table


def pod(i, status=PodStatus.RUNNING, labels=None, ports=None):
    return Pod(
        id=f"p{i}",
        owner="hello",
        labels=labels if labels is not None else {"app": "demo"},
        image="hellokube/hello:1.0",
        container_port=8080,
        status=status,
        host="127.0.0.1",
        ports=ports if ports is not None else {8080: 41000 + i},
        seq=i,
    )


def service(name="hello", type=ServiceType.NODE_EXPOSED, selector=None, **port):
    port.setdefault("node_port", 30080 if type is not ServiceType.CLUSTER_INTERNAL else None)
    return Service(name=name, selector=selector or {"app": "demo"}, type=type, ports=(ServicePort(**port),))


def test_table_routes_only_to_matching_running_pods():
    pods = [
        pod(1),
        pod(2, status=PodStatus.PENDING),
        pod(3, status=PodStatus.CRASH_LOOP),
        pod(4, labels={"app": "other"}),
        pod(5, ports={}),
        pod(6, labels={"app": "demo", "tier": "web"}),
    ]
    table = build_table([service()], pods, version=1)
    route = table.cluster[("hello", Protocol.TCP, 80)]
    assert [e.pod_id for e in route.endpoints] == ["p1", "p6"]
    assert route.endpoints[0].port == 41001
    assert table.node[(Protocol.TCP, 30080)] is route
    assert dict(table.external) == {}


def test_cluster_internal_has_no_node_route():
    table = build_table([service(type=ServiceType.CLUSTER_INTERNAL)], [pod(1)], version=1)
    assert ("hello", Protocol.TCP, 80) in table.cluster
    assert dict(table.node) == {}


def test_load_balancer_gets_node_and_external_routes():
    table = build_table([service(type=ServiceType.EXTERNAL_LOAD_BALANCED, port=8081)], [pod(1)], version=1)
    assert (Protocol.TCP, 30080) in table.node
    assert (Protocol.TCP, 8081) in table.external


def test_snapshots_are_immutable_and_versioned():
    routes = RouteTable()
    first = routes.publish([service()], [pod(1)])
    second = routes.publish([service()], [pod(1), pod(2)])
    assert (first.version, second.version) == (1, 2)
    assert routes.snapshot is second
    assert len(first.cluster[("hello", Protocol.TCP, 80)].endpoints) == 1
    with pytest.raises(TypeError):
        first.cluster[("x", Protocol.TCP, 1)] = None


def test_round_robin_across_endpoints():
    routes = RouteTable()
    routes.publish([service()], [pod(1), pod(2), pod(3)])
    picked = [routes.resolve_node_port(30080).pod_id for _ in range(6)]
    assert picked == ["p1", "p2", "p3", "p1", "p2", "p3"]
    assert routes.resolve("hello", 80).pod_id in {"p1", "p2", "p3"}


def test_no_matching_pods_raises():
    routes = RouteTable()
    routes.publish([service()], [pod(1, labels={"app": "other"})])
    with pytest.raises(NoHealthyBackends):
        routes.resolve_node_port(30080)
    with pytest.raises(NoHealthyBackends):
        routes.resolve_node_port(31000)
    with pytest.raises(NoHealthyBackends):
        routes.resolve("hello", 80, Protocol.UDP)


def test_subscribers_get_each_published_table():
    routes = RouteTable()
    seen = []
    routes.subscribe(seen.append)
    t = routes.publish([service()], [])
    assert seen == [t]


def test_readers_never_see_half_updated_table():
    # Two services with the same selector must always agree within one snapshot.
    routes = RouteTable()
    services = [service("a", node_port=30080), service("b", node_port=30081)]
    stop = threading.Event()
    errors = []

    def reader():
        while not stop.is_set():
            t = routes.snapshot
            a = t.cluster.get(("a", Protocol.TCP, 80))
            b = t.cluster.get(("b", Protocol.TCP, 80))
            if a is not None and b is not None and a.endpoints != b.endpoints:
                errors.append(t.version)

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for th in threads:
        th.start()
    for n in range(200):
        routes.publish(services, [pod(i) for i in range(n % 5)])
    stop.set()
    for th in threads:
        th.join()
    assert errors == []
