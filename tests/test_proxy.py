import asyncio
import threading

from hellokube import db
from hellokube.models import Pod, PodStatus, Service, ServicePort, ServiceType
from hellokube.pod_ops import free_port
from hellokube.proxy import NODE, ProxyManager
from hellokube.routing import RouteTable

RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 13\r\nConnection: close\r\n\r\nHello, World!"


async def _fake_pod():
    async def handle(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(RESPONSE)
        await writer.drain()
        writer.close()

    return await asyncio.start_server(handle, "127.0.0.1", 0)


def _publish(routes, node_port, pod_port=None, labels=None):
    svc = Service(
        name="hello",
        selector={"app": "demo"},
        type=ServiceType.NODE_EXPOSED,
        ports=(ServicePort(port=80, target_port=8080, node_port=node_port),),
    )
    pods = []
    if pod_port is not None:
        pods.append(
            Pod(
                id="hello-1",
                owner="hello",
                labels=labels or {"app": "demo"},
                image="hellokube/hello:1.0",
                container_port=8080,
                status=PodStatus.RUNNING,
                host="127.0.0.1",
                ports={8080: pod_port},
            )
        )
    return routes.publish([svc], pods)


def test_node_port_forwards_to_pod():
    async def scenario():
        server = await _fake_pod()
        pod_port = server.sockets[0].getsockname()[1]
        node_port = free_port()
        routes = RouteTable()
        table = _publish(routes, node_port, pod_port)

        pm = ProxyManager(routes, node_address="127.0.0.1")
        await pm.sync(table)
        assert pm.listening == [(NODE, node_port)]

        reader, writer = await asyncio.open_connection("127.0.0.1", node_port)
        writer.write(b"GET / HTTP/1.1\r\nHost: demo\r\n\r\n")
        await writer.drain()
        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()

        await asyncio.wait_for(pm.close(), timeout=5)
        server.close()
        await server.wait_closed()
        return data

    data = asyncio.run(scenario())
    assert data.startswith(b"HTTP/1.1 200 OK")
    assert data.endswith(b"Hello, World!")


def test_connection_dropped_without_endpoints():
    async def scenario():
        node_port = free_port()
        routes = RouteTable()
        table = _publish(routes, node_port)

        pm = ProxyManager(routes, node_address="127.0.0.1")
        await pm.sync(table)
        reader, writer = await asyncio.open_connection("127.0.0.1", node_port)
        data = await asyncio.wait_for(reader.read(), timeout=5)
        writer.close()
        await asyncio.wait_for(pm.close(), timeout=5)
        return data

    assert asyncio.run(scenario()) == b""


def test_listeners_follow_the_table():
    async def scenario():
        routes = RouteTable()
        first, second = free_port(), free_port()
        pm = ProxyManager(routes, node_address="127.0.0.1")

        await pm.sync(_publish(routes, first))
        assert pm.listening == [(NODE, first)]

        await pm.sync(_publish(routes, second))
        assert pm.listening == [(NODE, second)]

        await pm.sync(routes.publish([], []))
        assert pm.listening == []

    asyncio.run(scenario())


def test_listener_events_are_written_off_the_event_loop(monkeypatch):
    writers = []
    monkeypatch.setattr(db, "log_event", lambda level, message, **kw: writers.append((threading.get_ident(), message)))

    async def scenario():
        routes = RouteTable()
        pm = ProxyManager(routes, node_address="127.0.0.1")
        await pm.sync(_publish(routes, free_port()))
        await pm.close()
        return threading.get_ident()

    loop_thread = asyncio.run(scenario())
    assert writers
    assert all(ident != loop_thread for ident, _ in writers)
    assert any(message.startswith("Listening on 127.0.0.1:") for _, message in writers)
