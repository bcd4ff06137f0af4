from __future__ import annotations

import asyncio
from functools import partial
from threading import Event, Thread

from . import db
from .models import Protocol
from .routing import ForwardingTable, NoHealthyBackends, RouteTable
from .settings import settings

NODE = "node"
EXTERNAL = "external"


async def _pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
    try:
        while True:
            data = await src.read(65536)
            if not data:
                break
            dst.write(data)
            await dst.drain()
        if dst.can_write_eof():
            dst.write_eof()
    except (ConnectionError, OSError):
        # Peer reset; the other direction notices on its next read.
        return


def _close(w: asyncio.StreamWriter) -> None:
    if not w.is_closing():
        w.close()


async def _event(level: str, message: str) -> None:
    # sqlite writes stay off the proxy's event loop
    await asyncio.get_running_loop().run_in_executor(None, db.log_event, level, message)


class ProxyManager:
    """TCP listeners for node ports and load-balancer ports.

    Listeners follow the published forwarding table; each accepted connection
    is forwarded to one endpoint of the route at that moment. With no
    endpoint the connection is dropped, which clients see as a network error.
    UDP mappings are tracked in the table but not forwarded.
    """

    def __init__(self, routes: RouteTable, node_address: str | None = None, lb_address: str | None = None):
        self.routes = routes
        self.node_address = node_address or settings.node_address
        self.lb_address = lb_address or settings.lb_address
        self._servers: dict[tuple[str, int], asyncio.AbstractServer] = {}
        self._sync_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thr: Thread | None = None
        self._ready = Event()

    @property
    def listening(self) -> list[tuple[str, int]]:
        return sorted(self._servers)

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._run, name="hk-proxy", daemon=True)
        self._thr.start()
        self._ready.wait(timeout=5)
        self.routes.subscribe(self._on_table)
        self._on_table(self.routes.snapshot)

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    def stop(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        fut = asyncio.run_coroutine_threadsafe(self.close(), loop)
        fut.result(timeout=5)
        loop.call_soon_threadsafe(loop.stop)
        if self._thr:
            self._thr.join(timeout=5)

    def _on_table(self, table: ForwardingTable) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self.sync(table), loop)

    async def sync(self, table: ForwardingTable) -> None:
        """Open listeners for new node/external ports and close stale ones."""
        wanted = {(NODE, port) for proto, port in table.node if proto is Protocol.TCP}
        wanted |= {(EXTERNAL, port) for proto, port in table.external if proto is Protocol.TCP}

        async with self._sync_lock:
            for key in sorted(set(self._servers) - wanted):
                server = self._servers.pop(key)
                server.close()
                await server.wait_closed()
                await _event("INFO", f"Stopped listening on {key[0]} port {key[1]}")

            for kind, port in sorted(wanted - set(self._servers)):
                host = self.node_address if kind == NODE else self.lb_address
                try:
                    server = await asyncio.start_server(partial(self._handle, kind, port), host, port)
                except OSError as e:
                    await _event("ERROR", f"Cannot listen on {host}:{port} ({kind}): {e}")
                    continue
                self._servers[(kind, port)] = server
                await _event("INFO", f"Listening on {host}:{port} ({kind})")

    async def close(self) -> None:
        async with self._sync_lock:
            for server in self._servers.values():
                server.close()
                await server.wait_closed()
            self._servers.clear()

    async def _handle(self, kind: str, port: int, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            if kind == NODE:
                ep = self.routes.resolve_node_port(port)
            else:
                ep = self.routes.resolve_external(port)
        except NoHealthyBackends:
            _close(writer)
            return

        try:
            up_reader, up_writer = await asyncio.wait_for(
                asyncio.open_connection(ep.host, ep.port), timeout=settings.connect_timeout_s
            )
        except (OSError, asyncio.TimeoutError):
            _close(writer)
            return

        try:
            await asyncio.gather(_pipe(reader, up_writer), _pipe(up_reader, writer))
        finally:
            _close(up_writer)
            _close(writer)
