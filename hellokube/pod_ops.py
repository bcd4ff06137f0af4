from __future__ import annotations

import socket
import subprocess
import sys
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .images import parse_image
from .models import Pod
from .settings import settings


class PodStartError(RuntimeError):
    """The backend could not start a pod (unresolvable image, runtime down, ...)."""


@dataclass(frozen=True)
class StartedPod:
    handle: str
    host: str
    ports: dict[int, int] = field(default_factory=dict)  # container port -> reachable port


class PodBackend(Protocol):
    def start(self, pod: Pod) -> StartedPod: ...

    def stop(self, handle: str) -> None: ...

    def is_running(self, handle: str) -> bool: ...


# --- Docker ---


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def ensure_network() -> None:
    c = _client()
    try:
        c.networks.get(settings.docker_network)
    except NotFound:
        c.networks.create(settings.docker_network, driver="bridge")
        log_event("INFO", f"Created docker network '{settings.docker_network}'.")


class DockerBackend:
    """Runs each pod as one container, its container port published on the host."""

    def start(self, pod: Pod) -> StartedPod:
        if not docker_available():
            raise PodStartError("Docker is not available. Start the docker daemon and try again.")

        port_key = f"{pod.container_port}/tcp"
        try:
            ensure_network()
            container = _client().containers.run(
                pod.image,
                detach=True,
                name=f"hk-{pod.id}",
                environment={"PORT": str(pod.container_port)},
                network=settings.docker_network,
                labels={"hellokube.pod": pod.id, "hellokube.owner": pod.owner},
                ports={port_key: (settings.docker_publish_host, None)},
                # Restarts are the controller's job; keep docker's policy off.
                restart_policy={"Name": "no"},
            )
            container.reload()
        except DockerException as e:
            raise PodStartError(f"{type(e).__name__}: {e}") from e

        bindings = (container.attrs.get("NetworkSettings", {}).get("Ports") or {}).get(port_key) or []
        ports = {pod.container_port: int(bindings[0]["HostPort"])} if bindings else {}
        return StartedPod(handle=container.id, host=settings.docker_publish_host, ports=ports)

    def stop(self, handle: str) -> None:
        if not docker_available():
            return
        try:
            _client().containers.get(handle).remove(force=True)
        except NotFound:
            return

    def is_running(self, handle: str) -> bool:
        if not docker_available():
            return False
        try:
            cont = _client().containers.get(handle)
            cont.reload()
            return cont.status == "running"
        except NotFound:
            return False


# --- Local processes ---


def free_port(host: str = "127.0.0.1") -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


class ProcessBackend:
    """Runs the built-in responder image as a local process per pod.

    Only image names listed in ``settings.local_images`` resolve; anything
    else fails to start, like an image missing from a registry.
    """

    host = "127.0.0.1"

    def __init__(self) -> None:
        self._lock = Lock()
        self._procs: dict[str, subprocess.Popen] = {}

    def start(self, pod: Pod) -> StartedPod:
        image = parse_image(pod.image)
        if image.name not in settings.local_images:
            raise PodStartError(f"Image not resolvable: {pod.image}")

        port = free_port(self.host)
        try:
            proc = subprocess.Popen(
                [sys.executable, "-m", "hellokube.responder", "--host", self.host, "--port", str(port)],
                stdin=subprocess.DEVNULL,
            )
        except OSError as e:
            raise PodStartError(f"Cannot spawn responder: {e}") from e

        handle = str(proc.pid)
        with self._lock:
            self._procs[handle] = proc
        return StartedPod(handle=handle, host=self.host, ports={pod.container_port: port})

    def stop(self, handle: str) -> None:
        with self._lock:
            proc = self._procs.pop(handle, None)
        if proc is None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait(timeout=5)

    def is_running(self, handle: str) -> bool:
        with self._lock:
            proc = self._procs.get(handle)
        return proc is not None and proc.poll() is None

    def close(self) -> None:
        with self._lock:
            handles = list(self._procs)
        for h in handles:
            self.stop(h)


def get_backend(kind: str | None = None) -> PodBackend:
    kind = (kind or settings.pod_backend).strip().lower()
    if kind == "docker":
        return DockerBackend()
    if kind == "process":
        return ProcessBackend()
    raise ValueError(f"Unknown pod backend '{kind}' (expected docker|process).")
