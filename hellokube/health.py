from __future__ import annotations

import time

import httpx

from .models import Pod


def pod_url(pod: Pod, port: int | None = None) -> str | None:
    """Base URL of a started pod for a container port, or None if not reachable yet."""
    port = pod.container_port if port is None else port
    if not pod.host or port not in pod.ports:
        return None
    return f"http://{pod.host}:{pod.ports[port]}"


def check_health(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Probe a pod's container port.

    Any HTTP 200 counts as ready; the responder has no dedicated health path.
    Returns (is_healthy, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}", latency_ms
        return True, "Healthy", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms
