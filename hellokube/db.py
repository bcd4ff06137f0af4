from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import replace
from typing import Any

from .images import parse_image
from .models import (
    Deployment,
    Pod,
    PodStatus,
    PodTemplate,
    Protocol,
    Service,
    ServicePort,
    ServiceType,
    utc_now,
)
from .settings import settings

logger = logging.getLogger("hellokube")


class PortConflict(ValueError):
    """A node port or load-balancer port is already taken by another service."""


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """
    p = os.path.abspath(settings.db_path)
    if os.path.isdir(p):
        p = os.path.join(p, "hellokube.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)
    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS deployments (
              name TEXT PRIMARY KEY,
              replicas INTEGER NOT NULL,
              selector TEXT NOT NULL,  -- json object
              template TEXT NOT NULL,  -- json object
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS services (
              name TEXT PRIMARY KEY,
              type TEXT NOT NULL,
              selector TEXT NOT NULL,
              ports TEXT NOT NULL,  -- json list, ordered
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pods (
              seq INTEGER PRIMARY KEY AUTOINCREMENT,
              id TEXT NOT NULL UNIQUE,
              owner TEXT NOT NULL,
              labels TEXT NOT NULL,
              image TEXT NOT NULL,
              container_port INTEGER NOT NULL,
              status TEXT NOT NULL,  -- Pending|Running|CrashLoop|Terminated
              restart_count INTEGER NOT NULL DEFAULT 0,
              not_before REAL NOT NULL DEFAULT 0,
              handle TEXT,
              host TEXT,
              ports TEXT NOT NULL DEFAULT '{}',
              last_error TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              deployment TEXT,
              pod TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_pods_owner ON pods(owner);
            """
        )


def log_event(level: str, message: str, deployment: str | None = None, pod: str | None = None) -> None:
    level = level.upper()
    lvl = logging.getLevelName(level)
    logger.log(lvl if isinstance(lvl, int) else logging.INFO, "%s", message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, deployment, pod, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, deployment, pod, message),
        )


def latest_events(limit: int = 100, deployment: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if deployment:
            rows = conn.execute(
                "SELECT * FROM events WHERE deployment=? ORDER BY id DESC LIMIT ?", (deployment, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


# --- Deployments ---


def _row_to_deployment(r: sqlite3.Row) -> Deployment:
    tpl = json.loads(r["template"])
    return Deployment(
        name=r["name"],
        desired_replicas=r["replicas"],
        selector=json.loads(r["selector"]),
        template=PodTemplate(
            labels=tpl["labels"],
            image=parse_image(tpl["image"]),
            container_port=tpl["container_port"],
        ),
        created_at=r["created_at"],
    )


def upsert_deployment(d: Deployment) -> Deployment:
    template = {"labels": d.template.labels, "image": str(d.template.image), "container_port": d.template.container_port}
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO deployments (name, replicas, selector, template, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              replicas=excluded.replicas,
              selector=excluded.selector,
              template=excluded.template
            """,
            (d.name, d.desired_replicas, json.dumps(d.selector), json.dumps(template), d.created_at),
        )
        row = conn.execute("SELECT * FROM deployments WHERE name=?", (d.name,)).fetchone()
        return _row_to_deployment(row)


def get_deployment(name: str) -> Deployment | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM deployments WHERE name=?", (name,)).fetchone()
        return _row_to_deployment(row) if row else None


def list_deployments() -> list[Deployment]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM deployments ORDER BY name").fetchall()
        return [_row_to_deployment(r) for r in rows]


def set_deployment_replicas(name: str, replicas: int) -> bool:
    with connect() as conn:
        cur = conn.execute("UPDATE deployments SET replicas=? WHERE name=?", (replicas, name))
        return cur.rowcount > 0


def delete_deployment(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM deployments WHERE name=?", (name,))
        return cur.rowcount > 0


# --- Services ---


def _row_to_service(r: sqlite3.Row) -> Service:
    return Service(
        name=r["name"],
        selector=json.loads(r["selector"]),
        type=ServiceType(r["type"]),
        ports=tuple(
            ServicePort(
                port=p["port"],
                target_port=p["target_port"],
                protocol=Protocol(p["protocol"]),
                node_port=p.get("node_port"),
            )
            for p in json.loads(r["ports"])
        ),
        created_at=r["created_at"],
    )


def _assign_ports(conn: sqlite3.Connection, svc: Service) -> Service:
    """Allocate missing node ports and check port uniqueness across services."""
    others = [_row_to_service(r) for r in conn.execute("SELECT * FROM services WHERE name<>?", (svc.name,))]
    prev_row = conn.execute("SELECT * FROM services WHERE name=?", (svc.name,)).fetchone()
    previous = {(p.protocol, p.port): p.node_port for p in _row_to_service(prev_row).ports} if prev_row else {}

    used = {np for o in others for np in o.node_ports()}
    if svc.type is ServiceType.EXTERNAL_LOAD_BALANCED:
        lb_ports = {
            (p.protocol, p.port) for o in others if o.type is ServiceType.EXTERNAL_LOAD_BALANCED for p in o.ports
        }
        for p in svc.ports:
            if (p.protocol, p.port) in lb_ports:
                raise PortConflict(f"Load balancer port {p.protocol.value}/{p.port} is already in use.")

    if not svc.type.uses_node_ports:
        return svc

    for p in svc.ports:
        if p.node_port is not None:
            if p.node_port in used:
                raise PortConflict(f"nodePort {p.node_port} is already allocated.")
            used.add(p.node_port)

    ports: list[ServicePort] = []
    for p in svc.ports:
        if p.node_port is None:
            keep = previous.get((p.protocol, p.port))
            if keep is not None and keep not in used:
                node_port = keep
            else:
                node_port = next(
                    (n for n in range(settings.node_port_min, settings.node_port_max + 1) if n not in used), None
                )
                if node_port is None:
                    raise PortConflict("No free nodePort left in the reserved range.")
            used.add(node_port)
            p = replace(p, node_port=node_port)
        ports.append(p)
    return replace(svc, ports=tuple(ports))


def upsert_service(svc: Service) -> Service:
    with connect() as conn:
        svc = _assign_ports(conn, svc)
        ports = [
            {"protocol": p.protocol.value, "port": p.port, "target_port": p.target_port, "node_port": p.node_port}
            for p in svc.ports
        ]
        conn.execute(
            """
            INSERT INTO services (name, type, selector, ports, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              type=excluded.type,
              selector=excluded.selector,
              ports=excluded.ports
            """,
            (svc.name, svc.type.value, json.dumps(svc.selector), json.dumps(ports), svc.created_at),
        )
        row = conn.execute("SELECT * FROM services WHERE name=?", (svc.name,)).fetchone()
        return _row_to_service(row)


def get_service(name: str) -> Service | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM services WHERE name=?", (name,)).fetchone()
        return _row_to_service(row) if row else None


def list_services() -> list[Service]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM services ORDER BY name").fetchall()
        return [_row_to_service(r) for r in rows]


def delete_service(name: str) -> bool:
    with connect() as conn:
        cur = conn.execute("DELETE FROM services WHERE name=?", (name,))
        return cur.rowcount > 0


# --- Pods ---


def _row_to_pod(r: sqlite3.Row) -> Pod:
    return Pod(
        id=r["id"],
        owner=r["owner"],
        labels=json.loads(r["labels"]),
        image=r["image"],
        container_port=r["container_port"],
        status=PodStatus(r["status"]),
        restart_count=r["restart_count"],
        not_before=r["not_before"],
        handle=r["handle"],
        host=r["host"],
        ports={int(k): v for k, v in json.loads(r["ports"]).items()},
        last_error=r["last_error"],
        seq=r["seq"],
        created_at=r["created_at"],
    )


def insert_pod(pod: Pod) -> Pod:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO pods (id, owner, labels, image, container_port, status, restart_count, not_before, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pod.id,
                pod.owner,
                json.dumps(pod.labels),
                pod.image,
                pod.container_port,
                pod.status.value,
                pod.restart_count,
                pod.not_before,
                pod.created_at,
            ),
        )
        row = conn.execute("SELECT * FROM pods WHERE id=?", (pod.id,)).fetchone()
        return _row_to_pod(row)


def get_pod(pod_id: str) -> Pod | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM pods WHERE id=?", (pod_id,)).fetchone()
        return _row_to_pod(row) if row else None


def list_pods(owner: str | None = None) -> list[Pod]:
    with connect() as conn:
        if owner:
            rows = conn.execute("SELECT * FROM pods WHERE owner=? ORDER BY seq", (owner,)).fetchall()
        else:
            rows = conn.execute("SELECT * FROM pods ORDER BY seq").fetchall()
        return [_row_to_pod(r) for r in rows]


def set_pod_status(pod_id: str, status: PodStatus, last_error: str | None = None) -> None:
    with connect() as conn:
        if last_error is None:
            conn.execute("UPDATE pods SET status=? WHERE id=?", (status.value, pod_id))
        else:
            conn.execute("UPDATE pods SET status=?, last_error=? WHERE id=?", (status.value, last_error, pod_id))


def set_pod_started(pod_id: str, handle: str, host: str, ports: dict[int, int]) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE pods SET handle=?, host=?, ports=? WHERE id=?",
            (handle, host, json.dumps({str(k): v for k, v in ports.items()}), pod_id),
        )


def set_pod_labels(pod_id: str, labels: dict[str, str]) -> bool:
    with connect() as conn:
        cur = conn.execute("UPDATE pods SET labels=? WHERE id=?", (json.dumps(labels), pod_id))
        return cur.rowcount > 0


def delete_pod(pod_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM pods WHERE id=?", (pod_id,))
