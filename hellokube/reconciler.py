from __future__ import annotations

import secrets
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from threading import Event, Lock, Thread
from typing import Any, Callable, Iterable

from . import db
from .health import check_health, pod_url
from .labels import selector_matches
from .models import Deployment, Pod, PodStatus
from .pod_ops import PodBackend, PodStartError, get_backend
from .routing import RouteTable
from .settings import settings


class ActionKind(str, Enum):
    CREATE = "create"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    deployment: str
    pod_id: str | None = None
    attempt: int = 0  # creation attempt; > 0 means replacing a crashed pod
    reason: str = ""


def owned_pods(deployment: Deployment, pods: Iterable[Pod]) -> list[Pod]:
    """Non-terminated pods created by ``deployment`` that still match its selector, oldest first."""
    owned = [
        p
        for p in pods
        if p.owner == deployment.name
        and p.status is not PodStatus.TERMINATED
        and selector_matches(deployment.selector, p.labels)
    ]
    return sorted(owned, key=lambda p: p.seq)


def reconcile(deployment: Deployment, observed: Iterable[Pod]) -> list[Action]:
    """Compare desired vs observed pods and return the corrective actions.

    CrashLoop pods are not live: each is terminated and its replacement
    carries the next attempt number so it can be started with backoff.
    Scale-down removes the oldest live pods first.
    """
    owned = owned_pods(deployment, observed)
    crashed = [p for p in owned if p.status is PodStatus.CRASH_LOOP]
    live = [p for p in owned if p.is_live]

    actions = [
        Action(ActionKind.TERMINATE, deployment.name, pod_id=p.id, reason="crash loop") for p in crashed
    ]

    missing = deployment.desired_replicas - len(live)
    if missing > 0:
        attempts = [p.restart_count + 1 for p in crashed]
        for i in range(missing):
            attempt = attempts[i] if i < len(attempts) else 0
            actions.append(
                Action(ActionKind.CREATE, deployment.name, attempt=attempt, reason="replace" if attempt else "scale up")
            )
    elif missing < 0:
        for p in live[: -missing]:
            actions.append(Action(ActionKind.TERMINATE, deployment.name, pod_id=p.id, reason="scale down"))
    return actions


def backoff_delay(attempt: int, base_s: float | None = None, max_s: float | None = None) -> float:
    base_s = settings.backoff_base_s if base_s is None else base_s
    max_s = settings.backoff_max_s if max_s is None else max_s
    if attempt <= 0:
        return 0.0
    return min(base_s * (2 ** (attempt - 1)), max_s)


def new_pod_id(deployment: str) -> str:
    return f"{deployment}-{secrets.token_hex(4)}"


class Reconciler:
    """Continuously reconciles desired state with actual state.

    Decisions are serialized per deployment; backend calls are fire-and-forget
    on a worker pool and their outcome is observed on later passes.
    """

    def __init__(
        self,
        routes: RouteTable,
        backend: PodBackend | None = None,
        executor: Executor | None = None,
        fail_threshold: int | None = None,
        start_timeout_s: float | None = None,
    ):
        self.routes = routes
        self.backend = backend or get_backend()
        self.fail_threshold = max(1, int(fail_threshold or settings.fail_threshold))
        self.start_timeout_s = settings.start_timeout_s if start_timeout_s is None else start_timeout_s
        self._pool = executor or ThreadPoolExecutor(max_workers=max(1, settings.pod_workers), thread_name_prefix="hk-pod")
        self._stop = Event()
        self._thr: Thread | None = None
        self._guard = Lock()
        self._locks: dict[str, Lock] = {}
        self._inflight: set[str] = set()  # pod ids with a start in progress
        self._fail_counts: dict[str, int] = {}
        self._pending_since: dict[str, float] = {}  # first time a started pod was seen not ready

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="hk-reconciler", daemon=True)
        self._thr.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thr:
            self._thr.join(timeout=timeout)

    def shutdown(self) -> None:
        """Stop the loop and release the backend.

        Containers outlive the control plane and are picked up again by handle
        on restart; local pod processes do not.
        """
        self.stop()
        close = getattr(self.backend, "close", None)
        if close is not None:
            close()
        if isinstance(self._pool, ThreadPoolExecutor):
            self._pool.shutdown(wait=False)

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                self.reconcile_once()
            except Exception as e:
                db.log_event("ERROR", f"Reconcile pass failed: {type(e).__name__}: {e}")
            self._stop.wait(max(0.1, settings.poll_interval_s))

    def _lock_for(self, deployment: str) -> Lock:
        with self._guard:
            return self._locks.setdefault(deployment, Lock())

    def _dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        def run() -> None:
            try:
                fn(*args)
            except Exception as e:
                db.log_event("ERROR", f"{fn.__name__} failed: {type(e).__name__}: {e}")

        self._pool.submit(run)

    # --- one pass ---

    def reconcile_once(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self.observe(now)
        self.collect_orphans()
        for d in db.list_deployments():
            self.reconcile_deployment(d, now)
        self.start_due_pods(now)
        self.refresh_routes()

    def reconcile_deployment(self, d: Deployment, now: float | None = None) -> list[Action]:
        now = time.time() if now is None else now
        with self._lock_for(d.name):
            # ``d`` may predate a scale or delete that landed before the lock.
            d = db.get_deployment(d.name)
            if d is None:
                return []
            actions = reconcile(d, db.list_pods(owner=d.name))
            for a in actions:
                if a.kind is ActionKind.TERMINATE and a.pod_id:
                    self.terminate_pod(a.pod_id, a.reason)
                elif a.kind is ActionKind.CREATE:
                    self._create_pod(d, a, now)
        return actions

    def _create_pod(self, d: Deployment, a: Action, now: float) -> Pod:
        delay = backoff_delay(a.attempt)
        pod = db.insert_pod(
            Pod(
                id=new_pod_id(d.name),
                owner=d.name,
                labels=d.pod_labels(),
                image=str(d.template.image),
                container_port=d.template.container_port,
                restart_count=a.attempt,
                not_before=now + delay,
            )
        )
        msg = f"Created pod {pod.id} ({a.reason})"
        if delay:
            msg += f", starting in {delay:g}s"
        db.log_event("INFO", msg, deployment=d.name, pod=pod.id)
        return pod

    def terminate_pod(self, pod_id: str, reason: str = "") -> bool:
        pod = db.get_pod(pod_id)
        if pod is None or pod.status is PodStatus.TERMINATED:
            return False
        db.set_pod_status(pod_id, PodStatus.TERMINATED)
        with self._guard:
            self._fail_counts.pop(pod_id, None)
            self._pending_since.pop(pod_id, None)
        db.log_event("INFO", f"Terminating pod {pod_id} ({reason})", deployment=pod.owner, pod=pod_id)
        if pod.handle:
            self._dispatch(self._stop_pod, pod)
        else:
            # Not started, or its start is still in flight; _start_pod cleans up the latter.
            with self._guard:
                inflight = pod_id in self._inflight
            if not inflight:
                db.delete_pod(pod_id)
        return True

    def _stop_pod(self, pod: Pod) -> None:
        try:
            if pod.handle:
                self.backend.stop(pod.handle)
        finally:
            db.delete_pod(pod.id)

    def start_due_pods(self, now: float | None = None) -> None:
        now = time.time() if now is None else now
        for p in db.list_pods():
            if p.status is not PodStatus.PENDING or p.handle or not p.is_due(now):
                continue
            with self._guard:
                if p.id in self._inflight:
                    continue
                self._inflight.add(p.id)
            self._dispatch(self._start_pod, p)

    def _start_pod(self, pod: Pod) -> None:
        try:
            try:
                started = self.backend.start(pod)
            except PodStartError as e:
                current = db.get_pod(pod.id)
                if current is None or current.status is PodStatus.TERMINATED:
                    db.delete_pod(pod.id)
                    return
                db.set_pod_status(pod.id, PodStatus.CRASH_LOOP, last_error=str(e))
                db.log_event("ERROR", f"Pod {pod.id} failed to start: {e}", deployment=pod.owner, pod=pod.id)
                return

            current = db.get_pod(pod.id)
            if current is None or current.status is PodStatus.TERMINATED:
                self.backend.stop(started.handle)
                db.delete_pod(pod.id)
                return
            db.set_pod_started(pod.id, started.handle, started.host, started.ports)
            db.log_event("INFO", f"Started pod {pod.id} from {pod.image}", deployment=pod.owner, pod=pod.id)
        finally:
            with self._guard:
                self._inflight.discard(pod.id)

    def observe(self, now: float | None = None) -> None:
        """Advance pod statuses from backend state and health probes.

        A started pod that has not passed a probe within ``start_timeout_s``
        is put into CrashLoop so it gets replaced with backoff.
        """
        now = time.time() if now is None else now
        for p in db.list_pods():
            if p.status not in (PodStatus.PENDING, PodStatus.RUNNING) or not p.handle:
                continue

            if not self.backend.is_running(p.handle):
                self._crash(p, "Container exited")
                continue

            url = pod_url(p)
            if url is None:
                ok, msg = False, "Container port not reachable"
            else:
                ok, msg, _ = check_health(url, timeout_s=settings.probe_timeout_s)

            if p.status is PodStatus.PENDING:
                if ok:
                    with self._guard:
                        self._pending_since.pop(p.id, None)
                    db.set_pod_status(p.id, PodStatus.RUNNING)
                    db.log_event("INFO", f"Pod {p.id} is running", deployment=p.owner, pod=p.id)
                    continue
                with self._guard:
                    since = self._pending_since.setdefault(p.id, now)
                if now - since >= self.start_timeout_s:
                    self._crash(p, f"Not ready after {self.start_timeout_s:g}s ({msg})")
                continue

            with self._guard:
                fails = 0 if ok else self._fail_counts.get(p.id, 0) + 1
                self._fail_counts[p.id] = fails
            if fails == 1:
                db.log_event("WARN", f"Pod {p.id} probe failed: {msg}", deployment=p.owner, pod=p.id)
            if fails >= self.fail_threshold:
                self._crash(p, f"{fails} consecutive probe failures ({msg})")

    def _crash(self, p: Pod, why: str) -> None:
        db.set_pod_status(p.id, PodStatus.CRASH_LOOP, last_error=why)
        with self._guard:
            self._fail_counts.pop(p.id, None)
            self._pending_since.pop(p.id, None)
        db.log_event("ERROR", f"Pod {p.id} entered CrashLoop: {why}", deployment=p.owner, pod=p.id)

    def collect_orphans(self) -> None:
        """Terminate pods whose deployment has been deleted."""
        names = {d.name for d in db.list_deployments()}
        for p in db.list_pods():
            if p.owner in names or p.status is PodStatus.TERMINATED:
                continue
            with self._lock_for(p.owner):
                self.terminate_pod(p.id, "deployment deleted")

    def refresh_routes(self) -> None:
        self.routes.publish(db.list_services(), db.list_pods())
