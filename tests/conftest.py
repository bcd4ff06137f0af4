import os as _os
import sys
from concurrent.futures import Executor, Future
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from hellokube import db, reconciler as reconciler_mod  # noqa: E402
from hellokube.images import parse_image  # noqa: E402
from hellokube.pod_ops import PodStartError, StartedPod  # noqa: E402


class InlineExecutor(Executor):
    """Runs submitted calls immediately so a reconcile pass is deterministic."""

    def submit(self, fn, *args, **kwargs):
        f = Future()
        try:
            f.set_result(fn(*args, **kwargs))
        except Exception as e:
            f.set_exception(e)
        return f


class FakeBackend:
    """In-memory pod backend; images named ``missing/*`` fail to start."""

    def __init__(self):
        self.running = set()
        self.started = []
        self.stopped = []
        self._next_port = 40000

    def start(self, pod):
        if parse_image(pod.image).name.startswith("missing/"):
            raise PodStartError(f"Image not resolvable: {pod.image}")
        handle = f"fake-{pod.id}"
        self._next_port += 1
        self.running.add(handle)
        self.started.append(pod.id)
        return StartedPod(handle=handle, host="127.0.0.1", ports={pod.container_port: self._next_port})

    def stop(self, handle):
        self.running.discard(handle)
        self.stopped.append(handle)

    def is_running(self, handle):
        return handle in self.running

    def crash(self, handle):
        self.running.discard(handle)


@pytest.fixture(autouse=True)
def store(tmp_path, monkeypatch):
    """Isolated sqlite db per test."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "hellokube.db")))
    db.init_db()
    return db


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def inline_executor():
    return InlineExecutor()


@pytest.fixture
def probe(monkeypatch):
    """Controls the health probe result used by the reconciler."""
    state = {"ok": True, "calls": []}

    def fake_check_health(url, timeout_s=2.0):
        state["calls"].append(url)
        if state["ok"]:
            return True, "Healthy", 1.0
        return False, "No response", 1.0

    monkeypatch.setattr(reconciler_mod, "check_health", fake_check_health)
    return state
