import json
import os

import pytest

import cli
from hellokube.api_models import DeploymentDescriptor, ServiceDescriptor

EXAMPLE = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples", "hello-demo.yaml")


class _Resp:
    def __init__(self, payload, ok=True):
        self._payload = payload
        self.ok = ok

    def json(self):
        return self._payload


def test_example_manifest_is_valid():
    from pathlib import Path

    docs = cli.load_documents(Path(EXAMPLE))
    assert [d["kind"] for d in docs] == ["Deployment", "Service"]

    d = DeploymentDescriptor(**docs[0]).to_deployment()
    assert (d.name, d.desired_replicas, d.selector) == ("hello", 1, {"app": "demo"})
    s = ServiceDescriptor(**docs[1]).to_service()
    assert s.ports[0].node_port == 30080


def test_json_documents(tmp_path):
    p = tmp_path / "svc.json"
    p.write_text(json.dumps({"kind": "Service", "name": "x", "selector": {"a": "b"}, "ports": [{}]}))
    assert cli.load_documents(p)[0]["name"] == "x"


def test_missing_kind_is_rejected(tmp_path):
    p = tmp_path / "bad.yaml"
    p.write_text("name: hello\n")
    with pytest.raises(ValueError):
        cli.load_documents(p)


def test_apply_posts_each_document(monkeypatch, capsys):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json["name"]))
        return _Resp({"name": json["name"]})

    monkeypatch.setattr(cli.requests, "post", fake_post)
    assert cli.main(["--api", "http://api:8000/", "apply", "-f", EXAMPLE]) == 0
    assert calls == [("http://api:8000/deployments", "hello"), ("http://api:8000/services", "hello")]


def test_apply_reports_failure(monkeypatch, capsys):
    monkeypatch.setattr(cli.requests, "post", lambda url, json=None, timeout=None: _Resp({"detail": "x"}, ok=False))
    assert cli.main(["apply", "-f", EXAMPLE]) == 1


def test_scale_and_delete(monkeypatch, capsys):
    seen = []
    monkeypatch.setattr(
        cli.requests, "post", lambda url, json=None, timeout=None: seen.append(("POST", url, json)) or _Resp({})
    )
    monkeypatch.setattr(cli.requests, "delete", lambda url, timeout=None: seen.append(("DELETE", url, None)) or _Resp({}))

    assert cli.main(["scale", "hello", "--replicas", "3"]) == 0
    assert cli.main(["delete", "pod", "hello-abc"]) == 0
    assert seen == [
        ("POST", "http://localhost:8000/deployments/hello/scale", {"replicas": 3}),
        ("DELETE", "http://localhost:8000/pods/hello-abc", None),
    ]
