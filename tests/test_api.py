import pytest
from fastapi.testclient import TestClient

from hellokube.api import create_app

DEPLOYMENT = {
    "name": "hello",
    "replicas": 1,
    "selector": {"matchLabels": {"app": "demo"}},
    "template": {
        "metadata": {"labels": {"app": "demo"}},
        "spec": {"containers": [{"image": "hellokube/hello:1.0", "ports": [{"containerPort": 8080}]}]},
    },
}

SERVICE = {
    "name": "hello",
    "type": "NodePort",
    "selector": {"app": "demo"},
    "ports": [{"protocol": "TCP", "port": 80, "targetPort": 8080, "nodePort": 30080}],
}


@pytest.fixture
def client(fake_backend, inline_executor, probe):
    app = create_app(backend=fake_backend, executor=inline_executor, run_background=False)
    with TestClient(app) as c:
        yield c


def settle(client, passes=2):
    for _ in range(passes):
        assert client.post("/reconcile").status_code == 200


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_node_port_scenario(client):
    r = client.post("/deployments", json=DEPLOYMENT)
    assert r.status_code == 200
    assert r.json()["live"] == 1

    r = client.post("/services", json=SERVICE)
    assert r.status_code == 200
    assert r.json()["ports"][0]["nodePort"] == 30080

    settle(client)

    d = client.get("/deployments/hello").json()
    assert (d["live"], d["ready"]) == (1, 1)
    pod = d["pods"][0]
    assert pod["status"] == "Running"
    assert pod["labels"]["app"] == "demo"

    routes = client.get("/routes").json()
    assert routes["node_ports"] == [30080]
    (route,) = routes["routes"]
    assert [e["pod"] for e in route["endpoints"]] == [pod["id"]]


def test_deleted_pod_comes_back(client):
    client.post("/deployments", json=DEPLOYMENT)
    settle(client)
    (old,) = client.get("/pods", params={"deployment": "hello"}).json()

    assert client.delete(f"/pods/{old['id']}").status_code == 200
    settle(client)

    pods = client.get("/pods", params={"deployment": "hello"}).json()
    assert len(pods) == 1
    assert pods[0]["id"] != old["id"]
    assert pods[0]["status"] == "Running"


def test_scale_up_and_down(client):
    client.post("/deployments", json=DEPLOYMENT)
    r = client.post("/deployments/hello/scale", json={"replicas": 3})
    assert r.status_code == 200
    assert r.json()["live"] == 3

    r = client.post("/deployments/hello/scale", json={"replicas": 0})
    assert r.json()["live"] == 0
    assert client.get("/pods").json() == []


def test_relabel_removes_pod_from_routes(client):
    client.post("/deployments", json=DEPLOYMENT)
    client.post("/services", json=SERVICE)
    settle(client)
    (pod,) = client.get("/pods").json()

    r = client.put(f"/pods/{pod['id']}/labels", json={"labels": {"app": "debug"}})
    assert r.status_code == 200
    (route,) = client.get("/routes").json()["routes"]
    assert route["endpoints"] == []

    settle(client)
    (route,) = client.get("/routes").json()["routes"]
    assert len(route["endpoints"]) == 1
    assert route["endpoints"][0]["pod"] != pod["id"]


def test_delete_deployment_removes_pods(client):
    client.post("/deployments", json=DEPLOYMENT)
    settle(client)
    assert client.delete("/deployments/hello").json() == {"deleted": "hello"}
    assert client.get("/pods").json() == []
    assert client.get("/deployments").json() == []


def test_node_port_conflict_is_409(client):
    assert client.post("/services", json=SERVICE).status_code == 200
    other = {**SERVICE, "name": "other"}
    r = client.post("/services", json=other)
    assert r.status_code == 409


def test_node_port_is_assigned_when_omitted(client):
    svc = {**SERVICE, "ports": [{"port": 80, "targetPort": 8080}]}
    r = client.post("/services", json=svc)
    assert r.status_code == 200
    assert 30000 <= r.json()["ports"][0]["nodePort"] <= 32767


def test_invalid_descriptor_is_422(client):
    bad = {**DEPLOYMENT, "selector": {"matchLabels": {"app": "nope"}}}
    assert client.post("/deployments", json=bad).status_code == 422


def test_unknown_objects_are_404(client):
    assert client.get("/deployments/nope").status_code == 404
    assert client.post("/deployments/nope/scale", json={"replicas": 1}).status_code == 404
    assert client.delete("/deployments/nope").status_code == 404
    assert client.get("/services/nope").status_code == 404
    assert client.delete("/services/nope").status_code == 404
    assert client.delete("/pods/nope").status_code == 404
    assert client.put("/pods/nope/labels", json={"labels": {}}).status_code == 404


def test_events_are_recorded(client):
    client.post("/deployments", json=DEPLOYMENT)
    events = client.get("/events", params={"deployment": "hello"}).json()
    messages = [e["message"] for e in events]
    assert any(m.startswith("Applied deployment") for m in messages)
    assert any(m.startswith("Created pod") for m in messages)


def test_apply_publishes_routes(client):
    client.post("/services", json=SERVICE)
    before = client.get("/routes").json()["version"]

    client.post("/deployments", json=DEPLOYMENT)

    assert client.get("/routes").json()["version"] == before + 1
