import pytest
from fastapi.testclient import TestClient

from main import create_app


@pytest.fixture
def client(orch):
    app = create_app(orch, start_loops=False)
    with TestClient(app) as c:
        yield c


def _register(client, name="api", replicas=2, **extra):
    r = client.post("/services", json={"name": name, "replicas": replicas, **extra})
    assert r.status_code == 201, r.text
    return r.json()


def test_register_and_read_service(client):
    svc = _register(client, category="feature", required_dependencies=["db"])
    assert svc["status"] == "healthy"
    assert svc["category"] == "feature"
    assert svc["dependencies"]["required"] == ["db"]
    assert len(svc["instances"]) == 2
    assert svc["instances"][0]["address"].startswith("http://api-")

    r = client.get(f"/services/{svc['id']}")
    assert r.status_code == 200
    assert r.json()["id"] == svc["id"]

    listed = client.get("/services", params={"name": "api"}).json()
    assert [s["id"] for s in listed] == [svc["id"]]


def test_unknown_ids_are_404(client):
    for path in ("/services/svc_nope", "/deployments/dep_nope", "/services/svc_nope/health", "/resolve/nope"):
        r = client.get(path)
        assert r.status_code == 404, path
        assert "detail" in r.json()


def test_invalid_registration_is_422(client):
    assert client.post("/services", json={"name": "Not Valid"}).status_code == 422
    assert client.post("/services", json={"name": "api", "strategy": "yolo"}).status_code == 422
    assert client.post("/services", json={"name": "api", "health_path": "http://evil/x"}).status_code == 422


def test_deployment_lifecycle(client, orch):
    svc = _register(client, replicas=2)

    r = client.post(f"/services/{svc['id']}/deployments", json={"version": "2.0.0", "strategy": "rolling"})
    assert r.status_code == 202
    dep = r.json()
    assert dep["status"] == "pending"
    assert dep["active"] is True

    r = client.post(f"/services/{svc['id']}/deployments", json={"version": "3.0.0"})
    assert r.status_code == 409

    orch.deployments.run_pending()

    dep = client.get(f"/deployments/{dep['id']}").json()
    assert dep["status"] == "deployed"
    assert [h["action"] for h in dep["history"]] == ["created", "started", "completed"]
    assert client.get(f"/services/{svc['id']}").json()["version"] == "2.0.0"

    r = client.post(f"/deployments/{dep['id']}/rollback")
    assert r.status_code == 200
    assert r.json()["status"] == "rollback"
    assert client.get(f"/services/{svc['id']}").json()["version"] == "1.0.0"

    listed = client.get("/deployments", params={"service_id": svc["id"]}).json()
    assert [d["id"] for d in listed] == [dep["id"]]


def test_cancel_endpoint(client):
    svc = _register(client)
    dep = client.post(f"/services/{svc['id']}/deployments", json={"version": "2.0.0"}).json()

    r = client.post(f"/deployments/{dep['id']}/cancel")
    assert r.status_code == 200
    assert r.json()["status"] == "failed"
    assert client.post(f"/deployments/{dep['id']}/cancel").status_code == 409


def test_scale_endpoint(client):
    svc = _register(client, replicas=1)
    r = client.post(f"/services/{svc['id']}/scale", json={"replicas": 3})
    assert r.status_code == 200
    assert len(r.json()["instances"]) == 3

    r = client.post(f"/services/{svc['id']}/scale", json={"replicas": 50})
    assert r.status_code == 422


def test_metrics_push_and_views(client):
    svc = _register(client, replicas=1)
    iid = svc["instances"][0]["id"]

    r = client.post(f"/instances/{iid}/metrics", json={"cpu": 42.0, "memory": 12.5, "connections": 3})
    assert r.status_code == 200
    assert client.post("/instances/inst_nope/metrics", json={"cpu": 1, "memory": 1}).status_code == 404
    assert client.post(f"/instances/{iid}/metrics", json={"cpu": 150, "memory": 1}).status_code == 422

    m = client.get(f"/services/{svc['id']}/metrics").json()
    assert m["instances"][0]["cpu"] == 42.0
    assert m["instances"][0]["connections"] == 3

    h = client.get(f"/services/{svc['id']}/health").json()
    assert h["status"] == "healthy"

    g = client.get("/metrics").json()
    assert g["services"]["total"] == 1


def test_resolve_endpoint(client):
    _register(client, name="search", replicas=2)
    r = client.get("/resolve/search")
    assert r.status_code == 200
    assert len(r.json()["endpoints"]) == 2


def test_config_endpoints(client):
    cfg = client.get("/config").json()
    assert cfg["load_balancing"]["algorithm"] == "least_connections"

    r = client.patch("/config", json={"load_balancing": {"algorithm": "random"}})
    assert r.status_code == 200
    assert r.json()["load_balancing"]["algorithm"] == "random"

    r = client.patch("/config", json={"deployment": {"rolling_update": {"max_surge": 0, "max_unavailable": 0}}})
    assert r.status_code == 422
    assert client.get("/config").json()["deployment"]["rolling_update"]["max_surge"] == 1


def test_events_traces_and_deregister(client):
    svc = _register(client, name="worker", replicas=1)

    r = client.delete(f"/services/{svc['id']}")
    assert r.status_code == 200
    assert r.json()["status"] == "stopped"
    assert client.get(f"/services/{svc['id']}").status_code == 404

    events = client.get("/events", params={"limit": 10}).json()
    assert events[0]["message"] == "Deregistered service"
    assert events[0]["service_name"] == "worker"

    traces = client.get("/traces").json()
    assert any(t["operation"] == "service.register" for t in traces)
