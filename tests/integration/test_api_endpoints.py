from fastapi.testclient import TestClient
import pytest

from pgsub.api.http_app import build_app
from pgsub.services.bootstrap import build_runtime_container


@pytest.mark.integration
def test_skeleton_api_endpoints_are_available(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    container = build_runtime_container(run_id="integration-api")
    app = build_app(run_id="integration-api", api_deps=container.api_deps)

    with TestClient(app) as client:
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json() == {"status": "ok", "mode": "skeleton"}

        created = client.post("/topics", json={"name": "orders"})
        assert created.status_code == 201
        assert created.json()["name"] == "orders"
        assert client.post("/topics", json={"name": "orders"}).status_code == 409
        assert client.post("/topics", json={"name": ""}).status_code == 422

        pushed = client.post("/topics/orders/messages", content=b"\x00\x01raw")
        assert pushed.status_code == 201
        message_id = pushed.json()["message_id"]

        status = client.get(f"/messages/{message_id}")
        assert status.status_code == 200
        assert status.json()["status"] == "new"
        assert status.json()["topic"] == "orders"
        assert client.get("/messages/999").status_code == 404

        assert client.post("/topics/missing/messages", content=b"x").status_code == 404
        assert client.delete("/topics/orders").status_code == 409
        assert client.delete("/topics/missing").status_code == 404

        client.post("/topics", json={"name": "empty"})
        assert client.delete("/topics/empty").status_code == 204
        assert [item["name"] for item in client.get("/topics").json()["items"]] == ["orders"]

        ready = client.get("/ready")
        assert ready.status_code == 200
        assert ready.json()["status"] == "ready"
        assert ready.json()["listener_connected"] is True
        assert ready.json()["subscriptions"] == []


@pytest.mark.integration
def test_ready_reports_subscription_metrics(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    container = build_runtime_container(run_id="integration-ready")
    app = build_app(run_id="integration-ready", api_deps=container.api_deps)

    with TestClient(app) as client:
        client.post("/topics", json={"name": "orders"})
        client.portal.call(container.pubsub.subscribe, "orders", lambda content: None)

        payload = client.get("/ready").json()
        assert len(payload["subscriptions"]) == 1
        subscription = payload["subscriptions"][0]
        assert subscription["topic"] == "orders"
        assert subscription["metrics"]["started"] is True
        assert subscription["metrics"]["stopped"] is False

    assert container.pubsub.subscriptions == []
