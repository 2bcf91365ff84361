"""Error envelope, request id propagation and health checks."""

from fastapi.testclient import TestClient


def test_validation_error_uses_envelope(client: TestClient):
    response = client.post("/api/user/login", json={"username": "alice"})

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error_code"] == "VALIDATION_FAILED"
    assert "password" in body["message"]
    assert body["data"] is None


def test_unknown_route_is_not_found(client: TestClient):
    response = client.get("/api/definitely-not-here")

    assert response.status_code == 404
    assert response.json()["error_code"] == "NOT_FOUND"


def test_method_not_allowed_keeps_envelope(client: TestClient):
    response = client.delete("/api/subscription/plans")

    assert response.status_code == 405
    assert response.json()["success"] is False


def test_request_id_is_echoed(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-abc"})

    assert response.headers["X-Request-ID"] == "req-abc"


def test_request_id_is_generated(client: TestClient):
    response = client.get("/health")

    assert len(response.headers["X-Request-ID"]) == 36


def test_health_reports_services(client: TestClient):
    body = client.get("/health").json()

    assert body["status"] == "healthy"
    assert body["services"]["database"] == "up"
    assert body["services"]["oidc"] == "disabled"


def test_readiness_when_oidc_enabled_but_not_initialised(client: TestClient, monkeypatch):
    monkeypatch.setenv("ZITADEL_ENABLED", "true")

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["services"]["oidc"] == "down: not initialised"
