from __future__ import annotations

from fastapi.testclient import TestClient

from mock_api.app import create_app


def test_mock_api_auth_envelopes_and_counters() -> None:
    app = create_app()
    client = TestClient(app)

    r = client.get("/api/v1/builds")
    assert r.status_code == 401
    assert r.json() == {"error": "Authorization header required"}

    r = client.post("/api/v1/auth/login", json={"username": "admin", "password": "nope"})
    assert r.status_code == 401
    assert "error" in r.json()

    r = client.post("/api/v1/auth/login", json={"username": "admin", "password": "admin123"})
    assert r.status_code == 200, r.text
    token = r.json()["token"]
    headers = {"Authorization": f"Bearer {token}"}

    r = client.get("/api/v1/builds", params={"pipelineId": 2}, headers=headers)
    assert r.status_code == 200
    assert {b["id"] for b in r.json()["builds"]} == {3, 4}
    assert r.json()["builds"][0]["pipeline"]["name"] == "main-service"

    r = client.post("/api/v1/builds/2/cancel", headers=headers)
    assert r.status_code == 400
    assert r.json() == {"error": "Build is not running"}

    r = client.post("/api/v1/builds/1/cancel", headers=headers)
    assert r.status_code == 200
    assert client.get("/api/v1/builds/1", headers=headers).json()["build"]["status"] == "cancelled"

    r = client.get("/api/v1/deployments", params={"environment": "prod"}, headers=headers)
    assert [d["id"] for d in r.json()["deployments"]] == [1]

    calls = app.state.mock.calls
    assert calls["POST /api/v1/builds/{build_id}/cancel"] == 2
    assert calls["GET /api/v1/builds"] == 2

    assert app.state.mock.revoke(token) == 1
    assert client.get("/api/v1/projects", headers=headers).status_code == 401
