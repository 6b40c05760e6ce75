"""Tests for the health endpoint."""


def test_health_returns_ok(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "app": "slop"}


def test_unknown_route_is_404(client):
    assert client.get("/api/conversations/").status_code == 404
