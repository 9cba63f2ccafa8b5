"""Unit tests for the health endpoint and the request middleware."""

from fastapi.testclient import TestClient

from billflow.main import app


def test_health_check():
    """Test that the liveness probe answers without a database."""
    client = TestClient(app)
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_trailing_slash_is_served():
    """Test that both spellings of a path are served without a redirect."""
    client = TestClient(app)
    response = client.get("/health/", follow_redirects=False)

    assert response.status_code == 200


def test_request_id_is_echoed():
    """Test that a caller's request ID is returned, and one is generated otherwise."""
    client = TestClient(app)

    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"

    response = client.get("/health")
    assert response.headers["X-Request-ID"]
