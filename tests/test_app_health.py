"""Health endpoint and application lifespan tests."""

from fastapi.testclient import TestClient

from churchregistry import app as app_module
from churchregistry.service.runtime import get_runtime


def test_healthz_reports_components():
    client = TestClient(app_module.app)

    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["version"] == app_module.__version__
    assert body["checks"]["database"] == {"status": "healthy", "type": "memory"}
    assert body["checks"]["redis"] == {"status": "not_configured"}
    assert body["checks"]["filesystem"]["status"] == "healthy"


def test_healthz_flags_broken_store(monkeypatch):
    runtime = get_runtime()

    def broken():
        raise ConnectionError("store offline")

    monkeypatch.setattr(runtime.store, "verify_connection", broken)
    client = TestClient(app_module.app)

    body = client.get("/healthz").json()

    assert body["status"] == "unhealthy"
    assert body["checks"]["database"]["status"] == "unhealthy"


def test_lifespan_runs_sweeper():
    with TestClient(app_module.app) as client:
        body = client.get("/healthz").json()
        assert body["checks"]["refresh_sweeper"] == {"status": "running"}
        runtime = get_runtime()

    assert not runtime.token_sweeper.is_running


def test_security_headers_present():
    response = TestClient(app_module.app).get("/healthz")

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"].startswith("no-store")
    assert "default-src 'none'" in response.headers["Content-Security-Policy"]
