from unittest.mock import patch

from reelhouse import create_app
from reelhouse.routes import health
from reelhouse.services.container import build_services


def test_health_reports_components(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "healthy"
    assert body["services"]["database"] == "ok"
    assert body["services"]["disk"] == "ok"
    assert body["services"]["redis"] == "disabled"
    assert body["services"]["upload_sessions"] == 0
    assert body["services"]["transcode_pool"]["workers"] == 2


def test_health_unhealthy_when_database_fails(client, services):
    with patch.object(services.store, "ping", side_effect=RuntimeError("database is locked")):
        resp = client.get("/health")

    assert resp.status_code == 503
    body = resp.get_json()
    assert body["status"] == "unhealthy"
    assert body["services"]["database"].startswith("error:")


def test_health_unhealthy_when_disk_is_low(make_settings, supervisor, dispatcher):
    services = build_services(make_settings(min_disk_free=1), supervisor=supervisor, dispatcher=dispatcher)
    client = create_app(services=services).test_client()

    with patch.object(health.shutil, "disk_usage") as disk_usage:
        disk_usage.return_value.free = 0
        resp = client.get("/health")

    assert resp.status_code == 503
    assert resp.get_json()["services"]["disk"].startswith("low:")


def test_version(client):
    resp = client.get("/version")
    assert resp.status_code == 200
    assert "version" in resp.get_json()


def test_metrics_disabled(client):
    resp = client.get("/metrics")
    assert resp.status_code == 404


def test_request_id_is_echoed(client):
    resp = client.get("/version", headers={"X-Request-ID": "trace-abc-123"})
    assert resp.headers["X-Request-ID"] == "trace-abc-123"

    resp = client.get("/version", headers={"X-Request-ID": "bad id"})
    assert resp.headers["X-Request-ID"] != "bad id"
