from fastapi.testclient import TestClient

from costcontrol.core.version import get_version_info
from costcontrol.main import app
from costcontrol.services.recalculation_queue import recalculation_queue


def test_health_reports_queue_and_consistency():
    client = TestClient(app)

    response = client.get("/system/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "ok"
    assert data["consistency_mode"] == "advisory"
    assert data["recalculation_queue"]["mode"] == recalculation_queue.mode
    assert data["recalculation_queue"]["recent_failures"] == []
    assert response.headers["X-Request-ID"]


def test_version_endpoint():
    client = TestClient(app)

    response = client.get("/system/version")

    assert response.status_code == 200
    assert set(response.json()) == {"version", "gitSha", "buildTime", "env", "consistencyMode"}


def test_version_reports_build_overrides(monkeypatch):
    get_version_info.cache_clear()
    monkeypatch.setenv("COSTCONTROL_GIT_SHA", "abc1234")
    monkeypatch.setenv("COSTCONTROL_ENV", "staging")
    client = TestClient(app)
    try:
        data = client.get("/system/version").json()
    finally:
        get_version_info.cache_clear()

    assert data["gitSha"] == "abc1234"
    assert data["env"] == "staging"
    assert data["consistencyMode"] == "advisory"


def test_caller_request_id_is_echoed():
    client = TestClient(app)

    response = client.get("/system/health", headers={"X-Request-ID": "ledger-42"})

    assert response.headers["X-Request-ID"] == "ledger-42"
