from __future__ import annotations

import json
from pathlib import Path
from types import SimpleNamespace

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from margin_watch import web_server
from margin_watch.audit import AuditSettings, get_audit_logger
from margin_watch.watcher import (
    Account,
    InMemoryAccountStore,
    Position,
    PositionSide,
    RiskWatcher,
    ThresholdConfig,
    WatcherConfig,
)
from margin_watch.web import create_app


def _store() -> InMemoryAccountStore:
    store = InMemoryAccountStore()
    store.put_account(Account("bob", cash_balance=10))
    store.open_position(Position("s1", "bob", PositionSide.SHORT, 5, 100, 120, margin_reserved=100))
    return store


def _config() -> WatcherConfig:
    return WatcherConfig(thresholds=ThresholdConfig(alert_threshold_percent=70, close_threshold_percent=20))


@pytest.fixture
def audit_path(tmp_path: Path) -> Path:
    return tmp_path / "audit.log"


@pytest.fixture
def client(audit_path: Path) -> TestClient:
    watcher = RiskWatcher(
        _store(),
        _config(),
        audit_logger=get_audit_logger(AuditSettings(log_path=audit_path)),
    )
    return TestClient(create_app(watcher, audit_log_path=audit_path))


def test_healthz_reports_stopped_watcher(client: TestClient):
    response = client.get("/healthz")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "stopped"
    assert body["tick_in_progress"] is False
    assert body["last_tick_at"] is None


def test_manual_tick_applies_and_is_reported(client: TestClient):
    response = client.post("/api/watcher/tick")

    assert response.status_code == 200
    report = response.json()
    assert report["counts"]["applied"] == 1
    outcome = report["outcomes"][0]
    assert outcome["owner_id"] == "bob"
    assert outcome["decision"]["kind"] == "liquidate"

    status = client.get("/api/watcher").json()
    assert status["config"]["thresholds"]["close_threshold_percent"] == 20
    assert status["last_report"]["tick_id"] == report["tick_id"]

    counters = {
        entry["name"]: entry["value"] for entry in client.get("/api/metrics").json()["counters"] if not entry["labels"]
    }
    assert counters["watcher_ticks_total"] == 1


def test_audit_endpoint_lists_applied_actions(client: TestClient):
    client.post("/api/watcher/tick")

    response = client.get("/api/audit", params={"action": "watcher.liquidate"})

    assert response.status_code == 200
    entries = response.json()["entries"]
    assert [entry["action"] for entry in entries] == ["watcher.liquidate"]


def test_audit_endpoint_validates_limit(client: TestClient):
    assert client.get("/api/audit", params={"limit": 0}).status_code == 400
    assert client.get("/api/audit", params={"limit": 501}).status_code == 400


def test_audit_endpoint_disabled_without_log():
    app = create_app(RiskWatcher(_store(), _config()))

    with TestClient(app) as client:
        assert client.get("/api/audit").status_code == 404


def test_manual_tick_conflicts_while_busy():
    watcher = RiskWatcher(_store(), _config())
    # simulate a tick owned by the scheduler
    watcher._tick_in_progress = True

    response = TestClient(create_app(watcher)).post("/api/watcher/tick")

    assert response.status_code == 409
    assert response.json()["detail"] == "A risk tick is already in progress"


def test_autostart_follows_app_lifecycle():
    watcher = RiskWatcher(_store(), _config())
    app = create_app(watcher, autostart=True)

    with TestClient(app) as client:
        assert client.get("/healthz").json()["state"] == "running"

    assert watcher.state.value == "stopped"


def test_main_wires_store_and_serves(tmp_path: Path, monkeypatch):
    calls = []
    monkeypatch.setattr(
        web_server,
        "_import_uvicorn",
        lambda: SimpleNamespace(run=lambda app, **kwargs: calls.append((app, kwargs))),
    )
    for name in ("RISK_DRY_RUN", "RISK_TICK_INTERVAL_SECONDS", "RISK_AUDIT_LOG_PATH"):
        monkeypatch.delenv(name, raising=False)
    store_path = tmp_path / "accounts.json"

    web_server.main(["--store", str(store_path), "--dry-run", "--port", "9001"])

    app, kwargs = calls[0]
    assert kwargs["port"] == 9001
    assert app.state.watcher.config.actions.dry_run is True


def test_main_rejects_bad_config(tmp_path: Path):
    config_path = tmp_path / "watcher.json"
    config_path.write_text(json.dumps({"alert_threshold_percent": 5, "close_threshold_percent": 10}), encoding="utf-8")

    with pytest.raises(SystemExit):
        web_server.main(["--config", str(config_path), "--store", str(tmp_path / "accounts.json")])


def test_main_rejects_corrupt_store(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(web_server, "_import_uvicorn", lambda: pytest.fail("server must not start"))
    store_path = tmp_path / "accounts.json"
    store_path.write_text(json.dumps({"accounts": [{"cash_balance": 5}]}), encoding="utf-8")

    with pytest.raises(SystemExit) as excinfo:
        web_server.main(["--store", str(store_path)])

    assert excinfo.value.code == 2
