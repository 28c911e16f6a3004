from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(ROOT_DIR))

import wagateway.api as wa_api
from wagateway.tests.fakes import FakeEngine


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def gateway_client(monkeypatch: pytest.MonkeyPatch, engine: FakeEngine):
    monkeypatch.setenv("WA_START_TIMEOUT", "2")
    monkeypatch.delenv("ENGINE_WEBHOOK_TOKEN", raising=False)
    monkeypatch.setattr(wa_api, "WawebEngine", lambda *args, **kwargs: engine)
    app = wa_api.create_app()
    with TestClient(app) as client:
        yield client, engine


@pytest.fixture
def fire(gateway_client):
    client, engine = gateway_client

    def _fire(name: str, event: str, **data) -> dict:
        target = engine.client(name)
        payload = {"clientId": name, "instanceId": target.instance_id, "event": event, **data}
        response = client.post("/engine/events", json=payload)
        assert response.status_code == 200, response.text
        return response.json()

    return _fire
