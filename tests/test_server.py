from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from fakes import FakeRuntime, make_loader
from model_manager import ModelManager
from server import create_app


@pytest.fixture
def slow_manager():
    mgr = ModelManager(loader=make_loader(lambda: FakeRuntime(eval_delay=0.01)), grace_seconds=0.0)
    yield mgr
    mgr.close()


def test_healthz(manager):
    client = TestClient(create_app(manager))
    assert client.get("/healthz").json() == {"ok": True}


def test_ready_reports_missing_model_and_load_error(manager):
    client = TestClient(create_app(manager))
    resp = client.get("/ready")
    assert resp.status_code == 503
    assert resp.json()["state"] == "missing_model"

    assert client.post("/load-model", json={"model_path": "missing/model"}).status_code == 200
    manager.wait(5)
    resp = client.get("/ready")
    assert resp.status_code == 503
    assert resp.json()["error"]["kind"] == "model_load_failed"


def test_generate_roundtrip(manager):
    client = TestClient(create_app(manager))
    resp = client.post("/load-model", json={"model_path": "models/tiny"})
    assert resp.json() == {"ok": True, "requested_model_path": "models/tiny", "message": "load started"}
    manager.wait(5)
    assert client.get("/ready").status_code == 200

    resp = client.post("/generate", json={"prompt": "abc", "token_budget": 3, "sampler_kind": "greedy", "seed": 5})
    assert resp.status_code == 202
    assert resp.json()["seed"] == 5
    manager.wait(5)

    st = client.get("/status").json()
    assert st["state"] == "completed"
    assert st["model_version"] == 1
    assert st["response"]["tokens"] == 3
    assert st["response"]["finish_reason"] == "token_budget_exhausted"
    assert st["response"]["seed"] == 5

    assert client.post("/acknowledge").json() == {"acknowledged": True}
    assert client.get("/status").json()["state"] == "idle"


def test_generate_without_model_is_unavailable(manager):
    client = TestClient(create_app(manager))
    resp = client.post("/generate", json={"prompt": "abc"})
    assert resp.status_code == 503


def test_generate_rejects_invalid_config(manager):
    client = TestClient(create_app(manager))
    assert client.post("/generate", json={"prompt": "abc", "top_p": 1.5}).status_code == 422
    assert client.post("/generate", json={"prompt": "abc", "bogus": 1}).status_code == 422


def test_reentrant_generate_conflicts_and_cancel(slow_manager):
    client = TestClient(create_app(slow_manager))
    client.post("/load-model", json={"model_path": "models/slow"})
    slow_manager.wait(5)

    assert client.post("/generate", json={"prompt": "abc", "token_budget": 300}).status_code == 202
    assert client.post("/generate", json={"prompt": "abc"}).status_code == 409
    assert client.post("/load-model", json={"model_path": "models/other"}).status_code == 409

    assert client.post("/cancel").json() == {"cancelled": True}
    slow_manager.wait(5)
    st = client.get("/status").json()
    assert st["state"] == "completed"
    assert st["response"]["finish_reason"] == "cancelled"
    assert client.post("/cancel").json() == {"cancelled": False}


def test_load_conflicts_until_result_is_acknowledged(manager):
    client = TestClient(create_app(manager))
    client.post("/load-model", json={"model_path": "models/a"})
    manager.wait(5)
    client.post("/generate", json={"prompt": "abc", "token_budget": 2, "sampler_kind": "greedy"})
    manager.wait(5)

    resp = client.post("/load-model", json={"model_path": "models/b"})
    assert resp.status_code == 409
    assert "acknowledged" in resp.json()["detail"]
    assert client.get("/status").json()["state"] == "completed"

    client.post("/acknowledge")
    assert client.post("/load-model", json={"model_path": "models/b"}).status_code == 200
    manager.wait(5)
    assert client.get("/status").json()["model_path"] == "models/b"
