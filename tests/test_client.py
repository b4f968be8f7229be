from __future__ import annotations

import json

import httpx
import pytest
from tenacity import wait_none

import client as client_module
from client import PlaygroundClient, main, parse_args


class FakeServer:
    """Replays a scripted sequence of /status bodies."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.requests = []
        self.load_failures = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if path == "/status":
            body = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=body)
        if path == "/generate":
            config = json.loads(request.content)
            return httpx.Response(202, json={"run_id": 1, "seed": config.get("seed", 7)})
        if path == "/acknowledge":
            return httpx.Response(200, json={"acknowledged": True})
        if path == "/cancel":
            return httpx.Response(200, json={"cancelled": True})
        if path == "/load-model":
            if self.load_failures:
                self.load_failures -= 1
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json={"ok": True, "requested_model_path": "m", "message": "load started"})
        return httpx.Response(404)


def _response(result, tokens, finish_reason=None):
    return {
        "prompt": "ab",
        "result": result,
        "duration": 0.1,
        "tokens": tokens,
        "finish_reason": finish_reason,
        "seed": 7,
    }


def _client(server: FakeServer) -> PlaygroundClient:
    http = httpx.Client(transport=httpx.MockTransport(server.handler))
    return PlaygroundClient(base_url="http://inference", client=http)


def test_complete_streams_partials_and_acknowledges():
    server = FakeServer([
        {"state": "running", "model_version": 1, "model_path": "m"},
        {"state": "streaming", "model_version": 1, "model_path": "m", "response": _response("x", 1)},
        {"state": "streaming", "model_version": 1, "model_path": "m", "response": _response("xy", 2)},
        {"state": "completed", "model_version": 1, "model_path": "m",
         "response": _response("xyz", 3, "end_of_sequence")},
    ])
    partials = []
    response = _client(server).complete({"prompt": "ab"}, on_partial=partials.append, poll_interval=0)

    assert partials == ["x", "xy", "xyz"]
    assert response["finish_reason"] == "end_of_sequence"
    assert ("POST", "/acknowledge") in server.requests


def test_complete_raises_on_failed_run():
    server = FakeServer([
        {"state": "failed", "model_version": 1, "model_path": "m",
         "error": {"kind": "evaluation_failed", "message": "boom"}},
    ])
    with pytest.raises(RuntimeError, match="evaluation_failed"):
        _client(server).complete({"prompt": "ab"}, poll_interval=0)
    assert ("POST", "/acknowledge") in server.requests


def test_wait_until_ready_surfaces_load_error():
    server = FakeServer([
        {"state": "loading", "model_version": 0, "model_path": None, "load_progress": 0.5},
        {"state": "missing_model", "model_version": 0, "model_path": None,
         "error": {"kind": "model_load_failed", "message": "no such file"}},
    ])
    with pytest.raises(RuntimeError, match="no such file"):
        _client(server).wait_until_ready(check_interval=0)


def test_load_model_retries_transport_errors(monkeypatch):
    monkeypatch.setattr(PlaygroundClient.load_model.retry, "wait", wait_none())
    server = FakeServer([{"state": "idle", "model_version": 1, "model_path": "m"}])
    server.load_failures = 2

    assert _client(server).load_model("m")["ok"] is True
    assert server.requests.count(("POST", "/load-model")) == 3


def test_parse_args_defaults():
    args = parse_args(["hello", "--sampler", "greedy"])
    assert args.prompt == "hello"
    assert args.sampler == "greedy"
    assert args.seed == -1


def test_main_prints_completion(monkeypatch, capsys):
    monkeypatch.delenv("MODEL_PATH", raising=False)
    server = FakeServer([
        {"state": "idle", "model_version": 1, "model_path": "m"},
        {"state": "completed", "model_version": 1, "model_path": "m",
         "response": _response("4", 1, "token_budget_exhausted")},
    ])
    http = httpx.Client(transport=httpx.MockTransport(server.handler))
    monkeypatch.setattr(client_module, "PlaygroundClient", lambda base_url: PlaygroundClient(base_url, client=http))

    assert main(["2+2=", "--sampler", "greedy", "--tokens", "1", "--url", "http://inference"]) == 0

    out = capsys.readouterr().out
    assert out.startswith("4")
    assert "[token_budget_exhausted] 1 tokens" in out
    assert ("POST", "/generate") in server.requests
    assert ("POST", "/acknowledge") in server.requests
