import time

import pytest
from fastapi.testclient import TestClient

from tradebridge.bridge import VenueBridge
from tradebridge.common.config import BridgeConfig
from tradebridge.service.app import create_app


def _client(**config_overrides) -> TestClient:
    cfg = BridgeConfig(token="tok", **config_overrides)
    return TestClient(create_app(bridge=VenueBridge(cfg), start_connection=False))


def _poll_status(client: TestClient, predicate, *, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get("/status").json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"status never matched: {body}")
        time.sleep(0.01)


def test_health_reports_link_state() -> None:
    with _client() as client:
        res = client.get("/health")
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert body["connected"] is False
    assert body["authorized"] is False
    assert body["time"]


def test_status_shape() -> None:
    with _client() as client:
        body = client.get("/status").json()
    assert set(body) == {"connected", "authorized", "state", "lastError", "defaults", "ticks", "trade", "uptime"}
    assert body["state"] == "Disconnected"
    assert body["ticks"] == {"symbol": None, "last": None, "buffer_size": 0}
    assert body["trade"] == {"inProgress": False, "queue_length": 0, "active": None, "lastResult": None}


@pytest.mark.parametrize(
    "payload,error",
    [
        ({}, "contract_type is required"),
        ({"contract_type": "", "duration": 5, "stake": 1}, "contract_type is required"),
        ({"contract_type": "CALL", "duration": None, "stake": 1}, "duration is required"),
        ({"contract_type": "CALL", "duration": 5}, "stake is required"),
        ({"contract_type": "CALL", "duration": 5, "stake": ""}, "stake is required"),
    ],
)
def test_trade_validation_returns_400_without_state_change(payload, error) -> None:
    with _client() as client:
        res = client.post("/trade", json=payload)
        assert res.status_code == 400
        assert res.json() == {"ok": False, "error": error}
        trade = client.get("/status").json()["trade"]
    assert trade == {"inProgress": False, "queue_length": 0, "active": None, "lastResult": None}


def test_trade_without_body_is_rejected() -> None:
    with _client() as client:
        res = client.post("/trade")
    assert res.status_code == 400
    assert res.json() == {"ok": False, "error": "contract_type is required"}


def test_malformed_json_is_rejected() -> None:
    with _client() as client:
        res = client.post("/trade", content=b"{not json", headers={"Content-Type": "application/json"})
    assert res.status_code == 400
    assert res.json()["ok"] is False


def test_trade_is_accepted_and_fails_while_unauthorized() -> None:
    with _client() as client:
        res = client.post("/trade", json={"contract_type": "DIGITEVEN", "duration": 3, "stake": 0.35})
        assert res.status_code == 200
        body = res.json()
        assert body["ok"] is True
        assert body["accepted"] is True
        assert body["queued"] is False
        assert body["request_id"]

        status = _poll_status(client, lambda s: s["trade"]["lastResult"] is not None)
    last = status["trade"]["lastResult"]
    assert last["request_id"] == body["request_id"]
    assert last["status"] == "error"
    assert last["error"] == "not authorized"


def test_subscribe_requires_symbol() -> None:
    with _client() as client:
        assert client.post("/subscribe", json={}).json() == {"ok": False, "error": "symbol is required"}
        res = client.post("/subscribe", json={"symbol": "  "})
    assert res.status_code == 400


def test_subscribe_reports_venue_failure_as_500() -> None:
    with _client() as client:
        res = client.post("/subscribe", json={"symbol": "R_100"})
    assert res.status_code == 500
    assert res.json() == {"ok": False, "error": "WebSocket not open"}


def test_set_defaults_merges_and_is_visible_in_status() -> None:
    with _client() as client:
        res = client.post("/set-defaults", json={"symbol": "R_100"})
        assert res.json() == {"ok": True, "defaults": {"symbol": "R_100", "currency": "USD", "basis": "stake"}}
        res = client.post("/set-defaults", json={"currency": "EUR", "basis": "payout"})
        assert res.json()["defaults"] == {"symbol": "R_100", "currency": "EUR", "basis": "payout"}
        assert client.post("/set-defaults").json()["defaults"]["symbol"] == "R_100"
        assert client.get("/status").json()["defaults"]["currency"] == "EUR"


def test_metrics_exposition() -> None:
    with _client() as client:
        client.post("/trade", json={"contract_type": "CALL", "duration": 5, "stake": 1})
        res = client.get("/metrics")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/plain")
    assert "trades_submitted_total 1.0" in res.text
    assert "# TYPE ws_connection_ready gauge" in res.text


def test_request_id_is_propagated_or_generated() -> None:
    with _client() as client:
        echoed = client.get("/health", headers={"X-Request-ID": "req-123"})
        generated = client.get("/health")
    assert echoed.headers["X-Request-ID"] == "req-123"
    assert len(generated.headers["X-Request-ID"]) == 32


def test_cors_wildcard_allows_any_origin() -> None:
    with _client() as client:
        res = client.get("/health", headers={"Origin": "https://dashboard.example"})
    assert res.headers["access-control-allow-origin"] == "*"
    assert "access-control-allow-credentials" not in res.headers


def test_cors_allowlist_rejects_unknown_origin() -> None:
    with _client(cors_origins=("https://ok.example",)) as client:
        allowed = client.get("/health", headers={"Origin": "https://ok.example"})
        denied = client.get("/health", headers={"Origin": "https://evil.example"})
    assert allowed.headers["access-control-allow-origin"] == "https://ok.example"
    assert "access-control-allow-origin" not in denied.headers


def test_set_defaults_coerces_non_string_values() -> None:
    with _client() as client:
        res = client.post("/set-defaults", json={"symbol": 100, "currency": "EUR"})
    assert res.status_code == 200
    assert res.json()["defaults"] == {"symbol": "100", "currency": "EUR", "basis": "stake"}


def test_trade_engine_error_returns_500() -> None:
    bridge = VenueBridge(BridgeConfig(token="tok"))

    def broken_submit(payload):
        raise RuntimeError("engine unavailable")

    bridge.submit_trade = broken_submit
    with TestClient(create_app(bridge=bridge, start_connection=False)) as client:
        res = client.post("/trade", json={"contract_type": "CALL", "duration": 5, "stake": 1})
    assert res.status_code == 500
    assert res.json() == {"ok": False, "error": "engine unavailable"}
