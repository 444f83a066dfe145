"""
Tests for the HTTP adapter.

Validates:
- Health endpoint
- Inbound webhooks are authenticated before any business logic
- Settlement events create a settlement record; others are acknowledged
- Service errors map to JSON error bodies with their status codes
- Malformed or oversized payload fields are validation errors, not 500s
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from tkoin_settlement.api.app import app, state
from tkoin_settlement.webhooks.signing import canonical_body, signature_header

API_SECRET = "platform-api-secret"
TOKEN = 10**9


def _post(client, platform_id, payload, secret=API_SECRET, nonce="nonce-1"):
    body = canonical_body(payload)
    ts = str(int(time.time()))
    return client.post(
        f"/v1/webhooks/{platform_id}",
        content=body,
        headers={
            "Content-Type": "application/json",
            "X-Signature": signature_header(secret, ts, body),
            "X-Timestamp": ts,
            "X-Nonce": nonce,
        },
    )


@pytest.fixture
def client(services):
    services.platforms.register_platform("betwin", "BetWin", api_secret=API_SECRET)
    state.services = services
    yield TestClient(app)
    state.services = None


class TestApi:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_deposit_creates_settlement(self, client, services):
        resp = _post(client, "betwin", {
            "event": "settlement.deposit",
            "data": {"userId": "user-7", "amount": "12.5", "reference": "dep-42"},
        })
        assert resp.status_code == 201
        settlement = services.settlements.get_settlement(resp.json()["settlementId"])
        assert settlement.settlement_type == "deposit"
        assert settlement.tkoin_amount == 12_500_000_000
        assert settlement.reference == "dep-42"

    def test_other_events_acknowledged(self, client):
        resp = _post(client, "betwin", {"event": "user.updated", "data": {}})
        assert resp.status_code == 200
        assert resp.json() == {"received": True, "event": "user.updated"}

    def test_missing_fields(self, client):
        resp = _post(client, "betwin", {"event": "settlement.withdrawal", "data": {"userId": "u"}})
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"

    def test_bad_signature_rejected(self, client, services):
        resp = _post(client, "betwin", {
            "event": "settlement.deposit",
            "data": {"userId": "user-7", "amount": "1"},
        }, secret="wrong")
        assert resp.status_code == 401
        assert services.settlements.undelivered_notifications() == []

    def test_replay_rejected(self, client, services):
        payload = {"event": "settlement.deposit", "data": {"userId": "user-7", "amount": "1"}}
        assert _post(client, "betwin", payload, nonce="n-1").status_code == 201
        replay = _post(client, "betwin", payload, nonce="n-1")
        assert replay.status_code == 401
        assert replay.json()["error"] == "replay_detected"
        assert len(services.settlements.undelivered_notifications()) == 1

    def test_missing_headers(self, client):
        resp = client.post("/v1/webhooks/betwin", content="{}")
        assert resp.status_code == 401

    def test_unknown_platform(self, client):
        resp = _post(client, "ghost", {"event": "ping"})
        assert resp.status_code == 401

    @pytest.mark.parametrize("payload", [
        {"event": ["settlement.deposit"]},
        {"event": {"name": "settlement.deposit"}},
        {"event": "settlement.deposit", "data": "user-7"},
        {"event": "settlement.deposit", "data": [{"userId": "user-7", "amount": "1"}]},
        {"event": "settlement.deposit", "data": {"userId": ["user-7"], "amount": "1"}},
        {"event": "settlement.deposit", "data": {"userId": "u" * 65, "amount": "1"}},
        {"event": "settlement.deposit", "data": {"userId": "user-7", "amount": "1", "reference": "r" * 65}},
        {"event": "settlement.deposit", "data": {"userId": "user-7", "amount": "1", "reference": 42}},
        {"event": "settlement.deposit", "data": {"userId": "user-7", "amount": "1e25"}},
    ])
    def test_malformed_payload_is_validation_error(self, client, services, payload):
        resp = _post(client, "betwin", payload)
        assert resp.status_code == 400
        assert resp.json()["error"] == "validation_error"
        assert services.settlements.undelivered_notifications() == []

    def test_identifiers_at_column_width_accepted(self, client):
        resp = _post(client, "betwin", {
            "event": "settlement.deposit",
            "data": {"userId": "u" * 64, "amount": "1", "reference": "r" * 64},
        })
        assert resp.status_code == 201

    def test_oversized_nonce_rejected(self, client):
        resp = _post(client, "betwin", {"event": "ping"}, nonce="n" * 129)
        assert resp.status_code == 401
        assert resp.json()["error"] == "webhook_authentication_failed"
