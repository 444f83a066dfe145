"""
Tests for the webhook protocol.

Validates:
- HMAC-SHA256 over ``timestamp.body`` and constant-time verification
- Inbound checks: headers, freshness, platform, signature, nonce (in that order)
- A forged request never consumes a nonce; a replayed one is rejected
- Nonces longer than the stored column are rejected before they are claimed
- Nonce purge after retention
- Outbound delivery: signed with the webhook secret, bounded retries, no retry on 4xx
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import time
from datetime import timedelta

import httpx
import pytest

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.errors import ReplayDetected, ValidationError, WebhookAuthenticationError
from tkoin_settlement.webhooks.emitter import WebhookEmitter, backoff_delay
from tkoin_settlement.webhooks.signing import (
    canonical_body,
    compute_signature,
    signature_header,
    verify_signature,
)

API_SECRET = "platform-api-secret"
WEBHOOK_SECRET = "platform-webhook-secret"


def signed_headers(body: str, secret: str = API_SECRET, nonce: str = "nonce-1", timestamp: int | None = None):
    ts = str(timestamp if timestamp is not None else int(time.time()))
    return {
        "X-Signature": signature_header(secret, ts, body),
        "X-Timestamp": ts,
        "X-Nonce": nonce,
    }


class TestSigning:
    def test_known_vector(self):
        expected = hmac.new(b"secret", b"1700000000.{}", hashlib.sha256).hexdigest()
        assert compute_signature("secret", 1700000000, "{}") == expected

    def test_verify_accepts_prefixed_and_bare(self):
        sig = compute_signature("secret", "1", "body")
        assert verify_signature("secret", "1", "body", sig)
        assert verify_signature("secret", "1", "body", "sha256=" + sig)
        assert verify_signature("secret", "1", "body", sig.upper())

    def test_verify_rejects_tampering(self):
        sig = compute_signature("secret", "1", "body")
        assert not verify_signature("secret", "2", "body", sig)
        assert not verify_signature("secret", "1", "body!", sig)
        assert not verify_signature("other", "1", "body", sig)
        assert not verify_signature("secret", "1", "body", "")

    def test_canonical_body_is_stable(self):
        assert canonical_body({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'


class TestInboundVerification:
    @pytest.fixture(autouse=True)
    def _setup(self, services):
        self.services = services
        self.verifier = services.verifier
        services.platforms.register_platform(
            "betwin", "BetWin",
            webhook_url="https://betwin.example/hook",
            api_secret=API_SECRET,
            webhook_secret=WEBHOOK_SECRET,
        )
        self.body = canonical_body({"event": "ping", "data": {}})

    def test_valid_request(self):
        payload = self.verifier.verify("betwin", self.body, signed_headers(self.body))
        assert payload == {"event": "ping", "data": {}}

    def test_headers_are_case_insensitive(self):
        headers = {k.lower(): v for k, v in signed_headers(self.body).items()}
        assert self.verifier.verify("betwin", self.body, headers)["event"] == "ping"

    @pytest.mark.parametrize("missing", ["X-Signature", "X-Timestamp", "X-Nonce"])
    def test_missing_header(self, missing):
        headers = signed_headers(self.body)
        del headers[missing]
        with pytest.raises(WebhookAuthenticationError, match="Missing required headers"):
            self.verifier.verify("betwin", self.body, headers)

    def test_malformed_timestamp(self):
        headers = signed_headers(self.body)
        headers["X-Timestamp"] = "yesterday"
        with pytest.raises(WebhookAuthenticationError):
            self.verifier.verify("betwin", self.body, headers)

    @pytest.mark.parametrize("offset", [-400, 400])
    def test_stale_or_future_timestamp(self, offset):
        headers = signed_headers(self.body, timestamp=int(time.time()) + offset)
        with pytest.raises(WebhookAuthenticationError, match="freshness"):
            self.verifier.verify("betwin", self.body, headers)

    def test_timestamp_at_window_edge_accepted(self):
        now = utcnow()
        headers = signed_headers(self.body, timestamp=int(now.timestamp()) - 300)
        assert self.verifier.verify("betwin", self.body, headers, now=now)

    def test_unknown_platform(self):
        with pytest.raises(WebhookAuthenticationError, match="platform"):
            self.verifier.verify("ghost", self.body, signed_headers(self.body))

    def test_inactive_platform(self):
        self.services.platforms.set_active("betwin", False)
        with pytest.raises(WebhookAuthenticationError):
            self.verifier.verify("betwin", self.body, signed_headers(self.body))

    def test_webhook_secret_does_not_authenticate_inbound(self):
        headers = signed_headers(self.body, secret=WEBHOOK_SECRET)
        with pytest.raises(WebhookAuthenticationError, match="Invalid signature"):
            self.verifier.verify("betwin", self.body, headers)

    def test_forged_request_does_not_burn_nonce(self):
        forged = signed_headers(self.body, secret="attacker", nonce="shared-nonce")
        with pytest.raises(WebhookAuthenticationError):
            self.verifier.verify("betwin", self.body, forged)
        genuine = signed_headers(self.body, nonce="shared-nonce")
        assert self.verifier.verify("betwin", self.body, genuine)

    def test_replay_rejected(self):
        headers = signed_headers(self.body, nonce="once")
        self.verifier.verify("betwin", self.body, headers)
        with pytest.raises(ReplayDetected):
            self.verifier.verify("betwin", self.body, headers)

    def test_replay_is_authentication_failure(self):
        assert issubclass(ReplayDetected, WebhookAuthenticationError)
        assert ReplayDetected("x").status_code == 401

    def test_tampered_body(self):
        headers = signed_headers(self.body)
        with pytest.raises(WebhookAuthenticationError):
            self.verifier.verify("betwin", self.body.replace("ping", "pong"), headers)

    def test_nonce_length_bound(self):
        assert self.verifier.verify("betwin", self.body, signed_headers(self.body, nonce="n" * 128))
        with pytest.raises(WebhookAuthenticationError, match="Nonce too long"):
            self.verifier.verify("betwin", self.body, signed_headers(self.body, nonce="x" * 129))

    def test_authenticated_non_object_body(self):
        body = "[1, 2, 3]"
        with pytest.raises(ValidationError):
            self.verifier.verify("betwin", body, signed_headers(body))


class TestNonceStore:
    @pytest.fixture(autouse=True)
    def _setup(self, services):
        self.services = services
        self.nonces = services.nonces
        services.platforms.register_platform("betwin", "BetWin")

    def test_claim_twice(self):
        now = utcnow()
        self.nonces.claim("n-1", "betwin", now, now + timedelta(minutes=5))
        with pytest.raises(ReplayDetected):
            self.nonces.claim("n-1", "betwin", now, now + timedelta(minutes=5))

    def test_purge_expired(self):
        now = utcnow()
        self.nonces.claim("old", "betwin", now - timedelta(minutes=10), now - timedelta(minutes=5))
        self.nonces.claim("fresh", "betwin", now, now + timedelta(minutes=5))
        assert self.nonces.purge_expired(now) == 1
        # purged nonce may be claimed again, retained one may not
        self.nonces.claim("old", "betwin", now, now + timedelta(minutes=5))
        with pytest.raises(ReplayDetected):
            self.nonces.claim("fresh", "betwin", now, now + timedelta(minutes=5))

    def test_cleanup_sweep(self):
        now = utcnow()
        self.nonces.claim("old", "betwin", now - timedelta(minutes=10), now - timedelta(minutes=5))
        result = self.services.nonce_cleanup.run_once()
        assert result.processed == 1
        assert result.failed == 0


class TestWebhookEmitter:
    def _emitter(self, handler, **kwargs):
        sleeps: list[float] = []

        async def sleep(delay: float) -> None:
            sleeps.append(delay)

        emitter = WebhookEmitter(transport=httpx.MockTransport(handler), sleep=sleep, **kwargs)
        return emitter, sleeps

    def _deliver(self, emitter):
        async def go():
            try:
                return await emitter.deliver(
                    "betwin", "https://betwin.example/hook", WEBHOOK_SECRET,
                    "deposit.completed", {"settlementId": "s-1", "amount": "10"},
                )
            finally:
                await emitter.close()

        return asyncio.run(go())

    def test_signed_delivery(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="ok")

        emitter, sleeps = self._emitter(handler)
        result = self._deliver(emitter)
        assert result.delivered and result.attempts == 1
        assert sleeps == []

        request = seen[0]
        body = request.content.decode("utf-8")
        assert verify_signature(
            WEBHOOK_SECRET, request.headers["X-Timestamp"], body, request.headers["X-Signature"]
        )
        assert request.headers["X-Nonce"]
        assert request.headers["X-Platform-Id"] == "betwin"
        assert request.headers["User-Agent"] == "Tkoin-Protocol/1.0"
        assert '"event":"deposit.completed"' in body

    def test_each_attempt_uses_fresh_nonce(self):
        nonces: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            nonces.append(request.headers["X-Nonce"])
            return httpx.Response(503)

        emitter, _ = self._emitter(handler)
        self._deliver(emitter)
        assert len(set(nonces)) == 3

    def test_server_errors_retry_with_backoff(self):
        emitter, sleeps = self._emitter(lambda request: httpx.Response(500, text="boom"))
        result = self._deliver(emitter)
        assert not result.delivered
        assert result.attempts == 3
        assert result.status_code == 500
        assert sleeps == [1.0, 2.0]

    def test_client_error_not_retried(self):
        emitter, sleeps = self._emitter(lambda request: httpx.Response(400, text="bad"))
        result = self._deliver(emitter)
        assert not result.delivered
        assert result.attempts == 1
        assert result.error == "HTTP 400"
        assert sleeps == []

    def test_rate_limit_retried(self):
        responses = iter([httpx.Response(429), httpx.Response(200, text="ok")])
        emitter, sleeps = self._emitter(lambda request: next(responses))
        result = self._deliver(emitter)
        assert result.delivered and result.attempts == 2
        assert sleeps == [1.0]

    def test_transport_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        emitter, _ = self._emitter(handler, max_attempts=2)
        result = self._deliver(emitter)
        assert not result.delivered
        assert result.attempts == 2
        assert "ConnectError" in result.error

    def test_backoff_is_capped(self):
        assert backoff_delay(1, 1.0, 60.0) == 1.0
        assert backoff_delay(3, 1.0, 60.0) == 4.0
        assert backoff_delay(10, 1.0, 60.0) == 60.0
