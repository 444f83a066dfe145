"""
Inbound webhook verification.

Every request from a sovereign platform is authenticated before any business
logic runs. Checks, in order:

1. ``X-Signature``, ``X-Timestamp`` and ``X-Nonce`` are present and the nonce
   fits its column (128 characters)
2. The timestamp is within the freshness window of now
3. The platform exists and is active
4. The HMAC signature over ``timestamp.body`` matches (constant time)
5. The nonce has never been seen (claimed with a unique insert)

The nonce is claimed last so unauthenticated traffic cannot burn nonces.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.errors import ReplayDetected, ValidationError, WebhookAuthenticationError
from tkoin_settlement.webhooks.nonces import NonceStore
from tkoin_settlement.webhooks.platforms import PlatformRegistry
from tkoin_settlement.webhooks.signing import (
    HEADER_NONCE,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    verify_signature,
)

logger = logging.getLogger(__name__)

# Width of the nonce column.
MAX_NONCE_LENGTH = 128


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


class InboundWebhookVerifier:
    def __init__(
        self,
        platforms: PlatformRegistry,
        nonces: NonceStore,
        freshness_window_seconds: int = 300,
        nonce_retention_seconds: int = 300,
    ) -> None:
        self.platforms = platforms
        self.nonces = nonces
        self.freshness_window_seconds = freshness_window_seconds
        self.nonce_retention_seconds = nonce_retention_seconds

    def verify(
        self,
        platform_id: str,
        body: str,
        headers: Mapping[str, str],
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """
        Authenticate a request and return its decoded JSON payload.

        Raises:
            WebhookAuthenticationError: Any check fails.
            ReplayDetected: The nonce was already used.
            ValidationError: The authenticated body is not a JSON object.
        """
        signature = _header(headers, HEADER_SIGNATURE)
        timestamp = _header(headers, HEADER_TIMESTAMP)
        nonce = _header(headers, HEADER_NONCE)
        if not signature or not timestamp or not nonce:
            raise WebhookAuthenticationError(
                "Missing required headers",
                required=[HEADER_SIGNATURE, HEADER_TIMESTAMP, HEADER_NONCE],
            )
        if len(nonce) > MAX_NONCE_LENGTH:
            raise WebhookAuthenticationError("Nonce too long", max_length=MAX_NONCE_LENGTH)

        try:
            request_ts = int(timestamp)
        except ValueError as exc:
            raise WebhookAuthenticationError("Malformed timestamp") from exc

        now = now or utcnow()
        drift = abs(int(now.timestamp()) - request_ts)
        if drift > self.freshness_window_seconds:
            raise WebhookAuthenticationError(
                "Request timestamp outside freshness window",
                max_age=self.freshness_window_seconds,
                drift=drift,
            )

        platform = self.platforms.require_active(platform_id)

        if not verify_signature(platform.api_secret, timestamp, body, signature):
            logger.warning(
                "security_event=invalid_signature platform=%s nonce=%s", platform_id, nonce
            )
            raise WebhookAuthenticationError("Invalid signature", platform_id=platform_id)

        request_time = datetime.fromtimestamp(request_ts, tz=timezone.utc)
        try:
            self.nonces.claim(
                nonce,
                platform_id,
                request_timestamp=request_time,
                expires_at=request_time + timedelta(seconds=self.nonce_retention_seconds),
            )
        except ReplayDetected:
            logger.warning("security_event=replay_detected platform=%s nonce=%s", platform_id, nonce)
            raise

        try:
            payload = json.loads(body) if body else {}
        except ValueError as exc:
            raise ValidationError("Body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Body must be a JSON object")
        return payload
