"""
Outbound webhook delivery — Tkoin → sovereign platforms.

Async httpx client. Each attempt is signed fresh (new timestamp and nonce)
with the platform's webhook secret. Delivery is bounded: a per-attempt
timeout, at most ``max_attempts`` attempts with exponential backoff, and no
retry on client errors other than 429.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from tkoin_settlement.webhooks.signing import (
    HEADER_NONCE,
    HEADER_PLATFORM,
    HEADER_SIGNATURE,
    HEADER_TIMESTAMP,
    canonical_body,
    signature_header,
)

logger = logging.getLogger(__name__)

USER_AGENT = "Tkoin-Protocol/1.0"


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    attempts: int
    status_code: int | None = None
    response: str | None = None
    error: str | None = None


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based): base * 2**(attempt-1), capped."""
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def is_retryable(status_code: int) -> bool:
    """Rate limiting and server errors may succeed later; other rejections are final."""
    return status_code == 429 or status_code >= 500


class WebhookEmitter:
    """
    Signed webhook sender.

    Usage:
        emitter = WebhookEmitter()
        result = await emitter.deliver(platform_id, url, secret, "deposit.completed", data)
        await emitter.close()
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        default_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.default_timeout = default_timeout
        self._transport = transport
        self._sleep = sleep
        self._client: httpx.AsyncClient | None = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT, "Content-Type": "application/json"},
                timeout=self.default_timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def deliver(
        self,
        platform_id: str,
        url: str,
        secret: str,
        event: str,
        data: dict[str, Any],
        timeout: float | None = None,
    ) -> DeliveryResult:
        client = await self._ensure_client()
        last_error: str | None = None
        last_status: int | None = None
        last_body: str | None = None

        for attempt in range(1, self.max_attempts + 1):
            timestamp = str(int(time.time()))
            body = canonical_body({"event": event, "data": data, "timestamp": int(timestamp)})
            headers = {
                HEADER_PLATFORM: platform_id,
                HEADER_TIMESTAMP: timestamp,
                HEADER_NONCE: str(uuid.uuid4()),
                HEADER_SIGNATURE: signature_header(secret, timestamp, body),
            }

            try:
                resp = await client.post(
                    url,
                    content=body.encode("utf-8"),
                    headers=headers,
                    timeout=timeout or self.default_timeout,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
                logger.warning(
                    "Webhook delivery error: platform=%s event=%s attempt=%d error=%s",
                    platform_id, event, attempt, last_error,
                )
            else:
                last_status = resp.status_code
                last_body = resp.text[:1000]
                if resp.is_success:
                    logger.info(
                        "Webhook delivered: platform=%s event=%s attempts=%d status=%d",
                        platform_id, event, attempt, resp.status_code,
                    )
                    return DeliveryResult(
                        delivered=True,
                        attempts=attempt,
                        status_code=resp.status_code,
                        response=last_body,
                    )

                last_error = f"HTTP {resp.status_code}"
                if not is_retryable(resp.status_code):
                    logger.error(
                        "Webhook rejected by platform, not retrying: platform=%s event=%s status=%d",
                        platform_id, event, resp.status_code,
                    )
                    return DeliveryResult(
                        delivered=False,
                        attempts=attempt,
                        status_code=resp.status_code,
                        response=last_body,
                        error=last_error,
                    )
                logger.warning(
                    "Webhook delivery failed: platform=%s event=%s attempt=%d status=%d",
                    platform_id, event, attempt, resp.status_code,
                )

            if attempt < self.max_attempts:
                await self._sleep(backoff_delay(attempt, self.base_delay, self.max_delay))

        logger.error(
            "Webhook delivery gave up: platform=%s event=%s attempts=%d error=%s",
            platform_id, event, self.max_attempts, last_error,
        )
        return DeliveryResult(
            delivered=False,
            attempts=self.max_attempts,
            status_code=last_status,
            response=last_body,
            error=last_error,
        )
