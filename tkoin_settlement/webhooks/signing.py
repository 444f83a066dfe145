"""
HMAC-SHA256 request signing shared by inbound verification and outbound delivery.

The signed message is ``f"{timestamp}.{body}"`` where ``body`` is the exact
request body string. Signatures travel in ``X-Signature`` as ``sha256=<hex>``
and the timestamp (unix seconds) in ``X-Timestamp``.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_PREFIX = "sha256="

HEADER_SIGNATURE = "X-Signature"
HEADER_TIMESTAMP = "X-Timestamp"
HEADER_NONCE = "X-Nonce"
HEADER_PLATFORM = "X-Platform-Id"


def canonical_body(payload: dict[str, Any]) -> str:
    """Compact, key-sorted JSON so sender and receiver sign identical bytes."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str)


def compute_signature(secret: str, timestamp: str | int, body: str) -> str:
    message = f"{timestamp}.{body}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_header(secret: str, timestamp: str | int, body: str) -> str:
    return SIGNATURE_PREFIX + compute_signature(secret, timestamp, body)


def verify_signature(secret: str, timestamp: str | int, body: str, provided: str) -> bool:
    """Constant-time comparison; accepts the value with or without the ``sha256=`` prefix."""
    if not provided:
        return False
    candidate = provided.strip()
    if candidate.startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX):]
    expected = compute_signature(secret, timestamp, body)
    return hmac.compare_digest(expected.encode("utf-8"), candidate.lower().encode("utf-8"))
