"""
Tkoin settlement API — the thin HTTP adapter over the core services.

FastAPI application providing:
- Inbound platform webhooks (authenticated before any business logic)
- Health

Core services never see HTTP objects; this module translates requests into
service calls and ``TkoinError`` subclasses into JSON responses.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tkoin_settlement.config import settings
from tkoin_settlement.domain.schema import SettlementType
from tkoin_settlement.domain.units import tokens_to_base_units
from tkoin_settlement.errors import TkoinError, ValidationError

logger = logging.getLogger(__name__)

# Inbound events that create a settlement record.
SETTLEMENT_EVENTS = {
    "settlement.deposit": SettlementType.DEPOSIT,
    "settlement.withdrawal": SettlementType.WITHDRAWAL,
}

# Width of the settlement user_id and reference columns.
MAX_IDENTIFIER_LENGTH = 64


class ApiState:
    """Mutable application state injected at startup."""

    def __init__(self) -> None:
        self.services: Any = None
        self.startup_time: datetime = datetime.now(timezone.utc)


state = ApiState()


# ── Application lifecycle ──────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services unless the orchestrator (or a test) already injected them."""
    if state.services is None:
        from tkoin_settlement.container import build_services

        state.services = build_services(settings)
        state.services.ledger.initialize()
        logger.info("Tkoin API connected to settlement ledger")
    yield
    if state.services is not None:
        await state.services.emitter.close()
    logger.info("Tkoin API shutting down")


app = FastAPI(
    title="Tkoin Settlement API",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(TkoinError)
async def tkoin_error_handler(request: Request, exc: TkoinError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Request failed: %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── Routes ─────────────────────────────────────────────────────


@app.get("/health")
async def health() -> dict[str, Any]:
    return {
        "status": "ok" if state.services is not None else "starting",
        "uptime_seconds": int((datetime.now(timezone.utc) - state.startup_time).total_seconds()),
    }


@app.post("/v1/webhooks/{platform_id}")
async def receive_webhook(platform_id: str, request: Request) -> JSONResponse:
    raw = await request.body()
    try:
        body = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("Body must be UTF-8") from exc

    payload = state.services.verifier.verify(platform_id, body, request.headers)

    event = payload.get("event")
    if event is not None and not isinstance(event, str):
        raise ValidationError("event must be a string")
    settlement_type = SETTLEMENT_EVENTS.get(event)
    if settlement_type is None:
        logger.info("Webhook acknowledged: platform=%s event=%s", platform_id, event)
        return JSONResponse({"received": True, "event": event})

    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("data must be a JSON object")
    user_id = data.get("userId")
    if not user_id or data.get("amount") is None:
        raise ValidationError("userId and amount are required")
    if not isinstance(user_id, (str, int)) or isinstance(user_id, bool):
        raise ValidationError("userId must be a string")
    user_id = str(user_id)
    reference = data.get("reference")
    if reference is not None and not isinstance(reference, str):
        raise ValidationError("reference must be a string")
    for field_name, value in (("userId", user_id), ("reference", reference)):
        if value is not None and len(value) > MAX_IDENTIFIER_LENGTH:
            raise ValidationError(
                f"{field_name} exceeds {MAX_IDENTIFIER_LENGTH} characters", field=field_name
            )

    settlement = state.services.settlements.record_settlement(
        platform_id=platform_id,
        user_id=user_id,
        settlement_type=settlement_type,
        tkoin_amount=tokens_to_base_units(str(data["amount"]), settings.token_decimals),
        reference=reference,
        metadata={"event": event},
    )
    return JSONResponse(
        {"received": True, "event": event, "settlementId": settlement.id},
        status_code=201,
    )
