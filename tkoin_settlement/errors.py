"""
Error taxonomy for the settlement core.

Every error carries an HTTP-equivalent ``status_code`` so the thin API
adapter can map failures without inspecting messages. Core services raise
these and never swallow them; background sweeps are the only callers that
log and continue.
"""

from __future__ import annotations

from typing import Any


class TkoinError(Exception):
    """Base class for all settlement-core failures."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        return body


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


class ValidationError(TkoinError):
    status_code = 400
    code = "validation_error"


class NotFoundError(TkoinError):
    status_code = 404
    code = "not_found"


class InsufficientBalance(TkoinError):
    """Available (unlocked) balance does not cover the requested amount."""

    status_code = 409
    code = "insufficient_balance"

    def __init__(self, message: str, available: int = 0, required: int = 0) -> None:
        super().__init__(message, available=available, required=required)
        self.available = available
        self.required = required


class InsufficientStakedBalance(TkoinError):
    status_code = 409
    code = "insufficient_staked_balance"

    def __init__(self, message: str, staked: int = 0, requested: int = 0) -> None:
        super().__init__(message, staked=staked, requested=requested)
        self.staked = staked
        self.requested = requested


class ConcurrentConflict(TkoinError):
    """A conditional update matched zero rows because state moved underneath it."""

    status_code = 409
    code = "concurrent_conflict"


class ConcurrentLockConflict(ConcurrentConflict):
    code = "concurrent_lock_conflict"


class ConcurrentUnlockConflict(ConcurrentConflict):
    code = "concurrent_unlock_conflict"


class ConcurrentTransferConflict(ConcurrentConflict):
    code = "concurrent_transfer_conflict"


class StakeLocked(TkoinError):
    status_code = 409
    code = "stake_locked"

    def __init__(self, message: str, days_remaining: int) -> None:
        super().__init__(message, days_remaining=days_remaining)
        self.days_remaining = days_remaining


class InvalidStateTransition(TkoinError):
    status_code = 409
    code = "invalid_state_transition"

    def __init__(self, machine: str, current: Any, target: Any) -> None:
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(
            f"{machine}: cannot transition from '{current_value}' to '{target_value}'",
            machine=machine,
            current=current_value,
            target=target_value,
        )
        self.machine = machine
        self.current = current_value
        self.target = target_value


class SafetyLimitViolation(TkoinError):
    """A burn proposal falls outside the configured safety bounds."""

    status_code = 422
    code = "safety_limit_violation"

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("Burn outside safety limits: " + "; ".join(reasons), reasons=reasons)
        self.reasons = list(reasons)


class WebhookAuthenticationError(TkoinError):
    status_code = 401
    code = "webhook_authentication_failed"


class ReplayDetected(WebhookAuthenticationError):
    code = "replay_detected"


class ChainReaderError(TkoinError):
    """The on-chain balance oracle could not answer."""

    status_code = 502
    code = "chain_reader_error"
