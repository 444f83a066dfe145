"""
Settlement records and their platform notifications.

A settlement row is written inside the ledger transaction that caused it
(deposit, withdrawal, completed P2P order). Notifying the platform happens
afterwards and records its outcome (``webhook_delivered``, attempts, last
response) in a separate transaction: a failed delivery never rolls back the
ledger change, and undelivered settlements stay queryable for manual retry.
Automatic retries stop after a final rejection or a capped number of
attempts.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.db import unit_of_work
from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.domain.schema import SettlementStatus, SettlementType, UserBalance
from tkoin_settlement.domain.units import base_units_to_tokens
from tkoin_settlement.errors import NotFoundError, ValidationError
from tkoin_settlement.ledger.models import Settlement, SovereignPlatform
from tkoin_settlement.webhooks.emitter import DeliveryResult, WebhookEmitter, is_retryable

logger = logging.getLogger(__name__)


class SettlementService:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        notification_timeout: float = 60.0,
        max_notification_attempts: int = 9,
    ) -> None:
        self.SessionLocal = session_factory
        self.notification_timeout = notification_timeout
        self.max_notification_attempts = max_notification_attempts

    def record_settlement(
        self,
        platform_id: str,
        user_id: str,
        settlement_type: SettlementType | str,
        tkoin_amount: int,
        reference: str | None = None,
        metadata: dict[str, Any] | None = None,
        session: Session | None = None,
    ) -> Settlement:
        if tkoin_amount <= 0:
            raise ValidationError("Settlement amount must be positive")
        try:
            settlement_type = SettlementType(settlement_type)
        except ValueError as exc:
            raise ValidationError(f"Invalid settlement type: {settlement_type!r}") from exc

        with unit_of_work(self.SessionLocal, session) as s:
            if s.get(SovereignPlatform, platform_id) is None:
                raise NotFoundError(f"Platform '{platform_id}' not found", platform_id=platform_id)
            settlement = Settlement(
                platform_id=platform_id,
                user_id=user_id,
                settlement_type=settlement_type.value,
                tkoin_amount=tkoin_amount,
                reference=reference,
                status=SettlementStatus.COMPLETED.value,
                metadata_=metadata or {},
                webhook_delivered=False,
                webhook_abandoned=False,
                webhook_attempts=0,
            )
            s.add(settlement)
            s.flush()

        logger.info(
            "Settlement recorded: id=%s platform=%s type=%s amount=%s",
            settlement.id, platform_id, settlement_type.value, tkoin_amount,
        )
        return settlement

    def get_settlement(self, settlement_id: str) -> Settlement:
        with self.SessionLocal() as session:
            settlement = session.get(Settlement, settlement_id)
        if settlement is None:
            raise NotFoundError(f"Settlement '{settlement_id}' not found", settlement_id=settlement_id)
        return settlement

    def get_user_settlements(self, platform_id: str, user_id: str, limit: int = 10) -> list[Settlement]:
        """A platform user's settlements, newest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(Settlement)
                    .where(Settlement.platform_id == platform_id, Settlement.user_id == user_id)
                    .order_by(Settlement.created_at.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_user_balance(self, platform_id: str, user_id: str) -> UserBalance:
        """Totals of a platform user's completed settlements by type."""
        with self.SessionLocal() as session:
            if session.get(SovereignPlatform, platform_id) is None:
                raise NotFoundError(f"Platform '{platform_id}' not found", platform_id=platform_id)
            rows = session.execute(
                select(
                    Settlement.settlement_type,
                    func.count(Settlement.id),
                    func.coalesce(func.sum(Settlement.tkoin_amount), 0),
                )
                .where(
                    Settlement.platform_id == platform_id,
                    Settlement.user_id == user_id,
                    Settlement.status == SettlementStatus.COMPLETED.value,
                )
                .group_by(Settlement.settlement_type)
            ).all()

        totals = {settlement_type: int(total) for settlement_type, _, total in rows}
        return UserBalance(
            platform_id=platform_id,
            user_id=user_id,
            deposited=totals.get(SettlementType.DEPOSIT.value, 0),
            withdrawn=totals.get(SettlementType.WITHDRAWAL.value, 0),
            credited=totals.get(SettlementType.P2P_CREDIT.value, 0),
            settlement_count=sum(count for _, count, _ in rows),
        )

    # ── Notifications ──────────────────────────────────────────

    def pending_notifications(self, limit: int = 100) -> list[Settlement]:
        """
        Undelivered settlements still eligible for automatic retry.

        Rows whose platform has no webhook configured, and rows abandoned
        after a final rejection or the attempt cap, are left out. Rows never
        attempted come first, then the least recently attempted.
        """
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(Settlement)
                    .join(SovereignPlatform, SovereignPlatform.id == Settlement.platform_id)
                    .where(
                        Settlement.webhook_delivered.is_(False),
                        Settlement.webhook_abandoned.is_(False),
                        Settlement.webhook_attempts < self.max_notification_attempts,
                        SovereignPlatform.webhook_url.is_not(None),
                        SovereignPlatform.webhook_url != "",
                        SovereignPlatform.webhook_enabled.is_(True),
                        SovereignPlatform.is_active.is_(True),
                    )
                    .order_by(
                        Settlement.webhook_last_attempt_at.asc().nulls_first(),
                        Settlement.created_at,
                    )
                    .limit(limit)
                ).scalars().all()
            )

    def undelivered_notifications(self, platform_id: str | None = None, limit: int = 100) -> list[Settlement]:
        """Every undelivered settlement, abandoned ones included, oldest first."""
        stmt = select(Settlement).where(Settlement.webhook_delivered.is_(False))
        if platform_id is not None:
            stmt = stmt.where(Settlement.platform_id == platform_id)
        with self.SessionLocal() as session:
            return list(
                session.execute(stmt.order_by(Settlement.created_at).limit(limit)).scalars().all()
            )

    async def deliver_notification(self, settlement_id: str, emitter: WebhookEmitter) -> DeliveryResult:
        """
        Notify the platform of a settlement and record the outcome.

        May be called directly for a manual retry of an abandoned row. A
        final rejection (4xx other than 429) or reaching the attempt cap
        marks the row abandoned so the automatic sweep stops picking it up.
        """
        with self.SessionLocal() as session:
            settlement = session.get(Settlement, settlement_id)
            if settlement is None:
                raise NotFoundError(f"Settlement '{settlement_id}' not found", settlement_id=settlement_id)
            platform = session.get(SovereignPlatform, settlement.platform_id)

        if platform is None or not platform.webhook_url or not platform.webhook_enabled:
            reason = "Webhooks not configured for platform"
            logger.warning("%s: platform=%s settlement=%s", reason, settlement.platform_id, settlement_id)
            result = DeliveryResult(delivered=False, attempts=0, error=reason)
        else:
            result = await emitter.deliver(
                platform_id=platform.id,
                url=platform.webhook_url,
                secret=platform.webhook_secret or "",
                event=f"{settlement.settlement_type}.completed",
                data={
                    "settlementId": settlement.id,
                    "userId": settlement.user_id,
                    "amount": str(base_units_to_tokens(settlement.tkoin_amount)),
                    "currency": "TKOIN",
                    "status": settlement.status,
                    "reference": settlement.reference,
                },
                timeout=self.notification_timeout,
            )

        total_attempts = settlement.webhook_attempts + result.attempts
        rejected = result.status_code is not None and not is_retryable(result.status_code)
        abandoned = not result.delivered and (
            rejected or total_attempts >= self.max_notification_attempts
        )
        if abandoned:
            logger.error(
                "Settlement notification abandoned: id=%s platform=%s attempts=%d error=%s",
                settlement_id, settlement.platform_id, total_attempts, result.error,
            )

        with self.SessionLocal.begin() as session:
            session.execute(
                update(Settlement)
                .where(Settlement.id == settlement_id)
                .values(
                    webhook_delivered=result.delivered,
                    webhook_abandoned=abandoned,
                    webhook_attempts=Settlement.webhook_attempts + result.attempts,
                    webhook_response=(result.response or result.error),
                    webhook_last_attempt_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        return result

    async def deliver_pending(self, emitter: WebhookEmitter, limit: int = 100) -> int:
        """Retry eligible undelivered notifications once each; returns how many got through."""
        delivered = 0
        for settlement in self.pending_notifications(limit=limit):
            result = await self.deliver_notification(settlement.id, emitter)
            if result.delivered:
                delivered += 1
        return delivered
