"""
Order expiry sweep.

Runs periodically. Each overdue order is expired in its own transaction:
a conditional update that only matches while the order is still
non-terminal and overdue, followed by the unlock only when that update won.
One failing order is logged and skipped; the sweep carries on and may
overlap with itself or with user actions without double-unlocking.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.domain.schema import OPEN_ORDER_STATUSES, ActorType, OrderStatus, SweepResult
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.models import P2pOrder
from tkoin_settlement.ledger.service import LedgerService
from tkoin_settlement.orders.service import transition_order

logger = logging.getLogger(__name__)


class OrderExpirySweep:
    def __init__(self, ledger: LedgerService, audit: AuditSink, batch_size: int = 500) -> None:
        self.ledger = ledger
        self.audit = audit
        self.batch_size = batch_size
        self.SessionLocal = ledger.SessionLocal

    def find_overdue(self, now: datetime) -> list[str]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(P2pOrder.id)
                    .where(
                        P2pOrder.status.in_([s.value for s in OPEN_ORDER_STATUSES]),
                        P2pOrder.expires_at <= now,
                    )
                    .order_by(P2pOrder.expires_at)
                    .limit(self.batch_size)
                ).scalars().all()
            )

    def expire_order(self, order_id: str, now: datetime) -> bool:
        """Expire one order; False when another actor already moved it."""
        with self.SessionLocal.begin() as session:
            won = transition_order(
                session, order_id, OrderStatus.EXPIRED,
                {"tkoin_locked": False},
                extra_criteria=(P2pOrder.expires_at <= now,),
            )
            if not won:
                return False
            order = session.get(P2pOrder, order_id, populate_existing=True)
            self.ledger.unlock(order.agent_id, order.tkoin_amount, session=session)
            self.audit.record(
                session,
                event_type="order.expired",
                entity_type="p2p_order",
                entity_id=order.id,
                actor_type=ActorType.SYSTEM,
                metadata={"agent_id": order.agent_id, "tkoin_amount": order.tkoin_amount},
            )
        logger.info("Order expired: id=%s agent=%s released=%s", order_id, order.agent_id, order.tkoin_amount)
        return True

    def run_once(self, now: datetime | None = None) -> SweepResult:
        now = now or utcnow()
        result = SweepResult()
        for order_id in self.find_overdue(now):
            result.examined += 1
            try:
                if self.expire_order(order_id, now):
                    result.processed += 1
            except Exception:
                result.failed += 1
                logger.exception("Failed to expire order %s", order_id)
        if result.examined:
            logger.info(
                "Expiry sweep: examined=%d expired=%d failed=%d",
                result.examined, result.processed, result.failed,
            )
        return result
