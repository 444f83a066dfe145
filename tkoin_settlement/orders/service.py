"""
P2P Order State Machine — fiat-for-TKOIN trades against an agent's inventory.

    created ──► payment_pending ──► payment_sent ──► verifying ──► completed
       │                                                 │
       └──────────────► cancelled ◄──────────────────────┘
    (any non-terminal state) ──► expired   (expiry sweep)

Creating an order locks the agent's TKOIN in the same transaction as the
insert. Every later transition is a conditional update on the expected
status, so exactly one of two racing transitions (e.g. completion and
expiry) wins; the inventory is transferred or released exactly once.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.domain.schema import (
    OPEN_ORDER_STATUSES,
    ORDER_TRANSITIONS,
    ActorType,
    AgentStatus,
    OrderStatus,
    SettlementType,
    ensure_transition,
    sources_for,
)
from tkoin_settlement.errors import InvalidStateTransition, NotFoundError, ValidationError
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.models import P2pOrder
from tkoin_settlement.ledger.service import LedgerService, retry_on_conflict
from tkoin_settlement.settlements.service import SettlementService

logger = logging.getLogger(__name__)


def transition_order(
    session: Session,
    order_id: str,
    target: OrderStatus,
    values: dict[str, Any] | None = None,
    extra_criteria: tuple = (),
) -> bool:
    """
    Conditionally move an order into ``target`` from any state that may reach it.

    Returns True when this caller won the transition.
    """
    sources = [s.value for s in sources_for(ORDER_TRANSITIONS, target)]
    result = session.execute(
        update(P2pOrder)
        .where(P2pOrder.id == order_id, P2pOrder.status.in_(sources), *extra_criteria)
        .values(status=target.value, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


class P2pOrderService:
    """
    Usage:
        orders = P2pOrderService(ledger, audit, settlements)
        order = orders.create_order("agent-1", "user-9", 500 * 10**9, Decimal("50.00"), "USD")
        orders.request_payment(order.id)
        orders.mark_payment_sent(order.id, actor_id="user-9")
        orders.begin_verification(order.id, actor_id="agent-1")
        orders.complete_order(order.id, completed_by="agent-1")
    """

    def __init__(
        self,
        ledger: LedgerService,
        audit: AuditSink,
        settlements: SettlementService | None = None,
        order_ttl_minutes: int = 30,
    ) -> None:
        self.ledger = ledger
        self.audit = audit
        self.settlements = settlements
        self.order_ttl = timedelta(minutes=order_ttl_minutes)
        self.SessionLocal = ledger.SessionLocal

    # ── Creation ───────────────────────────────────────────────

    def create_order(
        self,
        agent_id: str,
        user_id: str,
        tkoin_amount: int,
        fiat_amount: Decimal | str,
        fiat_currency: str,
        platform_id: str | None = None,
        payment_method: str | None = None,
    ) -> P2pOrder:
        """
        Open an order and lock ``tkoin_amount`` of the agent's inventory.

        The insert and the lock commit together; a concurrent-lock conflict
        retries the whole unit once.
        """
        if isinstance(tkoin_amount, bool) or not isinstance(tkoin_amount, int) or tkoin_amount <= 0:
            raise ValidationError("tkoin_amount must be a positive integer of base units")
        try:
            fiat = Decimal(str(fiat_amount))
        except InvalidOperation as exc:
            raise ValidationError(f"Invalid fiat amount: {fiat_amount!r}") from exc
        if not fiat.is_finite() or fiat <= 0:
            raise ValidationError("fiat_amount must be positive")
        currency = (fiat_currency or "").upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError(f"Invalid currency code: {fiat_currency!r}")
        if not user_id:
            raise ValidationError("user_id is required")

        def attempt() -> P2pOrder:
            with self.SessionLocal.begin() as session:
                agent = self.ledger.require_agent(agent_id, session=session)
                if agent.status != AgentStatus.ACTIVE.value:
                    raise ValidationError(f"Agent '{agent_id}' is not active", status=agent.status)

                order = P2pOrder(
                    agent_id=agent_id,
                    user_id=user_id,
                    platform_id=platform_id,
                    tkoin_amount=tkoin_amount,
                    fiat_amount=fiat,
                    fiat_currency=currency,
                    payment_method=payment_method,
                    status=OrderStatus.CREATED.value,
                    tkoin_locked=True,
                    expires_at=utcnow() + self.order_ttl,
                )
                session.add(order)
                session.flush()
                self.ledger.lock(agent_id, tkoin_amount, session=session)
                actor_type = ActorType.PLATFORM if platform_id else ActorType.SYSTEM
                self._audit(session, "order.created", order, user_id, actor_type, {
                    "tkoin_amount": tkoin_amount,
                    "fiat_amount": str(fiat),
                    "fiat_currency": currency,
                })
                return order

        order = retry_on_conflict(attempt, description=f"order for agent {agent_id}")
        logger.info(
            "Order created: id=%s agent=%s user=%s amount=%s",
            order.id, agent_id, user_id, tkoin_amount,
        )
        return order

    # ── Payment flow ───────────────────────────────────────────

    def request_payment(self, order_id: str, actor_id: str | None = None) -> P2pOrder:
        return self._simple_transition(order_id, OrderStatus.PAYMENT_PENDING, actor_id, ActorType.AGENT)

    def mark_payment_sent(self, order_id: str, actor_id: str | None = None) -> P2pOrder:
        return self._simple_transition(
            order_id, OrderStatus.PAYMENT_SENT, actor_id, ActorType.PLATFORM,
            {"payment_sent_at": utcnow()},
        )

    def begin_verification(self, order_id: str, actor_id: str | None = None) -> P2pOrder:
        return self._simple_transition(order_id, OrderStatus.VERIFYING, actor_id, ActorType.AGENT)

    # ── Terminal transitions ───────────────────────────────────

    def complete_order(self, order_id: str, completed_by: str) -> P2pOrder:
        """
        Finish a verified order: the locked TKOIN leaves the agent and, for
        platform orders, a settlement credit is recorded for the user.
        """
        with self.SessionLocal.begin() as session:
            won = transition_order(
                session, order_id, OrderStatus.COMPLETED,
                {"completed_at": utcnow(), "tkoin_locked": False},
            )
            order = self._load(session, order_id)
            if not won:
                raise InvalidStateTransition("p2p_order", order.status, OrderStatus.COMPLETED)

            self.ledger.transfer(order.agent_id, order.tkoin_amount, session=session)
            if order.platform_id and self.settlements is not None:
                self.settlements.record_settlement(
                    platform_id=order.platform_id,
                    user_id=order.user_id,
                    settlement_type=SettlementType.P2P_CREDIT,
                    tkoin_amount=order.tkoin_amount,
                    reference=order.id,
                    session=session,
                )
            self._audit(session, "order.completed", order, completed_by, ActorType.AGENT, {
                "tkoin_amount": order.tkoin_amount,
            })

        logger.info("Order completed: id=%s agent=%s amount=%s", order_id, order.agent_id, order.tkoin_amount)
        return order

    def cancel_order(self, order_id: str, cancelled_by: str, reason: str | None = None) -> P2pOrder:
        """
        Cancel an order and release its lock.

        Cancelling an order that is already cancelled or expired is a no-op:
        the lock was released by whoever got there first.
        """
        with self.SessionLocal.begin() as session:
            won = transition_order(
                session, order_id, OrderStatus.CANCELLED,
                {"cancelled_at": utcnow(), "cancellation_reason": reason, "tkoin_locked": False},
            )
            order = self._load(session, order_id)
            if not won:
                if order.status in (OrderStatus.CANCELLED.value, OrderStatus.EXPIRED.value):
                    logger.info("Cancel ignored, order %s already %s", order_id, order.status)
                    return order
                raise InvalidStateTransition("p2p_order", order.status, OrderStatus.CANCELLED)

            self.ledger.unlock(order.agent_id, order.tkoin_amount, session=session)
            self._audit(session, "order.cancelled", order, cancelled_by, ActorType.AGENT, {
                "tkoin_amount": order.tkoin_amount,
                "reason": reason,
            })

        logger.info("Order cancelled: id=%s by=%s reason=%s", order_id, cancelled_by, reason)
        return order

    # ── Queries ────────────────────────────────────────────────

    def get_order(self, order_id: str) -> P2pOrder:
        with self.SessionLocal() as session:
            return self._load(session, order_id)

    def get_orders_by_agent(self, agent_id: str, limit: int = 100) -> list[P2pOrder]:
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(P2pOrder)
                    .where(P2pOrder.agent_id == agent_id)
                    .order_by(P2pOrder.created_at.desc())
                    .limit(limit)
                ).scalars().all()
            )

    def get_active_orders(self, agent_id: str | None = None) -> list[P2pOrder]:
        stmt = select(P2pOrder).where(
            P2pOrder.status.in_([s.value for s in OPEN_ORDER_STATUSES])
        ).order_by(P2pOrder.expires_at)
        if agent_id is not None:
            stmt = stmt.where(P2pOrder.agent_id == agent_id)
        with self.SessionLocal() as session:
            return list(session.execute(stmt).scalars().all())

    # ── Internal ───────────────────────────────────────────────

    def _simple_transition(
        self,
        order_id: str,
        target: OrderStatus,
        actor_id: str | None,
        actor_type: ActorType,
        values: dict[str, Any] | None = None,
    ) -> P2pOrder:
        with self.SessionLocal.begin() as session:
            current = self._load(session, order_id)
            ensure_transition("p2p_order", ORDER_TRANSITIONS, current.status, target)
            result = session.execute(
                update(P2pOrder)
                .where(P2pOrder.id == order_id, P2pOrder.status == current.status)
                .values(status=target.value, **(values or {}))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                latest = self._load(session, order_id)
                raise InvalidStateTransition("p2p_order", latest.status, target)
            order = self._load(session, order_id)
            self._audit(session, f"order.{target.value}", order, actor_id, actor_type, {})

        logger.info("Order %s -> %s", order_id, target.value)
        return order

    @staticmethod
    def _load(session: Session, order_id: str) -> P2pOrder:
        order = session.get(P2pOrder, order_id, populate_existing=True)
        if order is None:
            raise NotFoundError(f"Order '{order_id}' not found", order_id=order_id)
        return order

    def _audit(
        self,
        session: Session,
        event_type: str,
        order: P2pOrder,
        actor_id: str | None,
        actor_type: ActorType,
        metadata: dict[str, Any],
    ) -> None:
        self.audit.record(
            session,
            event_type=event_type,
            entity_type="p2p_order",
            entity_id=order.id,
            actor_id=actor_id,
            actor_type=actor_type,
            metadata={"agent_id": order.agent_id, "status": order.status, **metadata},
        )
