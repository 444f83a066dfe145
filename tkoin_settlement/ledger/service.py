"""
Ledger Service — atomic lock / unlock / transfer on agent TKOIN inventory.

This service is the only writer of ``tkoin_balance`` and ``locked_balance``.
Every balance mutation is a single conditional UPDATE whose WHERE clause
re-checks the precondition, so two concurrent callers can never both pass a
stale check:

- lock:     locked += a   WHERE total - locked >= a
- unlock:   locked -= a   WHERE locked >= a
- transfer: total -= a, locked -= a   WHERE locked >= a AND total >= a

A pre-read turns the common failures into descriptive errors; when the
pre-read passes but the conditional update matches zero rows, state moved
underneath us and a ``ConcurrentConflict`` subclass is raised instead.

Each operation accepts an optional ``session`` so it can join the caller's
transaction (order creation, completion, expiry, staking).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.db import create_db_engine, create_session_factory, unit_of_work
from tkoin_settlement.domain.schema import (
    OPEN_ORDER_STATUSES,
    AgentStatus,
    AgentTier,
    IntegrityReport,
    TierLimits,
)
from tkoin_settlement.errors import (
    ConcurrentConflict,
    ConcurrentLockConflict,
    ConcurrentTransferConflict,
    ConcurrentUnlockConflict,
    InsufficientBalance,
    NotFoundError,
    ValidationError,
)
from tkoin_settlement.ledger.models import Agent, Base, P2pOrder

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(operation: Callable[[], T], description: str = "operation") -> T:
    """
    Run ``operation``; on a ConcurrentConflict retry it exactly once.

    ``operation`` must be a complete unit of work (its own transaction) so
    the retry starts from fresh state. A second conflict propagates.
    """
    try:
        return operation()
    except ConcurrentConflict as exc:
        logger.info("Concurrent conflict on %s, retrying once: %s", description, exc)
        return operation()


class LedgerService:
    """
    Agent inventory ledger.

    Usage:
        ledger = LedgerService.from_url(settings.database_url)
        ledger.initialize()

        ledger.register_agent("agent-1", tkoin_balance=5_000 * 10**9)
        ledger.lock("agent-1", 1_000 * 10**9)
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.SessionLocal = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> "LedgerService":
        return cls(create_session_factory(create_db_engine(database_url)))

    @property
    def engine(self):
        return self.SessionLocal.kw["bind"]

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        Base.metadata.create_all(self.engine)

    # ── Agents ─────────────────────────────────────────────────

    def register_agent(
        self,
        agent_id: str,
        wallet_address: str | None = None,
        tkoin_balance: int = 0,
        status: AgentStatus = AgentStatus.ACTIVE,
        limits: TierLimits | None = None,
        session: Session | None = None,
    ) -> Agent:
        if tkoin_balance < 0:
            raise ValidationError("Initial balance must not be negative")
        limits = limits or TierLimits(daily_limit=1_000, monthly_limit=10_000)

        with unit_of_work(self.SessionLocal, session) as s:
            if s.get(Agent, agent_id) is not None:
                raise ValidationError(f"Agent '{agent_id}' already exists")
            agent = Agent(
                id=agent_id,
                wallet_address=wallet_address,
                status=AgentStatus(status).value,
                tkoin_balance=tkoin_balance,
                locked_balance=0,
                verification_tier=AgentTier.BASIC.value,
                daily_limit=limits.daily_limit,
                monthly_limit=limits.monthly_limit,
            )
            s.add(agent)
            s.flush()
            logger.info("Agent registered: id=%s balance=%s", agent_id, tkoin_balance)
            return agent

    def get_agent(self, agent_id: str, session: Session | None = None) -> Agent | None:
        with unit_of_work(self.SessionLocal, session) as s:
            return s.get(Agent, agent_id, populate_existing=True)

    def require_agent(self, agent_id: str, session: Session | None = None) -> Agent:
        agent = self.get_agent(agent_id, session=session)
        if agent is None:
            raise NotFoundError(f"Agent '{agent_id}' not found", agent_id=agent_id)
        return agent

    def available_balance(self, agent_id: str, session: Session | None = None) -> int:
        agent = self.require_agent(agent_id, session=session)
        return agent.tkoin_balance - agent.locked_balance

    # ── Balance primitives ─────────────────────────────────────

    def lock(self, agent_id: str, amount: int, session: Session | None = None) -> None:
        """Reserve ``amount`` of the agent's available inventory."""
        _require_positive(amount)
        with unit_of_work(self.SessionLocal, session) as s:
            agent = self._read_balances(s, agent_id)
            available = agent["tkoin_balance"] - agent["locked_balance"]
            if available < amount:
                raise InsufficientBalance(
                    f"Agent '{agent_id}' has {available} available, {amount} required",
                    available=available,
                    required=amount,
                )

            result = s.execute(
                update(Agent)
                .where(
                    Agent.id == agent_id,
                    Agent.tkoin_balance - Agent.locked_balance >= amount,
                )
                .values(locked_balance=Agent.locked_balance + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentLockConflict(
                    f"Available balance of agent '{agent_id}' changed during lock",
                    agent_id=agent_id,
                    amount=amount,
                )
            logger.debug("Locked %s for agent %s", amount, agent_id)

    def unlock(self, agent_id: str, amount: int, session: Session | None = None) -> None:
        """Release ``amount`` previously reserved by ``lock``."""
        _require_positive(amount)
        with unit_of_work(self.SessionLocal, session) as s:
            agent = self._read_balances(s, agent_id)
            if agent["locked_balance"] < amount:
                raise InsufficientBalance(
                    f"Agent '{agent_id}' has {agent['locked_balance']} locked, cannot unlock {amount}",
                    available=agent["locked_balance"],
                    required=amount,
                )

            result = s.execute(
                update(Agent)
                .where(Agent.id == agent_id, Agent.locked_balance >= amount)
                .values(locked_balance=Agent.locked_balance - amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentUnlockConflict(
                    f"Locked balance of agent '{agent_id}' changed during unlock",
                    agent_id=agent_id,
                    amount=amount,
                )
            logger.debug("Unlocked %s for agent %s", amount, agent_id)

    def transfer(self, agent_id: str, amount: int, session: Session | None = None) -> None:
        """Consume ``amount`` of locked inventory: it leaves the agent entirely."""
        _require_positive(amount)
        with unit_of_work(self.SessionLocal, session) as s:
            agent = self._read_balances(s, agent_id)
            if agent["locked_balance"] < amount or agent["tkoin_balance"] < amount:
                raise InsufficientBalance(
                    f"Agent '{agent_id}' has {agent['locked_balance']} locked, cannot transfer {amount}",
                    available=agent["locked_balance"],
                    required=amount,
                )

            result = s.execute(
                update(Agent)
                .where(
                    Agent.id == agent_id,
                    Agent.locked_balance >= amount,
                    Agent.tkoin_balance >= amount,
                )
                .values(
                    tkoin_balance=Agent.tkoin_balance - amount,
                    locked_balance=Agent.locked_balance - amount,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ConcurrentTransferConflict(
                    f"Balances of agent '{agent_id}' changed during transfer",
                    agent_id=agent_id,
                    amount=amount,
                )
            logger.info("Transferred %s out of agent %s", amount, agent_id)

    def credit(self, agent_id: str, amount: int, session: Session | None = None) -> None:
        """Add ``amount`` to the agent's inventory (confirmed on-chain deposit)."""
        _require_positive(amount)
        with unit_of_work(self.SessionLocal, session) as s:
            result = s.execute(
                update(Agent)
                .where(Agent.id == agent_id)
                .values(tkoin_balance=Agent.tkoin_balance + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Agent '{agent_id}' not found", agent_id=agent_id)
            logger.info("Credited %s to agent %s", amount, agent_id)

    # ── Tier ───────────────────────────────────────────────────

    def apply_tier(
        self,
        agent_id: str,
        tier: AgentTier,
        limits: TierLimits,
        session: Session | None = None,
    ) -> None:
        """Write the agent's tier and the limits that tier grants."""
        with unit_of_work(self.SessionLocal, session) as s:
            result = s.execute(
                update(Agent)
                .where(Agent.id == agent_id)
                .values(
                    verification_tier=AgentTier(tier).value,
                    daily_limit=limits.daily_limit,
                    monthly_limit=limits.monthly_limit,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Agent '{agent_id}' not found", agent_id=agent_id)

    # ── Integrity ──────────────────────────────────────────────

    def verify_integrity(self) -> IntegrityReport:
        """
        Reconcile every agent row.

        Checks ``0 <= locked <= total`` and that ``locked`` equals the sum of
        the agent's open orders that still hold their lock.
        """
        discrepancies: list[str] = []
        with self.SessionLocal() as session:
            agents = session.execute(select(Agent).order_by(Agent.id)).scalars().all()
            open_locks: dict[str, Any] = dict(
                session.execute(
                    select(P2pOrder.agent_id, func.coalesce(func.sum(P2pOrder.tkoin_amount), 0))
                    .where(
                        P2pOrder.status.in_([s.value for s in OPEN_ORDER_STATUSES]),
                        P2pOrder.tkoin_locked.is_(True),
                    )
                    .group_by(P2pOrder.agent_id)
                ).all()
            )

            for agent in agents:
                if agent.locked_balance < 0:
                    discrepancies.append(f"{agent.id}: negative locked balance {agent.locked_balance}")
                if agent.locked_balance > agent.tkoin_balance:
                    discrepancies.append(
                        f"{agent.id}: locked {agent.locked_balance} exceeds total {agent.tkoin_balance}"
                    )
                expected = int(open_locks.get(agent.id, 0))
                if agent.locked_balance != expected:
                    discrepancies.append(
                        f"{agent.id}: locked {agent.locked_balance} but open orders hold {expected}"
                    )

        if discrepancies:
            logger.error("Ledger integrity check failed: %d discrepancies", len(discrepancies))
        return IntegrityReport(
            is_valid=not discrepancies,
            agents_checked=len(agents),
            discrepancies=discrepancies,
        )

    # ── Internal ───────────────────────────────────────────────

    @staticmethod
    def _read_balances(session: Session, agent_id: str) -> dict[str, int]:
        row = session.execute(
            select(Agent.tkoin_balance, Agent.locked_balance).where(Agent.id == agent_id)
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Agent '{agent_id}' not found", agent_id=agent_id)
        return {"tkoin_balance": row.tkoin_balance, "locked_balance": row.locked_balance}


def _require_positive(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(f"Amount must be a positive integer of base units, got {amount!r}")
