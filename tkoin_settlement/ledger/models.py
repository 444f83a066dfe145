"""
Settlement Ledger — SQLAlchemy models for agents, stakes, governance and orders.

Token amounts are stored as integer base units (BigInteger). The agent row is
the only place inventory lives; ``locked_balance`` is the portion reserved by
open P2P orders and the database itself rejects any row where
``0 <= locked_balance <= tkoin_balance`` does not hold.

Audit, stake history and slashing rows are append-only records: services
insert them and never rewrite them (slashing events only move through
their status column).
"""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

from tkoin_settlement.domain.clock import utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _uuid() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all settlement models."""
    pass


# ── Agents ─────────────────────────────────────────────────────


class Agent(Base):
    """A liquidity agent holding TKOIN inventory."""

    __tablename__ = "agents"
    __table_args__ = (
        CheckConstraint("locked_balance >= 0", name="ck_agents_locked_non_negative"),
        CheckConstraint("locked_balance <= tkoin_balance", name="ck_agents_locked_within_total"),
    )

    id = Column(String(64), primary_key=True, default=_uuid)
    wallet_address = Column(String(64), nullable=True, comment="Solana wallet of the agent")
    status = Column(String(20), nullable=False, default="pending", index=True)

    tkoin_balance = Column(
        BigInteger, nullable=False, default=0,
        comment="Total TKOIN inventory, base units",
    )
    locked_balance = Column(
        BigInteger, nullable=False, default=0,
        comment="Portion reserved by open P2P orders, base units",
    )

    verification_tier = Column(String(20), nullable=False, default="basic")
    daily_limit = Column(Integer, nullable=False, default=1_000, comment="USD")
    monthly_limit = Column(Integer, nullable=False, default=10_000, comment="USD")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return (
            f"<Agent id={self.id} tier={self.verification_tier} "
            f"balance={self.tkoin_balance} locked={self.locked_balance}>"
        )


# ── Staking ────────────────────────────────────────────────────


class AgentStake(Base):
    __tablename__ = "agent_stakes"

    id = Column(String(36), primary_key=True, default=_uuid)
    agent_id = Column(String(64), ForeignKey("agents.id"), nullable=False, unique=True)
    staked_amount = Column(BigInteger, nullable=False, default=0, comment="Base units")
    current_tier = Column(String(20), nullable=False, default="basic")
    status = Column(String(20), nullable=False, default="active")
    locked_until = Column(DateTime(timezone=True), nullable=True)
    stake_account = Column(String(64), nullable=True, comment="On-chain stake vault account")
    on_chain_balance = Column(
        BigInteger, nullable=True,
        comment="Last observed vault balance; informational only",
    )
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class StakeHistory(Base):
    """Append-only record of every stake change."""

    __tablename__ = "stake_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stake_id = Column(String(36), ForeignKey("agent_stakes.id"), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, index=True)
    operation_type = Column(String(20), nullable=False)
    amount = Column(BigInteger, nullable=False)
    previous_balance = Column(BigInteger, nullable=False)
    new_balance = Column(BigInteger, nullable=False)
    previous_tier = Column(String(20), nullable=False)
    new_tier = Column(String(20), nullable=False)
    penalty_amount = Column(BigInteger, nullable=False, default=0)
    transaction_signature = Column(String(128), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# ── Governance ─────────────────────────────────────────────────


class SlashingEvent(Base):
    __tablename__ = "slashing_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    agent_id = Column(String(64), ForeignKey("agents.id"), nullable=False, index=True)
    stake_id = Column(String(36), ForeignKey("agent_stakes.id"), nullable=False)
    violation_type = Column(String(100), nullable=False)
    severity = Column(String(20), nullable=False)
    description = Column(Text, nullable=False)
    evidence_url = Column(Text, nullable=True)

    slash_percentage = Column(Numeric(5, 2), nullable=False)
    slashed_amount = Column(BigInteger, nullable=False, comment="Computed at creation, base units")
    remaining_stake = Column(BigInteger, nullable=False)

    status = Column(String(20), nullable=False, default="pending", index=True)
    created_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    executed_by = Column(String(64), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    reversed_by = Column(String(64), nullable=True)
    reversed_at = Column(DateTime(timezone=True), nullable=True)
    reversal_reason = Column(Text, nullable=True)


class BurnConfig(Base):
    """Singleton row holding the live burn safety bounds."""

    __tablename__ = "burn_config"

    id = Column(Integer, primary_key=True, default=1)
    enabled = Column(Boolean, nullable=False, default=False)
    burn_rate_percent = Column(Numeric(5, 2), nullable=False)
    min_burn_amount = Column(BigInteger, nullable=False)
    max_burn_amount = Column(BigInteger, nullable=False)
    max_treasury_burn_percent = Column(Numeric(5, 2), nullable=False)
    max_supply_burn_percent = Column(Numeric(5, 2), nullable=False)
    cooldown_hours = Column(Integer, nullable=False)
    updated_by = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class BurnProposal(Base):
    __tablename__ = "burn_proposals"

    id = Column(String(36), primary_key=True, default=_uuid)
    proposed_amount = Column(BigInteger, nullable=False)
    treasury_balance = Column(BigInteger, nullable=False)
    circulating_supply = Column(BigInteger, nullable=False)
    burn_rate_percent = Column(Numeric(5, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="pending", index=True)

    proposed_by = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    approved_by = Column(String(64), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(String(64), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    executed_by = Column(String(64), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    burned_amount = Column(BigInteger, nullable=True)
    transaction_signature = Column(String(128), nullable=True)


# ── P2P Orders ─────────────────────────────────────────────────


class P2pOrder(Base):
    __tablename__ = "p2p_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    agent_id = Column(String(64), ForeignKey("agents.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    platform_id = Column(String(64), ForeignKey("sovereign_platforms.id"), nullable=True)

    tkoin_amount = Column(BigInteger, nullable=False, comment="Base units locked from the agent")
    fiat_amount = Column(Numeric(20, 2), nullable=False)
    fiat_currency = Column(String(3), nullable=False)
    payment_method = Column(String(50), nullable=True)

    status = Column(String(20), nullable=False, default="created")
    tkoin_locked = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    payment_sent_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_p2p_orders_status_expires", "status", "expires_at"),
    )


# ── Platforms, Settlements, Webhooks ───────────────────────────


class SovereignPlatform(Base):
    """An external platform that exchanges signed webhooks with Tkoin."""

    __tablename__ = "sovereign_platforms"

    id = Column(String(64), primary_key=True)
    name = Column(String(200), nullable=False)
    api_secret = Column(String(128), nullable=False, comment="Verifies inbound requests")
    webhook_url = Column(Text, nullable=True)
    webhook_secret = Column(String(128), nullable=True, comment="Signs outbound notifications")
    webhook_enabled = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Settlement(Base):
    __tablename__ = "settlements"

    id = Column(String(36), primary_key=True, default=_uuid)
    platform_id = Column(String(64), ForeignKey("sovereign_platforms.id"), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    settlement_type = Column(String(20), nullable=False)
    tkoin_amount = Column(BigInteger, nullable=False)
    reference = Column(String(64), nullable=True, comment="Order id or platform reference")
    status = Column(String(20), nullable=False, default="completed")
    metadata_ = Column("metadata", JSONType, nullable=True)

    webhook_delivered = Column(Boolean, nullable=False, default=False)
    webhook_attempts = Column(Integer, nullable=False, default=0)
    webhook_response = Column(Text, nullable=True)
    webhook_last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    webhook_abandoned = Column(
        Boolean, nullable=False, default=False,
        comment="Automatic retries stopped; still listed for manual retry",
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookNonce(Base):
    __tablename__ = "webhook_nonces"

    id = Column(Integer, primary_key=True, autoincrement=True)
    nonce = Column(String(128), nullable=False, unique=True)
    platform_id = Column(String(64), nullable=False)
    request_timestamp = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# ── Audit ──────────────────────────────────────────────────────


class AuditLog(Base):
    """Append-only audit trail written in the same transaction as the change."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    actor_id = Column(String(64), nullable=True)
    actor_type = Column(String(20), nullable=False, default="system")
    metadata_ = Column("metadata", JSONType, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )
