"""
Burn Governance — treasury burn proposals under hard safety limits.

A proposal is computed from live on-chain data (treasury balance, circulating
supply) and the burn configuration, and is persisted only if every safety
bound holds. Admins then approve or reject it; an approved proposal is marked
executed once the on-chain burn has happened elsewhere.

Lifecycle: pending → approved → executed, or pending → rejected.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tkoin_settlement.domain.clock import as_utc, utcnow
from tkoin_settlement.domain.schema import (
    BURN_TRANSITIONS,
    ActorType,
    BurnCalculation,
    BurnProposalStatus,
    BurnSafetyLimits,
    BurnStats,
    ensure_transition,
    sources_for,
)
from tkoin_settlement.domain.units import format_tokens
from tkoin_settlement.errors import (
    ChainReaderError,
    InvalidStateTransition,
    NotFoundError,
    SafetyLimitViolation,
    ValidationError,
)
from tkoin_settlement.integrations.solana import ChainReader
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.models import BurnConfig, BurnProposal
from tkoin_settlement.ledger.service import LedgerService

logger = logging.getLogger(__name__)

_CONFIG_ID = 1
_CONFIG_FIELDS = set(BurnSafetyLimits.model_fields)


class BurnProposalService:
    """
    Proposal, approval and bookkeeping for treasury burns.

    The on-chain burn itself is not performed here.
    """

    def __init__(
        self,
        ledger: LedgerService,
        audit: AuditSink,
        chain_reader: ChainReader,
        default_limits: BurnSafetyLimits | None = None,
    ) -> None:
        self.audit = audit
        self.chain_reader = chain_reader
        self.default_limits = default_limits or BurnSafetyLimits()
        self.SessionLocal = ledger.SessionLocal

    # ── Configuration ──────────────────────────────────────────

    def get_config(self) -> BurnSafetyLimits:
        """Current safety bounds; the row is seeded from defaults on first read."""
        self._ensure_config()
        with self.SessionLocal() as session:
            return _limits_from_row(self._config_row(session))

    def update_config(self, updates: dict[str, Any], updated_by: str) -> BurnSafetyLimits:
        unknown = set(updates) - _CONFIG_FIELDS
        if unknown:
            raise ValidationError(f"Unknown burn config fields: {sorted(unknown)}")

        self._ensure_config()
        with self.SessionLocal.begin() as session:
            row = self._config_row(session)
            merged = _limits_from_row(row).model_dump()
            merged.update(updates)
            try:
                limits = BurnSafetyLimits(**merged)
            except ValueError as exc:
                raise ValidationError(f"Invalid burn config: {exc}") from exc
            if limits.min_burn_amount > limits.max_burn_amount:
                raise ValidationError("min_burn_amount must not exceed max_burn_amount")

            for key, value in limits.model_dump().items():
                setattr(row, key, value)
            row.updated_by = updated_by
            self.audit.record(
                session,
                event_type="burn.config_updated",
                entity_type="burn_config",
                entity_id=str(_CONFIG_ID),
                actor_id=updated_by,
                actor_type=ActorType.ADMIN,
                metadata={k: str(v) for k, v in updates.items()},
            )

        logger.info("Burn config updated by %s: %s", updated_by, sorted(updates))
        return limits

    # ── Calculation ────────────────────────────────────────────

    def calculate_proposed_burn(self, treasury_wallet: str) -> BurnCalculation:
        """
        Compute a burn from live balances and check every safety bound.

        No proposal is written. A disabled service or an unavailable chain
        reader yields ``within_limits=False`` with the reason.
        """
        limits = self.get_config()
        reasons: list[str] = []
        if not limits.enabled:
            reasons.append("Burn service is disabled")

        try:
            treasury_balance = self.chain_reader.get_available_balance(treasury_wallet)
            supply = self.chain_reader.get_token_supply()
        except ChainReaderError as exc:
            logger.warning("Burn calculation could not read chain state: %s", exc)
            return BurnCalculation(
                burn_rate_percent=limits.burn_rate_percent,
                within_limits=False,
                reasons=reasons + [f"Unable to read on-chain balances: {exc.message}"],
            )

        proposed = int(Decimal(treasury_balance) * limits.burn_rate_percent / 100)

        if proposed <= 0:
            reasons.append("Proposed burn amount is zero")
        if proposed < limits.min_burn_amount:
            reasons.append(
                f"Proposed {format_tokens(proposed)} is below minimum {format_tokens(limits.min_burn_amount)}"
            )
        if proposed > limits.max_burn_amount:
            reasons.append(
                f"Proposed {format_tokens(proposed)} exceeds maximum {format_tokens(limits.max_burn_amount)}"
            )
        treasury_cap = int(Decimal(treasury_balance) * limits.max_treasury_burn_percent / 100)
        if proposed > treasury_cap:
            reasons.append(
                f"Proposed burn exceeds {limits.max_treasury_burn_percent}% of treasury"
            )
        supply_cap = int(Decimal(supply) * limits.max_supply_burn_percent / 100)
        if proposed > supply_cap:
            reasons.append(
                f"Proposed burn exceeds {limits.max_supply_burn_percent}% of circulating supply"
            )

        next_allowed_at = None
        last_burn_at = self._last_executed_at()
        if last_burn_at is not None:
            candidate = last_burn_at + timedelta(hours=limits.cooldown_hours)
            if candidate > utcnow():
                next_allowed_at = candidate
                reasons.append(f"Cooldown active until {candidate.isoformat()}")

        return BurnCalculation(
            treasury_balance=treasury_balance,
            circulating_supply=supply,
            burn_rate_percent=limits.burn_rate_percent,
            proposed_amount=proposed,
            within_limits=not reasons,
            reasons=reasons,
            next_allowed_at=next_allowed_at,
        )

    # ── Lifecycle ──────────────────────────────────────────────

    def create_proposal(self, proposed_by: str, reason: str, treasury_wallet: str) -> BurnProposal:
        """
        Persist a pending proposal.

        Raises:
            SafetyLimitViolation: Any bound fails; nothing is persisted.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a burn proposal")

        calculation = self.calculate_proposed_burn(treasury_wallet)
        if not calculation.within_limits:
            logger.warning("Burn proposal by %s rejected by safety limits: %s", proposed_by, calculation.reasons)
            raise SafetyLimitViolation(calculation.reasons)

        with self.SessionLocal.begin() as session:
            proposal = BurnProposal(
                proposed_amount=calculation.proposed_amount,
                treasury_balance=calculation.treasury_balance,
                circulating_supply=calculation.circulating_supply,
                burn_rate_percent=calculation.burn_rate_percent,
                reason=reason.strip(),
                status=BurnProposalStatus.PENDING.value,
                proposed_by=proposed_by,
            )
            session.add(proposal)
            session.flush()
            self._audit(session, "burn.proposed", proposal, proposed_by, {
                "treasury_balance": calculation.treasury_balance,
                "circulating_supply": calculation.circulating_supply,
            })

        logger.info("Burn proposed: id=%s amount=%s by=%s", proposal.id, proposal.proposed_amount, proposed_by)
        return proposal

    def approve_proposal(self, proposal_id: str, approved_by: str) -> BurnProposal:
        return self._transition(
            proposal_id, BurnProposalStatus.APPROVED, approved_by, "burn.approved",
            {"approved_by": approved_by, "approved_at": utcnow()},
        )

    def reject_proposal(self, proposal_id: str, rejected_by: str, rejection_reason: str) -> BurnProposal:
        if not rejection_reason or not rejection_reason.strip():
            raise ValidationError("A rejection reason is required")
        return self._transition(
            proposal_id, BurnProposalStatus.REJECTED, rejected_by, "burn.rejected",
            {
                "rejected_by": rejected_by,
                "rejected_at": utcnow(),
                "rejection_reason": rejection_reason.strip(),
            },
        )

    def mark_executed(
        self,
        proposal_id: str,
        executed_by: str,
        burned_amount: int | None = None,
        transaction_signature: str | None = None,
    ) -> BurnProposal:
        """Record that an approved burn happened on-chain."""
        proposal = self.get_proposal(proposal_id)
        amount = proposal.proposed_amount if burned_amount is None else burned_amount
        if amount <= 0 or amount > proposal.proposed_amount:
            raise ValidationError("Burned amount must be positive and not exceed the approved amount")
        return self._transition(
            proposal_id, BurnProposalStatus.EXECUTED, executed_by, "burn.executed",
            {
                "executed_by": executed_by,
                "executed_at": utcnow(),
                "burned_amount": amount,
                "transaction_signature": transaction_signature,
            },
        )

    # ── Queries ────────────────────────────────────────────────

    def get_proposal(self, proposal_id: str) -> BurnProposal:
        with self.SessionLocal() as session:
            proposal = session.get(BurnProposal, proposal_id)
        if proposal is None:
            raise NotFoundError(f"Burn proposal '{proposal_id}' not found", proposal_id=proposal_id)
        return proposal

    def get_proposals(self, status: BurnProposalStatus | str | None = None) -> list[BurnProposal]:
        stmt = select(BurnProposal).order_by(BurnProposal.created_at.desc())
        if status is not None:
            stmt = stmt.where(BurnProposal.status == BurnProposalStatus(status).value)
        with self.SessionLocal() as session:
            return list(session.execute(stmt).scalars().all())

    def get_burn_stats(self) -> BurnStats:
        with self.SessionLocal() as session:
            counts = dict(
                session.execute(
                    select(BurnProposal.status, func.count()).group_by(BurnProposal.status)
                ).all()
            )
            total_burned = session.execute(
                select(func.coalesce(func.sum(BurnProposal.burned_amount), 0))
                .where(BurnProposal.status == BurnProposalStatus.EXECUTED.value)
            ).scalar_one()
        return BurnStats(
            total_burned=int(total_burned),
            executed_count=counts.get(BurnProposalStatus.EXECUTED.value, 0),
            pending_count=counts.get(BurnProposalStatus.PENDING.value, 0),
            approved_count=counts.get(BurnProposalStatus.APPROVED.value, 0),
            rejected_count=counts.get(BurnProposalStatus.REJECTED.value, 0),
            last_burn_at=self._last_executed_at(),
        )

    # ── Internal ───────────────────────────────────────────────

    def _ensure_config(self) -> None:
        with self.SessionLocal() as session:
            if session.get(BurnConfig, _CONFIG_ID) is not None:
                return
        self._seed_config()

    def _seed_config(self) -> None:
        """Insert the singleton row from defaults; losing the race to another seeder is fine."""
        try:
            with self.SessionLocal.begin() as session:
                session.add(BurnConfig(id=_CONFIG_ID, **self.default_limits.model_dump()))
            logger.info("Burn config seeded from defaults")
        except IntegrityError:
            with self.SessionLocal() as session:
                if session.get(BurnConfig, _CONFIG_ID) is None:
                    raise

    @staticmethod
    def _config_row(session: Session) -> BurnConfig:
        row = session.get(BurnConfig, _CONFIG_ID, populate_existing=True)
        if row is None:
            raise NotFoundError("Burn config has not been seeded")
        return row

    def _last_executed_at(self):
        with self.SessionLocal() as session:
            value = session.execute(
                select(func.max(BurnProposal.executed_at))
                .where(BurnProposal.status == BurnProposalStatus.EXECUTED.value)
            ).scalar_one()
        return as_utc(value) if value is not None else None

    def _transition(
        self,
        proposal_id: str,
        target: BurnProposalStatus,
        actor_id: str,
        event_type: str,
        values: dict[str, Any],
    ) -> BurnProposal:
        sources = [s.value for s in sources_for(BURN_TRANSITIONS, target)]
        with self.SessionLocal.begin() as session:
            result = session.execute(
                update(BurnProposal)
                .where(BurnProposal.id == proposal_id, BurnProposal.status.in_(sources))
                .values(status=target.value, **values)
                .execution_options(synchronize_session=False)
            )
            proposal = session.get(BurnProposal, proposal_id, populate_existing=True)
            if proposal is None:
                raise NotFoundError(f"Burn proposal '{proposal_id}' not found", proposal_id=proposal_id)
            if result.rowcount == 0:
                ensure_transition("burn_proposal", BURN_TRANSITIONS, proposal.status, target)
                raise InvalidStateTransition("burn_proposal", proposal.status, target)
            self._audit(session, event_type, proposal, actor_id, {})

        logger.info("Burn proposal %s -> %s by %s", proposal_id, target.value, actor_id)
        return proposal

    def _audit(
        self,
        session: Session,
        event_type: str,
        proposal: BurnProposal,
        actor_id: str,
        metadata: dict[str, Any],
    ) -> None:
        self.audit.record(
            session,
            event_type=event_type,
            entity_type="burn_proposal",
            entity_id=proposal.id,
            actor_id=actor_id,
            actor_type=ActorType.ADMIN,
            metadata={
                "amount": proposal.burned_amount or proposal.proposed_amount,
                "status": proposal.status,
                **metadata,
            },
        )


def _limits_from_row(row: BurnConfig) -> BurnSafetyLimits:
    return BurnSafetyLimits(
        enabled=row.enabled,
        burn_rate_percent=Decimal(row.burn_rate_percent),
        min_burn_amount=row.min_burn_amount,
        max_burn_amount=row.max_burn_amount,
        max_treasury_burn_percent=Decimal(row.max_treasury_burn_percent),
        max_supply_burn_percent=Decimal(row.max_supply_burn_percent),
        cooldown_hours=row.cooldown_hours,
    )
