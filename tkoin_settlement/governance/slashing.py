"""
Slashing Governance — admin-driven penalties on an agent's stake.

Lifecycle: pending → executed → reversed.

The slashed amount is fixed when the event is created (a percentage of the
stake at that moment, by severity). Execution and reversal each run as one
transaction: a conditional status update first, so a second attempt fails
cleanly instead of double-applying, then the stake compare-and-swap, a
history row, tier recalculation and an audit record.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.domain.schema import (
    SLASH_TRANSITIONS,
    ActorType,
    AgentTier,
    SlashBreakdown,
    SlashingOverview,
    SlashingPenalties,
    SlashSeverity,
    SlashStatus,
    StakeOperation,
    TierSchedule,
    ensure_transition,
)
from tkoin_settlement.errors import (
    InvalidStateTransition,
    NotFoundError,
    ValidationError,
)
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.models import AgentStake, SlashingEvent, StakeHistory
from tkoin_settlement.ledger.service import LedgerService
from tkoin_settlement.staking.service import swap_stake

logger = logging.getLogger(__name__)


class SlashingService:
    """Create, execute and reverse slashing events."""

    def __init__(
        self,
        ledger: LedgerService,
        audit: AuditSink,
        penalties: SlashingPenalties | None = None,
        schedule: TierSchedule | None = None,
    ) -> None:
        self.ledger = ledger
        self.audit = audit
        self.penalties = penalties or SlashingPenalties()
        self.schedule = schedule or TierSchedule()
        self.SessionLocal = ledger.SessionLocal

    def create_slashing_event(
        self,
        agent_id: str,
        violation_type: str,
        severity: SlashSeverity | str,
        description: str,
        created_by: str,
        evidence_url: str | None = None,
    ) -> SlashingEvent:
        """Record a pending slash against the agent's current stake."""
        try:
            severity = SlashSeverity(severity)
        except ValueError as exc:
            raise ValidationError(f"Invalid severity: {severity!r}") from exc
        for field_name, value in (
            ("violation_type", violation_type),
            ("description", description),
            ("created_by", created_by),
        ):
            if not value or not str(value).strip():
                raise ValidationError(f"{field_name} is required")

        with self.SessionLocal.begin() as session:
            stake = self._stake_for(session, agent_id)
            if stake.staked_amount <= 0:
                raise ValidationError(f"Agent '{agent_id}' has nothing staked to slash")

            percentage = self.penalties.percentage_for(severity)
            slashed = self.penalties.slashed_amount(stake.staked_amount, severity)
            event = SlashingEvent(
                agent_id=agent_id,
                stake_id=stake.id,
                violation_type=violation_type.strip(),
                severity=severity.value,
                description=description.strip(),
                evidence_url=evidence_url,
                slash_percentage=percentage,
                slashed_amount=slashed,
                remaining_stake=stake.staked_amount - slashed,
                status=SlashStatus.PENDING.value,
                created_by=created_by,
            )
            session.add(event)
            session.flush()
            self._audit(session, "slash.created", event, created_by, {
                "severity": severity.value,
                "violation_type": event.violation_type,
                "slash_percentage": str(percentage),
                "slashed_amount": slashed,
            })

        logger.info(
            "Slashing event created: id=%s agent=%s severity=%s amount=%s",
            event.id, agent_id, severity.value, slashed,
        )
        return event

    def execute_slash(self, event_id: str, executed_by: str) -> SlashingEvent:
        """
        Apply a pending slash to the stake.

        Raises:
            InvalidStateTransition: The event is not pending (e.g. already executed).
            ValidationError: The stake has since dropped below the slashed amount.
        """
        with self.SessionLocal.begin() as session:
            event = self._claim(session, event_id, SlashStatus.PENDING, SlashStatus.EXECUTED, {
                "executed_by": executed_by,
                "executed_at": utcnow(),
            })
            stake = self._stake_for(session, event.agent_id)
            if event.slashed_amount > stake.staked_amount:
                raise ValidationError(
                    f"Slash amount {event.slashed_amount} exceeds current stake {stake.staked_amount}",
                    event_id=event_id,
                )

            new_amount = stake.staked_amount - event.slashed_amount
            self._apply_stake_change(
                session, stake, new_amount, StakeOperation.SLASH, event,
                notes=f"Slashed ({event.severity}): {event.violation_type}",
            )
            self._audit(session, "slash.executed", event, executed_by, {
                "slashed_amount": event.slashed_amount,
                "new_stake": new_amount,
            })

        logger.info(
            "Slash executed: id=%s agent=%s amount=%s by=%s",
            event_id, event.agent_id, event.slashed_amount, executed_by,
        )
        return self.get_slashing_event(event_id)

    def reverse_slash(self, event_id: str, reversal_reason: str, reversed_by: str) -> SlashingEvent:
        """Undo an executed slash, restoring the slashed amount to the stake."""
        if not reversal_reason or not reversal_reason.strip():
            raise ValidationError("A reversal reason is required")

        with self.SessionLocal.begin() as session:
            event = self._claim(session, event_id, SlashStatus.EXECUTED, SlashStatus.REVERSED, {
                "reversed_by": reversed_by,
                "reversed_at": utcnow(),
                "reversal_reason": reversal_reason.strip(),
            })
            stake = self._stake_for(session, event.agent_id)
            new_amount = stake.staked_amount + event.slashed_amount
            self._apply_stake_change(
                session, stake, new_amount, StakeOperation.SLASH_REVERSAL, event,
                notes=f"Slash reversed: {reversal_reason.strip()}",
            )
            self._audit(session, "slash.reversed", event, reversed_by, {
                "restored_amount": event.slashed_amount,
                "new_stake": new_amount,
                "reason": reversal_reason.strip(),
            })

        logger.info("Slash reversed: id=%s agent=%s by=%s", event_id, event.agent_id, reversed_by)
        return self.get_slashing_event(event_id)

    # ── Queries ────────────────────────────────────────────────

    def get_slashing_event(self, event_id: str) -> SlashingEvent:
        with self.SessionLocal() as session:
            event = session.get(SlashingEvent, event_id)
        if event is None:
            raise NotFoundError(f"Slashing event '{event_id}' not found", event_id=event_id)
        return event

    def get_agent_slashing_history(self, agent_id: str) -> list[SlashingEvent]:
        return self._list(SlashingEvent.agent_id == agent_id)

    def get_pending_slashes(self) -> list[SlashingEvent]:
        return self._list(SlashingEvent.status == SlashStatus.PENDING.value)

    def get_all_slashing_events(self, limit: int = 100) -> list[SlashingEvent]:
        return self._list(limit=limit)

    # ── Analytics ──────────────────────────────────────────────

    def get_slashing_overview(self) -> SlashingOverview:
        """Event counts by status; amounts cover executed slashes only."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(
                    SlashingEvent.status,
                    func.count(SlashingEvent.id),
                    func.coalesce(func.sum(SlashingEvent.slashed_amount), 0),
                ).group_by(SlashingEvent.status)
            ).all()

        counts = {status: count for status, count, _ in rows}
        executed = counts.get(SlashStatus.EXECUTED.value, 0)
        total_slashed = next(
            (int(amount) for status, _, amount in rows if status == SlashStatus.EXECUTED.value), 0
        )
        return SlashingOverview(
            total_events=sum(counts.values()),
            total_slashed=total_slashed,
            average_slashed=total_slashed // executed if executed else 0,
            pending_count=counts.get(SlashStatus.PENDING.value, 0),
            executed_count=executed,
            reversed_count=counts.get(SlashStatus.REVERSED.value, 0),
        )

    def get_severity_breakdown(self) -> list[SlashBreakdown]:
        return self._breakdown(SlashingEvent.severity)

    def get_violation_breakdown(self) -> list[SlashBreakdown]:
        return self._breakdown(SlashingEvent.violation_type)

    # ── Internal ───────────────────────────────────────────────

    def _list(self, *criteria: Any, limit: int | None = None) -> list[SlashingEvent]:
        stmt = select(SlashingEvent).where(*criteria).order_by(SlashingEvent.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        with self.SessionLocal() as session:
            return list(session.execute(stmt).scalars().all())

    def _breakdown(self, column: Any) -> list[SlashBreakdown]:
        """Executed slashes grouped by ``column``, most frequent first."""
        count = func.count(SlashingEvent.id)
        with self.SessionLocal() as session:
            rows = session.execute(
                select(column, count, func.coalesce(func.sum(SlashingEvent.slashed_amount), 0))
                .where(SlashingEvent.status == SlashStatus.EXECUTED.value)
                .group_by(column)
                .order_by(count.desc(), column)
            ).all()

        total = sum(n for _, n, _ in rows)
        return [
            SlashBreakdown(
                key=key,
                count=n,
                total_slashed=int(amount),
                average_slashed=int(amount) // n,
                percentage=(Decimal(n) * 100 / total).quantize(Decimal("0.01")),
            )
            for key, n, amount in rows
        ]

    @staticmethod
    def _stake_for(session: Session, agent_id: str) -> AgentStake:
        stake = session.execute(
            select(AgentStake).where(AgentStake.agent_id == agent_id)
        ).scalar_one_or_none()
        if stake is None:
            raise NotFoundError(f"No stake found for agent '{agent_id}'", agent_id=agent_id)
        return stake

    @staticmethod
    def _claim(
        session: Session,
        event_id: str,
        expected: SlashStatus,
        target: SlashStatus,
        values: dict[str, Any],
    ) -> SlashingEvent:
        """Conditionally move the event from ``expected`` to ``target``."""
        result = session.execute(
            update(SlashingEvent)
            .where(SlashingEvent.id == event_id, SlashingEvent.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        event = session.get(SlashingEvent, event_id, populate_existing=True)
        if event is None:
            raise NotFoundError(f"Slashing event '{event_id}' not found", event_id=event_id)
        if result.rowcount == 0:
            ensure_transition("slashing_event", SLASH_TRANSITIONS, event.status, target)
            raise InvalidStateTransition("slashing_event", event.status, target)
        return event

    def _apply_stake_change(
        self,
        session: Session,
        stake: AgentStake,
        new_amount: int,
        operation: StakeOperation,
        event: SlashingEvent,
        notes: str,
    ) -> None:
        previous_tier = AgentTier(stake.current_tier)
        new_tier = self.schedule.calculate_tier(new_amount)
        swap_stake(session, stake.id, stake.staked_amount, new_amount, new_tier)
        session.add(StakeHistory(
            stake_id=stake.id,
            agent_id=stake.agent_id,
            operation_type=operation.value,
            amount=event.slashed_amount,
            previous_balance=stake.staked_amount,
            new_balance=new_amount,
            previous_tier=previous_tier.value,
            new_tier=new_tier.value,
            notes=notes,
        ))
        self.ledger.apply_tier(
            stake.agent_id, new_tier, self.schedule.limits_for(new_tier), session=session
        )

    def _audit(
        self,
        session: Session,
        event_type: str,
        event: SlashingEvent,
        actor_id: str,
        metadata: dict[str, Any],
    ) -> None:
        self.audit.record(
            session,
            event_type=event_type,
            entity_type="slashing_event",
            entity_id=event.id,
            actor_id=actor_id,
            actor_type=ActorType.ADMIN,
            metadata={"agent_id": event.agent_id, **metadata},
        )
