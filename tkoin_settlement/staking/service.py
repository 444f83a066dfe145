"""
Staking Engine — agents stake TKOIN to unlock higher verification tiers.

Each stake change is one transaction containing:
1. A compare-and-swap update of the stake row (``WHERE staked_amount = :previous``)
2. An append-only StakeHistory row
3. The agent's tier and limits, via ``LedgerService.apply_tier``
4. An audit record

Tiers are always derived from the staked amount by ``TierSchedule``; nothing
else decides them. Stakes are locked for the lockup period after every
stake; an early (forced) unstake pays the early-withdrawal penalty.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tkoin_settlement.domain.clock import as_utc, utcnow
from tkoin_settlement.domain.schema import (
    ActorType,
    AgentHealth,
    AgentHealthReport,
    AgentStatus,
    AgentTier,
    RiskLevel,
    StakeInfo,
    StakeOperation,
    StakeStatus,
    StakingOverview,
    StakingParams,
    SyncResult,
    TierDistribution,
    TierSchedule,
    UnstakeResult,
)
from tkoin_settlement.domain.units import TOKEN_DECIMALS, format_tokens, tokens_to_base_units
from tkoin_settlement.errors import (
    ChainReaderError,
    ConcurrentConflict,
    InsufficientBalance,
    InsufficientStakedBalance,
    NotFoundError,
    StakeLocked,
    ValidationError,
)
from tkoin_settlement.integrations.solana import ChainReader
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.models import Agent, AgentStake, StakeHistory
from tkoin_settlement.ledger.service import LedgerService, retry_on_conflict

logger = logging.getLogger(__name__)

# Percent above the tier threshold inside which an agent is high or medium risk.
DOWNGRADE_RISK_MARGINS = {
    AgentTier.VERIFIED: (10, 20),
    AgentTier.PREMIUM: (4, 10),
}


def days_until(locked_until: datetime | None, now: datetime) -> int:
    """Whole days remaining until ``locked_until``, rounded up."""
    if locked_until is None or now >= locked_until:
        return 0
    return math.ceil((locked_until - now).total_seconds() / 86_400)


def swap_stake(
    session: Session,
    stake_id: str,
    previous_amount: int,
    new_amount: int,
    new_tier: AgentTier,
    **values,
) -> None:
    """
    Compare-and-swap the staked amount.

    Raises ConcurrentConflict when another writer changed the stake since
    ``previous_amount`` was read.
    """
    result = session.execute(
        update(AgentStake)
        .where(AgentStake.id == stake_id, AgentStake.staked_amount == previous_amount)
        .values(staked_amount=new_amount, current_tier=AgentTier(new_tier).value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise ConcurrentConflict(
            f"Stake {stake_id} changed concurrently (expected {previous_amount})",
            stake_id=stake_id,
        )


class StakingService:
    """
    Stake / unstake with tier recalculation.

    Usage:
        staking = StakingService(ledger, audit, chain_reader)
        staking.stake("agent-1", "WalletPubkey...", "12000")
        info = staking.get_stake_info("agent-1")   # tier == verified
    """

    def __init__(
        self,
        ledger: LedgerService,
        audit: AuditSink,
        chain_reader: ChainReader,
        params: StakingParams | None = None,
        schedule: TierSchedule | None = None,
        decimals: int = TOKEN_DECIMALS,
    ) -> None:
        self.ledger = ledger
        self.audit = audit
        self.chain_reader = chain_reader
        self.params = params or StakingParams()
        self.schedule = schedule or TierSchedule()
        self.decimals = decimals
        self.SessionLocal = ledger.SessionLocal

    # ── Stake rows ─────────────────────────────────────────────

    def get_stake(self, agent_id: str) -> AgentStake | None:
        with self.SessionLocal() as session:
            return session.execute(
                select(AgentStake).where(AgentStake.agent_id == agent_id)
            ).scalar_one_or_none()

    def get_or_create_stake(self, agent_id: str, stake_account: str | None = None) -> AgentStake:
        """Return the agent's stake row, creating an empty one on first use."""
        existing = self.get_stake(agent_id)
        if existing is not None:
            return existing

        try:
            with self.SessionLocal.begin() as session:
                self.ledger.require_agent(agent_id, session=session)
                stake = AgentStake(
                    agent_id=agent_id,
                    staked_amount=0,
                    current_tier=AgentTier.BASIC.value,
                    status=StakeStatus.ACTIVE.value,
                    stake_account=stake_account,
                )
                session.add(stake)
            logger.info("Stake account created: agent=%s", agent_id)
            return stake
        except IntegrityError:
            # another request created it first
            stake = self.get_stake(agent_id)
            if stake is None:
                raise
            return stake

    # ── Operations ─────────────────────────────────────────────

    def stake(
        self,
        agent_id: str,
        wallet_address: str | None,
        amount_tokens: str | int,
        stake_account: str | None = None,
        transaction_signature: str | None = None,
    ) -> StakeInfo:
        """
        Add ``amount_tokens`` to the agent's stake.

        The agent's on-chain wallet must hold at least the current stake plus
        the new amount.

        Raises:
            ValidationError: Below the minimum stake or no wallet known.
            InsufficientBalance: On-chain balance does not cover the stake.
            ChainReaderError: The balance oracle is unavailable.
        """
        amount = tokens_to_base_units(amount_tokens, self.decimals)
        if amount < self.params.min_stake:
            raise ValidationError(
                f"Minimum stake is {format_tokens(self.params.min_stake, self.decimals)}",
                amount=amount,
            )
        agent = self.ledger.require_agent(agent_id)
        wallet = wallet_address or agent.wallet_address
        if not wallet:
            raise ValidationError(f"No wallet address known for agent '{agent_id}'")

        def attempt() -> None:
            stake = self.get_or_create_stake(agent_id, stake_account=stake_account)
            previous = stake.staked_amount
            new_amount = previous + amount

            on_chain = self.chain_reader.get_available_balance(wallet)
            if on_chain < new_amount:
                raise InsufficientBalance(
                    f"Wallet holds {format_tokens(on_chain, self.decimals)}, "
                    f"stake requires {format_tokens(new_amount, self.decimals)}",
                    available=on_chain,
                    required=new_amount,
                )

            previous_tier = AgentTier(stake.current_tier)
            new_tier = self.schedule.calculate_tier(new_amount)
            locked_until = utcnow() + timedelta(days=self.params.lockup_period_days)
            extra = {"status": StakeStatus.ACTIVE.value, "locked_until": locked_until}
            if stake_account:
                extra["stake_account"] = stake_account

            with self.SessionLocal.begin() as session:
                swap_stake(session, stake.id, previous, new_amount, new_tier, **extra)
                session.add(StakeHistory(
                    stake_id=stake.id,
                    agent_id=agent_id,
                    operation_type=StakeOperation.STAKE.value,
                    amount=amount,
                    previous_balance=previous,
                    new_balance=new_amount,
                    previous_tier=previous_tier.value,
                    new_tier=new_tier.value,
                    transaction_signature=transaction_signature,
                ))
                self.ledger.apply_tier(
                    agent_id, new_tier, self.schedule.limits_for(new_tier), session=session
                )
                self.audit.record(
                    session,
                    event_type="stake.staked",
                    entity_type="agent_stake",
                    entity_id=stake.id,
                    actor_id=agent_id,
                    actor_type=ActorType.AGENT,
                    metadata={
                        "amount": amount,
                        "previous_balance": previous,
                        "new_balance": new_amount,
                        "previous_tier": previous_tier.value,
                        "new_tier": new_tier.value,
                    },
                )

            logger.info(
                "Stake added: agent=%s amount=%s total=%s tier=%s->%s",
                agent_id, amount, new_amount, previous_tier.value, new_tier.value,
            )

        retry_on_conflict(attempt, description=f"stake for {agent_id}")
        return self.get_stake_info(agent_id)

    def unstake(self, agent_id: str, amount_tokens: str | int, force: bool = False) -> UnstakeResult:
        """
        Remove ``amount_tokens`` from the agent's stake.

        During the lockup period this raises StakeLocked unless ``force`` is
        set, in which case the early-withdrawal penalty is charged on the
        withdrawn amount.
        """
        amount = tokens_to_base_units(amount_tokens, self.decimals)
        if amount <= 0:
            raise ValidationError("Unstake amount must be positive")

        def attempt() -> UnstakeResult:
            stake = self.get_stake(agent_id)
            if stake is None:
                raise NotFoundError(f"No stake found for agent '{agent_id}'", agent_id=agent_id)

            previous = stake.staked_amount
            if previous < amount:
                raise InsufficientStakedBalance(
                    f"Agent '{agent_id}' has {format_tokens(previous, self.decimals)} staked",
                    staked=previous,
                    requested=amount,
                )

            now = utcnow()
            locked_until = as_utc(stake.locked_until)
            remaining_days = days_until(locked_until, now)
            penalty = 0
            if remaining_days > 0:
                if not force:
                    raise StakeLocked(
                        f"Stake is locked for {remaining_days} more day(s)",
                        days_remaining=remaining_days,
                    )
                penalty = self.params.penalty_for(amount)

            new_amount = previous - amount
            previous_tier = AgentTier(stake.current_tier)
            new_tier = self.schedule.calculate_tier(new_amount)
            status = StakeStatus.UNSTAKING if new_amount == 0 else StakeStatus.ACTIVE

            with self.SessionLocal.begin() as session:
                swap_stake(session, stake.id, previous, new_amount, new_tier, status=status.value)
                session.add(StakeHistory(
                    stake_id=stake.id,
                    agent_id=agent_id,
                    operation_type=StakeOperation.UNSTAKE.value,
                    amount=amount,
                    previous_balance=previous,
                    new_balance=new_amount,
                    previous_tier=previous_tier.value,
                    new_tier=new_tier.value,
                    penalty_amount=penalty,
                    notes="early withdrawal" if penalty else None,
                ))
                self.ledger.apply_tier(
                    agent_id, new_tier, self.schedule.limits_for(new_tier), session=session
                )
                self.audit.record(
                    session,
                    event_type="stake.unstaked",
                    entity_type="agent_stake",
                    entity_id=stake.id,
                    actor_id=agent_id,
                    actor_type=ActorType.AGENT,
                    metadata={
                        "amount": amount,
                        "penalty": penalty,
                        "forced": bool(force and penalty),
                        "new_balance": new_amount,
                        "new_tier": new_tier.value,
                    },
                )

            logger.info(
                "Stake withdrawn: agent=%s amount=%s penalty=%s remaining=%s tier=%s",
                agent_id, amount, penalty, new_amount, new_tier.value,
            )
            return UnstakeResult(
                agent_id=agent_id,
                amount=amount,
                penalty=penalty,
                remaining_stake=new_amount,
                new_tier=new_tier,
                forced=bool(penalty),
            )

        return retry_on_conflict(attempt, description=f"unstake for {agent_id}")

    # ── Reads ──────────────────────────────────────────────────

    def get_stake_info(self, agent_id: str) -> StakeInfo | None:
        stake = self.get_stake(agent_id)
        if stake is None:
            return None

        now = utcnow()
        locked_until = as_utc(stake.locked_until)
        remaining = days_until(locked_until, now)
        tier = self.schedule.calculate_tier(stake.staked_amount)
        limits = self.schedule.limits_for(tier)
        return StakeInfo(
            agent_id=agent_id,
            staked_amount=stake.staked_amount,
            current_tier=tier,
            status=StakeStatus(stake.status),
            locked_until=locked_until,
            is_locked=remaining > 0,
            days_remaining=remaining,
            next_tier=self.schedule.next_tier(tier),
            tokens_needed_for_next_tier=self.schedule.tokens_needed(stake.staked_amount),
            daily_limit=limits.daily_limit,
            monthly_limit=limits.monthly_limit,
            on_chain_balance=stake.on_chain_balance,
            last_synced_at=as_utc(stake.last_synced_at),
        )

    def get_stake_history(self, agent_id: str, limit: int = 50) -> list[StakeHistory]:
        """Newest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(StakeHistory)
                    .where(StakeHistory.agent_id == agent_id)
                    .order_by(StakeHistory.id.desc())
                    .limit(limit)
                ).scalars().all()
            )

    # ── Analytics ──────────────────────────────────────────────

    def get_staking_overview(self) -> StakingOverview:
        """Total staked across all stakes; counts and averages over active agents."""
        with self.SessionLocal() as session:
            total = session.execute(
                select(func.coalesce(func.sum(AgentStake.staked_amount), 0))
            ).scalar_one()
            rows = session.execute(
                select(
                    AgentStake.current_tier,
                    func.count(AgentStake.id),
                    func.coalesce(func.sum(AgentStake.staked_amount), 0),
                )
                .join(Agent, Agent.id == AgentStake.agent_id)
                .where(Agent.status == AgentStatus.ACTIVE.value)
                .group_by(AgentStake.current_tier)
            ).all()

        distribution = sorted(
            (
                TierDistribution(tier=AgentTier(tier), count=count, total_staked=int(amount))
                for tier, count, amount in rows
            ),
            key=lambda entry: entry.tier.rank,
        )
        active = sum(entry.count for entry in distribution)
        active_total = sum(entry.total_staked for entry in distribution)
        return StakingOverview(
            total_staked=int(total),
            active_agents=active,
            average_stake=active_total // active if active else 0,
            tier_distribution=distribution,
        )

    def downgrade_risk(self, staked_amount: int) -> RiskLevel:
        tier = self.schedule.calculate_tier(staked_amount)
        if tier == AgentTier.BASIC:
            return RiskLevel.HIGH if staked_amount < self.params.min_stake else RiskLevel.LOW
        threshold = self.schedule.threshold_for(tier)
        high, medium = DOWNGRADE_RISK_MARGINS[tier]
        if staked_amount * 100 < threshold * (100 + high):
            return RiskLevel.HIGH
        if staked_amount * 100 < threshold * (100 + medium):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def get_agent_health_metrics(self, limit: int = 10) -> AgentHealthReport:
        """
        Active agents close to losing their tier.

        Verified and premium agents are at risk just above their tier
        threshold; a basic agent is at risk once slashing has left its
        stake below the minimum stake. Highest risk and smallest margin first.
        """
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AgentStake.agent_id, AgentStake.staked_amount)
                .join(Agent, Agent.id == AgentStake.agent_id)
                .where(Agent.status == AgentStatus.ACTIVE.value, AgentStake.staked_amount > 0)
            ).all()

        at_risk: list[AgentHealth] = []
        for agent_id, staked in rows:
            level = self.downgrade_risk(staked)
            if level == RiskLevel.LOW:
                continue
            tier = self.schedule.calculate_tier(staked)
            at_risk.append(AgentHealth(
                agent_id=agent_id,
                tier=tier,
                staked_amount=staked,
                distance_from_downgrade=staked - self.schedule.threshold_for(tier),
                risk_level=level,
            ))
        at_risk.sort(key=lambda a: (a.risk_level != RiskLevel.HIGH, a.distance_from_downgrade))

        high = sum(1 for a in at_risk if a.risk_level == RiskLevel.HIGH)
        return AgentHealthReport(
            total_at_risk=len(at_risk),
            high_risk=high,
            medium_risk=len(at_risk) - high,
            agents=at_risk[:limit],
        )

    def get_recent_activity(self, limit: int = 20) -> list[StakeHistory]:
        """Stake history across all agents, newest first."""
        with self.SessionLocal() as session:
            return list(
                session.execute(
                    select(StakeHistory).order_by(StakeHistory.id.desc()).limit(limit)
                ).scalars().all()
            )

    def sync_on_chain_balance(self, agent_id: str) -> SyncResult:
        """
        Refresh the observed vault balance for an agent's stake.

        Best effort: reader failures are reported in the result, not raised.
        Only ``on_chain_balance`` and ``last_synced_at`` are written; the
        ledger's ``staked_amount`` is never changed by a sync.
        """
        stake = self.get_stake(agent_id)
        if stake is None:
            raise NotFoundError(f"No stake found for agent '{agent_id}'", agent_id=agent_id)
        if not stake.stake_account:
            return SyncResult(
                agent_id=agent_id,
                success=False,
                staked_amount=stake.staked_amount,
                error="No stake account recorded",
            )

        try:
            balance = self.chain_reader.get_token_account_balance(stake.stake_account)
        except ChainReaderError as exc:
            logger.warning("On-chain stake sync failed for agent %s: %s", agent_id, exc)
            return SyncResult(
                agent_id=agent_id,
                success=False,
                staked_amount=stake.staked_amount,
                error=str(exc),
            )

        with self.SessionLocal.begin() as session:
            session.execute(
                update(AgentStake)
                .where(AgentStake.id == stake.id)
                .values(on_chain_balance=balance, last_synced_at=utcnow())
                .execution_options(synchronize_session=False)
            )

        if balance != stake.staked_amount:
            logger.warning(
                "Stake drift for agent %s: ledger=%s on_chain=%s",
                agent_id, stake.staked_amount, balance,
            )
        return SyncResult(
            agent_id=agent_id,
            success=True,
            on_chain_balance=balance,
            staked_amount=stake.staked_amount,
        )
