"""
Domain Schema — enums, policy models and state machines for the settlement core.

These are the canonical, storage-independent shapes used by every service:
agent tiers and their limits, staking and slashing parameters, burn safety
bounds, the order / slashing / burn lifecycles, and the read projections
returned to callers.

All token amounts are integer base units (see ``domain.units``).
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, computed_field

from tkoin_settlement.errors import InvalidStateTransition


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class AgentTier(str, enum.Enum):
    """Verification tier, derived from staked amount. Ordered basic < verified < premium."""

    BASIC = "basic"
    VERIFIED = "verified"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)


_TIER_ORDER = [AgentTier.BASIC, AgentTier.VERIFIED, AgentTier.PREMIUM]


class AgentStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REVOKED = "revoked"


class StakeStatus(str, enum.Enum):
    ACTIVE = "active"
    UNSTAKING = "unstaking"


class StakeOperation(str, enum.Enum):
    """Operation types recorded in the append-only stake history."""

    STAKE = "stake"
    UNSTAKE = "unstake"
    SLASH = "slash"
    SLASH_REVERSAL = "slash_reversal"


class SlashSeverity(str, enum.Enum):
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"


class SlashStatus(str, enum.Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    REVERSED = "reversed"


class BurnProposalStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTED = "executed"


class OrderStatus(str, enum.Enum):
    """P2P order lifecycle."""

    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    PAYMENT_SENT = "payment_sent"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class SettlementType(str, enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    P2P_CREDIT = "p2p_credit"


class SettlementStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ActorType(str, enum.Enum):
    AGENT = "agent"
    ADMIN = "admin"
    SYSTEM = "system"
    PLATFORM = "platform"


class RiskLevel(str, enum.Enum):
    """How close a staked agent is to dropping a tier."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ════════════════════════════════════════════════════════════════
# State Machines
# ════════════════════════════════════════════════════════════════

TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.EXPIRED}
)
OPEN_ORDER_STATUSES = frozenset(set(OrderStatus) - TERMINAL_ORDER_STATUSES)

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset(
        {OrderStatus.PAYMENT_PENDING, OrderStatus.CANCELLED, OrderStatus.EXPIRED}
    ),
    OrderStatus.PAYMENT_PENDING: frozenset({OrderStatus.PAYMENT_SENT, OrderStatus.EXPIRED}),
    OrderStatus.PAYMENT_SENT: frozenset({OrderStatus.VERIFYING, OrderStatus.EXPIRED}),
    OrderStatus.VERIFYING: frozenset(
        {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.EXPIRED}
    ),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.EXPIRED: frozenset(),
}

SLASH_TRANSITIONS: dict[SlashStatus, frozenset[SlashStatus]] = {
    SlashStatus.PENDING: frozenset({SlashStatus.EXECUTED}),
    SlashStatus.EXECUTED: frozenset({SlashStatus.REVERSED}),
    SlashStatus.REVERSED: frozenset(),
}

BURN_TRANSITIONS: dict[BurnProposalStatus, frozenset[BurnProposalStatus]] = {
    BurnProposalStatus.PENDING: frozenset(
        {BurnProposalStatus.APPROVED, BurnProposalStatus.REJECTED}
    ),
    BurnProposalStatus.APPROVED: frozenset({BurnProposalStatus.EXECUTED}),
    BurnProposalStatus.REJECTED: frozenset(),
    BurnProposalStatus.EXECUTED: frozenset(),
}


def sources_for(table: dict[Any, frozenset[Any]], target: Any) -> frozenset[Any]:
    """All states from which ``target`` is reachable in one step."""
    return frozenset(state for state, targets in table.items() if target in targets)


def ensure_transition(machine: str, table: dict[Any, frozenset[Any]], current: Any, target: Any) -> None:
    """Raise InvalidStateTransition unless ``current -> target`` is an edge of ``table``."""
    current_state = type(target)(current)
    if target not in table.get(current_state, frozenset()):
        raise InvalidStateTransition(machine, current_state, target)


# ════════════════════════════════════════════════════════════════
# Policy Models
# ════════════════════════════════════════════════════════════════


class TierLimits(BaseModel):
    """Transaction limits granted by a tier, in whole USD."""

    daily_limit: int = Field(ge=0)
    monthly_limit: int = Field(ge=0)


DEFAULT_TIER_LIMITS = {
    AgentTier.BASIC: TierLimits(daily_limit=1_000, monthly_limit=10_000),
    AgentTier.VERIFIED: TierLimits(daily_limit=10_000, monthly_limit=100_000),
    AgentTier.PREMIUM: TierLimits(daily_limit=50_000, monthly_limit=500_000),
}


class TierSchedule(BaseModel):
    """
    Maps a staked amount (base units) to a tier and its limits.

    Thresholds are inclusive: staking exactly the verified threshold makes
    the agent verified.
    """

    verified_threshold: int = Field(default=10_000 * 10**9, gt=0)
    premium_threshold: int = Field(default=50_000 * 10**9, gt=0)
    limits: dict[AgentTier, TierLimits] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_LIMITS)
    )

    def threshold_for(self, tier: AgentTier) -> int:
        if tier == AgentTier.PREMIUM:
            return self.premium_threshold
        if tier == AgentTier.VERIFIED:
            return self.verified_threshold
        return 0

    def calculate_tier(self, staked_amount: int) -> AgentTier:
        if staked_amount >= self.premium_threshold:
            return AgentTier.PREMIUM
        if staked_amount >= self.verified_threshold:
            return AgentTier.VERIFIED
        return AgentTier.BASIC

    def limits_for(self, tier: AgentTier) -> TierLimits:
        return self.limits[tier]

    def next_tier(self, tier: AgentTier) -> AgentTier | None:
        if tier.rank + 1 < len(_TIER_ORDER):
            return _TIER_ORDER[tier.rank + 1]
        return None

    def tokens_needed(self, staked_amount: int) -> int:
        """Base units still required to reach the next tier (0 at the top tier)."""
        upcoming = self.next_tier(self.calculate_tier(staked_amount))
        if upcoming is None:
            return 0
        return max(0, self.threshold_for(upcoming) - staked_amount)


class StakingParams(BaseModel):
    min_stake: int = Field(default=1_000 * 10**9, gt=0, description="Minimum single stake, base units")
    lockup_period_days: int = Field(default=30, ge=0)
    early_withdrawal_penalty_percent: Decimal = Field(default=Decimal("10"), ge=0, le=100)

    def penalty_for(self, amount: int) -> int:
        """Early-withdrawal penalty on ``amount`` base units, rounded down."""
        return int(Decimal(amount) * self.early_withdrawal_penalty_percent / 100)


class SlashingPenalties(BaseModel):
    """Percent of current stake removed per violation severity."""

    minor: Decimal = Field(default=Decimal("10"), gt=0, le=100)
    major: Decimal = Field(default=Decimal("25"), gt=0, le=100)
    critical: Decimal = Field(default=Decimal("50"), gt=0, le=100)

    def percentage_for(self, severity: SlashSeverity) -> Decimal:
        return getattr(self, severity.value)

    def slashed_amount(self, staked_amount: int, severity: SlashSeverity) -> int:
        return int(Decimal(staked_amount) * self.percentage_for(severity) / 100)


class BurnSafetyLimits(BaseModel):
    """Bounds every burn proposal must satisfy before it may be persisted."""

    enabled: bool = False
    burn_rate_percent: Decimal = Field(default=Decimal("1.00"), ge=0, le=100)
    min_burn_amount: int = Field(default=10**9, ge=0)
    max_burn_amount: int = Field(default=100_000 * 10**9, gt=0)
    max_treasury_burn_percent: Decimal = Field(default=Decimal("5.00"), ge=0, le=100)
    max_supply_burn_percent: Decimal = Field(default=Decimal("2.00"), ge=0, le=100)
    cooldown_hours: int = Field(default=24, ge=0)


# ════════════════════════════════════════════════════════════════
# Read Projections
# ════════════════════════════════════════════════════════════════


class StakeInfo(BaseModel):
    """Point-in-time view of an agent's stake. Derived, never stored."""

    agent_id: str
    staked_amount: int
    current_tier: AgentTier
    status: StakeStatus
    locked_until: datetime | None = None
    is_locked: bool = False
    days_remaining: int = 0
    next_tier: AgentTier | None = None
    tokens_needed_for_next_tier: int = 0
    daily_limit: int = 0
    monthly_limit: int = 0
    on_chain_balance: int | None = None
    last_synced_at: datetime | None = None


class UnstakeResult(BaseModel):
    agent_id: str
    amount: int = Field(description="Amount removed from the stake, base units")
    penalty: int = Field(default=0, description="Early-withdrawal penalty, base units")
    remaining_stake: int
    new_tier: AgentTier
    forced: bool = False

    @computed_field
    @property
    def final_amount(self) -> int:
        """What the agent actually receives after any penalty."""
        return self.amount - self.penalty


class SyncResult(BaseModel):
    agent_id: str
    success: bool
    on_chain_balance: int | None = None
    staked_amount: int = 0
    error: str | None = None

    @computed_field
    @property
    def in_sync(self) -> bool:
        return self.success and self.on_chain_balance == self.staked_amount


class BurnCalculation(BaseModel):
    treasury_balance: int = 0
    circulating_supply: int = 0
    burn_rate_percent: Decimal = Decimal("0")
    proposed_amount: int = 0
    within_limits: bool = False
    reasons: list[str] = Field(default_factory=list)
    next_allowed_at: datetime | None = None


class BurnStats(BaseModel):
    total_burned: int = 0
    executed_count: int = 0
    pending_count: int = 0
    approved_count: int = 0
    rejected_count: int = 0
    last_burn_at: datetime | None = None


class SweepResult(BaseModel):
    examined: int = 0
    processed: int = 0
    failed: int = 0


class IntegrityReport(BaseModel):
    is_valid: bool
    agents_checked: int
    discrepancies: list[str] = Field(default_factory=list)


# ════════════════════════════════════════════════════════════════
# Analytics Projections
# ════════════════════════════════════════════════════════════════


class TierDistribution(BaseModel):
    tier: AgentTier
    count: int = 0
    total_staked: int = 0


class StakingOverview(BaseModel):
    """Network-wide staking totals. Amounts in base units."""

    total_staked: int = 0
    active_agents: int = Field(default=0, description="Active agents holding a stake row")
    average_stake: int = 0
    tier_distribution: list[TierDistribution] = Field(default_factory=list)


class AgentHealth(BaseModel):
    agent_id: str
    tier: AgentTier
    staked_amount: int
    distance_from_downgrade: int = Field(description="Base units above the tier threshold")
    risk_level: RiskLevel


class AgentHealthReport(BaseModel):
    total_at_risk: int = 0
    high_risk: int = 0
    medium_risk: int = 0
    agents: list[AgentHealth] = Field(default_factory=list)


class SlashingOverview(BaseModel):
    total_events: int = 0
    total_slashed: int = Field(default=0, description="Executed slashes only, base units")
    average_slashed: int = 0
    pending_count: int = 0
    executed_count: int = 0
    reversed_count: int = 0


class SlashBreakdown(BaseModel):
    """Slashing events grouped by severity or violation type."""

    key: str
    count: int
    total_slashed: int
    average_slashed: int = 0
    percentage: Decimal = Field(description="Share of all events, 0-100")


class UserBalance(BaseModel):
    """A platform user's TKOIN position derived from settlement records."""

    platform_id: str
    user_id: str
    deposited: int = 0
    withdrawn: int = 0
    credited: int = Field(default=0, description="Completed P2P purchases")
    settlement_count: int = 0

    @computed_field
    @property
    def balance(self) -> int:
        return self.deposited + self.credited - self.withdrawn
