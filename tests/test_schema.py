"""
Tests for domain types and token units.

Validates:
- Tier thresholds and limits
- State machine transition tables
- Staking and slashing arithmetic
- Base-unit conversion (truncation, validation)
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from tkoin_settlement.config import TkoinSettings
from tkoin_settlement.domain.schema import (
    BURN_TRANSITIONS,
    ORDER_TRANSITIONS,
    SLASH_TRANSITIONS,
    TERMINAL_ORDER_STATUSES,
    AgentTier,
    BurnProposalStatus,
    OrderStatus,
    SlashingPenalties,
    SlashSeverity,
    SlashStatus,
    StakingParams,
    TierSchedule,
    UnstakeResult,
    ensure_transition,
    sources_for,
)
from tkoin_settlement.domain.units import (
    MAX_BASE_UNITS,
    base_units_to_tokens,
    format_tokens,
    tokens_to_base_units,
)
from tkoin_settlement.errors import InvalidStateTransition, ValidationError

TOKEN = 10**9


class TestEnums:
    def test_tier_values(self):
        assert AgentTier.BASIC.value == "basic"
        assert AgentTier.VERIFIED.value == "verified"
        assert AgentTier.PREMIUM.value == "premium"

    def test_tier_ordering(self):
        assert AgentTier.BASIC.rank < AgentTier.VERIFIED.rank < AgentTier.PREMIUM.rank

    def test_order_statuses(self):
        assert len(OrderStatus) == 7
        assert TERMINAL_ORDER_STATUSES == {
            OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.EXPIRED,
        }


class TestTierSchedule:
    def setup_method(self):
        self.schedule = TierSchedule()

    @pytest.mark.parametrize(
        "tokens, tier",
        [
            (0, AgentTier.BASIC),
            (9_999, AgentTier.BASIC),
            (10_000, AgentTier.VERIFIED),
            (49_999, AgentTier.VERIFIED),
            (50_000, AgentTier.PREMIUM),
            (1_000_000, AgentTier.PREMIUM),
        ],
    )
    def test_calculate_tier(self, tokens, tier):
        assert self.schedule.calculate_tier(tokens * TOKEN) == tier

    def test_limits(self):
        assert self.schedule.limits_for(AgentTier.BASIC).daily_limit == 1_000
        assert self.schedule.limits_for(AgentTier.BASIC).monthly_limit == 10_000
        assert self.schedule.limits_for(AgentTier.VERIFIED).daily_limit == 10_000
        assert self.schedule.limits_for(AgentTier.VERIFIED).monthly_limit == 100_000
        assert self.schedule.limits_for(AgentTier.PREMIUM).daily_limit == 50_000
        assert self.schedule.limits_for(AgentTier.PREMIUM).monthly_limit == 500_000

    def test_next_tier_and_tokens_needed(self):
        assert self.schedule.next_tier(AgentTier.BASIC) == AgentTier.VERIFIED
        assert self.schedule.next_tier(AgentTier.PREMIUM) is None
        assert self.schedule.tokens_needed(9_000 * TOKEN) == 1_000 * TOKEN
        assert self.schedule.tokens_needed(11_000 * TOKEN) == 39_000 * TOKEN
        assert self.schedule.tokens_needed(60_000 * TOKEN) == 0

    def test_settings_build_same_schedule(self):
        built = TkoinSettings(_env_file=None).tier_schedule
        assert built.verified_threshold == self.schedule.verified_threshold
        assert built.premium_threshold == self.schedule.premium_threshold
        assert built.limits_for(AgentTier.PREMIUM) == self.schedule.limits_for(AgentTier.PREMIUM)


class TestTransitions:
    def test_order_happy_path(self):
        path = [
            OrderStatus.CREATED,
            OrderStatus.PAYMENT_PENDING,
            OrderStatus.PAYMENT_SENT,
            OrderStatus.VERIFYING,
            OrderStatus.COMPLETED,
        ]
        for current, target in zip(path, path[1:]):
            ensure_transition("p2p_order", ORDER_TRANSITIONS, current, target)

    def test_terminal_states_have_no_exits(self):
        for status in TERMINAL_ORDER_STATUSES:
            assert ORDER_TRANSITIONS[status] == frozenset()

    def test_every_open_state_can_expire(self):
        assert sources_for(ORDER_TRANSITIONS, OrderStatus.EXPIRED) == {
            OrderStatus.CREATED,
            OrderStatus.PAYMENT_PENDING,
            OrderStatus.PAYMENT_SENT,
            OrderStatus.VERIFYING,
        }

    def test_cancel_sources(self):
        assert sources_for(ORDER_TRANSITIONS, OrderStatus.CANCELLED) == {
            OrderStatus.CREATED, OrderStatus.VERIFYING,
        }

    def test_invalid_transition_raises(self):
        with pytest.raises(InvalidStateTransition) as exc_info:
            ensure_transition("p2p_order", ORDER_TRANSITIONS, "created", OrderStatus.COMPLETED)
        assert exc_info.value.current == "created"
        assert exc_info.value.target == "completed"

    def test_slash_and_burn_tables(self):
        ensure_transition("slash", SLASH_TRANSITIONS, SlashStatus.PENDING, SlashStatus.EXECUTED)
        ensure_transition("slash", SLASH_TRANSITIONS, SlashStatus.EXECUTED, SlashStatus.REVERSED)
        with pytest.raises(InvalidStateTransition):
            ensure_transition("slash", SLASH_TRANSITIONS, SlashStatus.PENDING, SlashStatus.REVERSED)
        with pytest.raises(InvalidStateTransition):
            ensure_transition(
                "burn", BURN_TRANSITIONS, BurnProposalStatus.PENDING, BurnProposalStatus.EXECUTED
            )


class TestPolicies:
    def test_early_withdrawal_penalty(self):
        params = StakingParams()
        assert params.penalty_for(1_000 * TOKEN) == 100 * TOKEN

    def test_slash_percentages(self):
        penalties = SlashingPenalties()
        stake = 20_000 * TOKEN
        assert penalties.slashed_amount(stake, SlashSeverity.MINOR) == 2_000 * TOKEN
        assert penalties.slashed_amount(stake, SlashSeverity.MAJOR) == 5_000 * TOKEN
        assert penalties.slashed_amount(stake, SlashSeverity.CRITICAL) == 10_000 * TOKEN

    def test_unstake_result_final_amount(self):
        result = UnstakeResult(
            agent_id="a",
            amount=1_000 * TOKEN,
            penalty=100 * TOKEN,
            remaining_stake=0,
            new_tier=AgentTier.BASIC,
            forced=True,
        )
        assert result.final_amount == 900 * TOKEN


class TestUnits:
    def test_whole_tokens(self):
        assert tokens_to_base_units(1000) == 1_000 * TOKEN
        assert tokens_to_base_units("1000") == 1_000 * TOKEN

    def test_fractional_tokens(self):
        assert tokens_to_base_units("0.5") == 500_000_000
        assert tokens_to_base_units(Decimal("1.000000001")) == 1_000_000_001

    def test_extra_decimals_truncate(self):
        assert tokens_to_base_units("1.0000000019") == 1_000_000_001

    @pytest.mark.parametrize("bad", ["-1", "abc", "NaN", 1.5, True])
    def test_rejects_invalid(self, bad):
        with pytest.raises(ValidationError):
            tokens_to_base_units(bad)

    @pytest.mark.parametrize("huge", ["1e25", "100000000000000000000", "10000000000", Decimal("9.3e9")])
    def test_rejects_out_of_range(self, huge):
        with pytest.raises(ValidationError, match="out of range"):
            tokens_to_base_units(huge)

    def test_largest_representable_amount(self):
        assert tokens_to_base_units("9223372036.854775807") == MAX_BASE_UNITS

    def test_back_to_tokens(self):
        assert base_units_to_tokens(1_000 * TOKEN) == Decimal("1000")
        assert base_units_to_tokens(1_500_000_000) == Decimal("1.5")
        assert format_tokens(2 * TOKEN) == "2 TKOIN"
