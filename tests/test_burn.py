"""
Tests for burn governance.

Validates:
- Burn calculation against every safety bound
- Proposals outside limits are rejected and never persisted
- Approve / reject / execute lifecycle with conditional transitions
- Cooldown after an executed burn, config updates and stats
- First use of the config row is safe under concurrent callers
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tkoin_settlement.domain.schema import BurnProposalStatus
from tkoin_settlement.errors import (
    InvalidStateTransition,
    NotFoundError,
    SafetyLimitViolation,
    ValidationError,
)
from tkoin_settlement.ledger.models import BurnConfig

TOKEN = 10**9
TREASURY = "treasury-wallet"


class TestBurnGovernance:
    @pytest.fixture(autouse=True)
    def _setup(self, services, chain):
        self.services = services
        self.burn = services.burn
        self.chain = chain
        chain.wallets[TREASURY] = 1_000_000 * TOKEN  # 1% → 10,000 TKOIN
        chain.supply = 100_000_000 * TOKEN
        self.burn.update_config({"enabled": True}, updated_by="admin-1")

    def test_defaults(self):
        config = self.burn.get_config()
        assert config.enabled is True
        assert config.burn_rate_percent == Decimal("1.00")
        assert config.min_burn_amount == 1 * TOKEN
        assert config.max_burn_amount == 100_000 * TOKEN
        assert config.cooldown_hours == 24

    def test_calculation_within_limits(self):
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert calc.within_limits, calc.reasons
        assert calc.proposed_amount == 10_000 * TOKEN
        assert calc.treasury_balance == 1_000_000 * TOKEN
        assert calc.circulating_supply == 100_000_000 * TOKEN

    def test_disabled(self):
        self.burn.update_config({"enabled": False}, updated_by="admin-1")
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert not calc.within_limits
        assert "Burn service is disabled" in calc.reasons

    def test_above_maximum_never_persisted(self):
        self.chain.wallets[TREASURY] = 20_000_000 * TOKEN  # 1% → 200,000 TKOIN
        with pytest.raises(SafetyLimitViolation) as exc_info:
            self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        assert any("exceeds maximum" in r for r in exc_info.value.reasons)
        assert self.burn.get_proposals() == []

    def test_below_minimum(self):
        self.chain.wallets[TREASURY] = 50 * TOKEN  # 1% → 0.5 TKOIN
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert not calc.within_limits
        assert any("below minimum" in r for r in calc.reasons)

    def test_supply_limit(self):
        self.chain.supply = 100_000 * TOKEN  # 2% → 2,000 TKOIN
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert any("circulating supply" in r for r in calc.reasons)

    def test_treasury_limit(self):
        self.burn.update_config({"burn_rate_percent": Decimal("6.00")}, updated_by="admin-1")
        self.chain.wallets[TREASURY] = 100_000 * TOKEN
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert any("of treasury" in r for r in calc.reasons)

    def test_reader_failure(self):
        self.chain.fail = True
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert not calc.within_limits
        assert any("Unable to read" in r for r in calc.reasons)

    def test_proposal_lifecycle(self):
        proposal = self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        assert proposal.status == BurnProposalStatus.PENDING.value
        assert proposal.proposed_amount == 10_000 * TOKEN

        approved = self.burn.approve_proposal(proposal.id, approved_by="admin-2")
        assert approved.status == BurnProposalStatus.APPROVED.value
        assert approved.approved_by == "admin-2"

        executed = self.burn.mark_executed(proposal.id, "admin-2", transaction_signature="sig-1")
        assert executed.status == BurnProposalStatus.EXECUTED.value
        assert executed.burned_amount == 10_000 * TOKEN

        events = [e.event_type for e in self.services.audit.entries_for("burn_proposal", proposal.id)]
        assert events == ["burn.proposed", "burn.approved", "burn.executed"]

    def test_cannot_execute_pending(self):
        proposal = self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        with pytest.raises(InvalidStateTransition):
            self.burn.mark_executed(proposal.id, "admin-2")

    def test_reject(self):
        proposal = self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        with pytest.raises(ValidationError):
            self.burn.reject_proposal(proposal.id, "admin-2", "")
        rejected = self.burn.reject_proposal(proposal.id, "admin-2", "Market conditions")
        assert rejected.status == BurnProposalStatus.REJECTED.value
        with pytest.raises(InvalidStateTransition):
            self.burn.approve_proposal(proposal.id, approved_by="admin-2")

    def test_double_approve(self):
        proposal = self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        self.burn.approve_proposal(proposal.id, approved_by="admin-2")
        with pytest.raises(InvalidStateTransition):
            self.burn.approve_proposal(proposal.id, approved_by="admin-3")

    def test_cooldown_after_execution(self):
        proposal = self.burn.create_proposal("admin-1", "Quarterly burn", TREASURY)
        self.burn.approve_proposal(proposal.id, approved_by="admin-2")
        self.burn.mark_executed(proposal.id, "admin-2")
        calc = self.burn.calculate_proposed_burn(TREASURY)
        assert not calc.within_limits
        assert calc.next_allowed_at is not None
        with pytest.raises(SafetyLimitViolation):
            self.burn.create_proposal("admin-1", "Again", TREASURY)

    def test_stats(self):
        first = self.burn.create_proposal("admin-1", "Burn one", TREASURY)
        self.burn.reject_proposal(first.id, "admin-2", "No")
        second = self.burn.create_proposal("admin-1", "Burn two", TREASURY)
        self.burn.approve_proposal(second.id, approved_by="admin-2")
        self.burn.mark_executed(second.id, "admin-2", burned_amount=9_000 * TOKEN)

        stats = self.burn.get_burn_stats()
        assert stats.total_burned == 9_000 * TOKEN
        assert stats.executed_count == 1
        assert stats.rejected_count == 1
        assert stats.last_burn_at is not None
        assert len(self.burn.get_proposals(status="executed")) == 1

    def test_update_config_validation(self):
        with pytest.raises(ValidationError):
            self.burn.update_config({"unknown": 1}, updated_by="admin-1")
        with pytest.raises(ValidationError):
            self.burn.update_config({"burn_rate_percent": Decimal("150")}, updated_by="admin-1")

    def test_unknown_proposal(self):
        with pytest.raises(NotFoundError):
            self.burn.approve_proposal("missing", approved_by="admin-2")


class TestBurnConfigSeeding:
    @pytest.fixture(autouse=True)
    def _setup(self, services):
        self.burn = services.burn

    def test_seeding_twice_keeps_one_row(self):
        self.burn.get_config()
        self.burn._seed_config()
        with self.burn.SessionLocal() as session:
            assert session.execute(select(func.count(BurnConfig.id))).scalar_one() == 1

    def test_concurrent_first_reads_both_succeed(self):
        barrier = threading.Barrier(2)

        def first_read(_):
            barrier.wait()
            return self.burn.get_config()

        with ThreadPoolExecutor(max_workers=2) as pool:
            configs = list(pool.map(first_read, range(2)))

        assert configs[0] == configs[1]
        assert configs[0].enabled is False
