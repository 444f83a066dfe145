"""Tests for the orchestrator's periodic sweeps."""

from __future__ import annotations

import asyncio

import pytest

from tkoin_settlement.orchestrator import PeriodicSweep


class TestPeriodicSweep:
    def test_sync_job_result(self):
        sweep = PeriodicSweep("count", 60, job=lambda: 3)
        assert asyncio.run(sweep.run_once()) == 3
        assert (sweep.runs, sweep.failures) == (1, 0)

    def test_async_job_result(self):
        async def job():
            return "done"

        sweep = PeriodicSweep("async", 60, async_job=job)
        assert asyncio.run(sweep.run_once()) == "done"

    def test_failure_is_counted_and_swallowed(self):
        def job():
            raise RuntimeError("database unavailable")

        sweep = PeriodicSweep("broken", 60, job=job)
        assert asyncio.run(sweep.run_once()) is None
        assert asyncio.run(sweep.run_once()) is None
        assert (sweep.runs, sweep.failures) == (2, 2)

    def test_requires_exactly_one_job(self):
        with pytest.raises(ValueError):
            PeriodicSweep("none", 60)

        async def job():
            return None

        with pytest.raises(ValueError):
            PeriodicSweep("both", 60, job=lambda: None, async_job=job)

    def test_runs_real_expiry_sweep(self, services):
        sweep = PeriodicSweep("order_expiry", 60, job=services.order_expiry.run_once)
        result = asyncio.run(sweep.run_once())
        assert result.examined == 0
        assert sweep.failures == 0
