"""
Tkoin settlement core — background orchestrator.

Process entrypoint that:
1. Configures structured logging
2. Builds the service graph and initializes the schema
3. Runs the periodic sweeps (order expiry, nonce cleanup, settlement
   notification retry) until interrupted

Sweeps are idempotent conditional updates, so several orchestrator
instances may run side by side.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import Any, Awaitable, Callable

import structlog

from tkoin_settlement.config import settings

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    """Configure structured logging."""
    logging.basicConfig(
        level=logging.getLevelName(settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stdout,
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            (
                structlog.dev.ConsoleRenderer()
                if settings.log_format != "json"
                else structlog.processors.JSONRenderer()
            ),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(settings.log_level)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class PeriodicSweep:
    """
    Runs ``job`` every ``interval_seconds``.

    Sync jobs run in a worker thread so a slow database never blocks the
    event loop. Any exception is logged and the loop keeps going.
    """

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        job: Callable[[], Any] | None = None,
        async_job: Callable[[], Awaitable[Any]] | None = None,
    ) -> None:
        if (job is None) == (async_job is None):
            raise ValueError("Exactly one of job or async_job is required")
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.async_job = async_job
        self.runs = 0
        self.failures = 0

    async def run_once(self) -> Any:
        log = structlog.get_logger()
        self.runs += 1
        try:
            if self.async_job is not None:
                result = await self.async_job()
            else:
                result = await asyncio.to_thread(self.job)
        except Exception as exc:
            self.failures += 1
            log.exception("tkoin.orchestrator.sweep_failed", sweep=self.name, error=str(exc))
            return None
        log.debug("tkoin.orchestrator.sweep_done", sweep=self.name, result=str(result))
        return result

    async def run_forever(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)


async def main() -> None:
    """Main orchestrator loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "tkoin.orchestrator.starting",
        order_sweep_interval=settings.order_sweep_interval_seconds,
        nonce_cleanup_interval=settings.nonce_cleanup_interval_seconds,
    )

    from tkoin_settlement.container import build_services

    services = build_services(settings)
    services.ledger.initialize()
    log.info("tkoin.orchestrator.ledger_ready")

    report = services.ledger.verify_integrity()
    if not report.is_valid:
        log.critical(
            "tkoin.orchestrator.integrity_failure",
            discrepancies=report.discrepancies,
        )

    from tkoin_settlement.api.app import state as api_state

    api_state.services = services

    sweeps = [
        PeriodicSweep(
            "order_expiry",
            settings.order_sweep_interval_seconds,
            job=services.order_expiry.run_once,
        ),
        PeriodicSweep(
            "nonce_cleanup",
            settings.nonce_cleanup_interval_seconds,
            job=services.nonce_cleanup.run_once,
        ),
        PeriodicSweep(
            "settlement_notifications",
            settings.order_sweep_interval_seconds,
            async_job=lambda: services.settlements.deliver_pending(services.emitter),
        ),
    ]
    log.info("tkoin.orchestrator.running", sweeps=[s.name for s in sweeps])

    try:
        await asyncio.gather(*(sweep.run_forever() for sweep in sweeps))
    finally:
        await services.emitter.close()
        log.info("tkoin.orchestrator.shutdown")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
