"""
Replay protection for inbound webhooks.

A nonce is claimed by a plain INSERT against a unique column; the database
decides the race, so two concurrent deliveries of the same nonce can never
both succeed. Expired nonces are purged by a periodic sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.domain.clock import utcnow
from tkoin_settlement.domain.schema import SweepResult
from tkoin_settlement.errors import ReplayDetected
from tkoin_settlement.ledger.models import WebhookNonce

logger = logging.getLogger(__name__)


class NonceStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.SessionLocal = session_factory

    def claim(
        self,
        nonce: str,
        platform_id: str,
        request_timestamp: datetime,
        expires_at: datetime,
    ) -> None:
        """
        Record ``nonce`` as used.

        Raises:
            ReplayDetected: The nonce was already claimed.
        """
        try:
            with self.SessionLocal.begin() as session:
                session.add(WebhookNonce(
                    nonce=nonce,
                    platform_id=platform_id,
                    request_timestamp=request_timestamp,
                    expires_at=expires_at,
                ))
        except IntegrityError as exc:
            raise ReplayDetected(
                "Nonce already used (replay detected)", nonce=nonce, platform_id=platform_id
            ) from exc

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.SessionLocal.begin() as session:
            result = session.execute(
                delete(WebhookNonce)
                .where(WebhookNonce.expires_at < now)
                .execution_options(synchronize_session=False)
            )
        if result.rowcount:
            logger.info("Purged %d expired webhook nonces", result.rowcount)
        return result.rowcount


class NonceCleanupSweep:
    """Periodic job: delete nonces past their retention."""

    def __init__(self, store: NonceStore) -> None:
        self.store = store

    def run_once(self, now: datetime | None = None) -> SweepResult:
        try:
            purged = self.store.purge_expired(now)
        except Exception:
            logger.exception("Nonce cleanup failed")
            return SweepResult(failed=1)
        return SweepResult(examined=purged, processed=purged)
