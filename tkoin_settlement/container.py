"""Wires every service from settings; shared by the orchestrator and the API."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session, sessionmaker

from tkoin_settlement.config import TkoinSettings
from tkoin_settlement.db import create_db_engine, create_session_factory
from tkoin_settlement.governance.burn import BurnProposalService
from tkoin_settlement.governance.slashing import SlashingService
from tkoin_settlement.integrations.solana import ChainReader, SolanaRpcReader
from tkoin_settlement.ledger.audit import AuditSink
from tkoin_settlement.ledger.service import LedgerService
from tkoin_settlement.orders.expiry import OrderExpirySweep
from tkoin_settlement.orders.service import P2pOrderService
from tkoin_settlement.settlements.service import SettlementService
from tkoin_settlement.staking.service import StakingService
from tkoin_settlement.webhooks.emitter import WebhookEmitter
from tkoin_settlement.webhooks.nonces import NonceCleanupSweep, NonceStore
from tkoin_settlement.webhooks.platforms import PlatformRegistry
from tkoin_settlement.webhooks.receiver import InboundWebhookVerifier


@dataclass
class Services:
    session_factory: sessionmaker[Session]
    ledger: LedgerService
    audit: AuditSink
    chain_reader: ChainReader
    staking: StakingService
    slashing: SlashingService
    burn: BurnProposalService
    orders: P2pOrderService
    order_expiry: OrderExpirySweep
    platforms: PlatformRegistry
    nonces: NonceStore
    nonce_cleanup: NonceCleanupSweep
    verifier: InboundWebhookVerifier
    settlements: SettlementService
    emitter: WebhookEmitter


def build_services(
    config: TkoinSettings,
    session_factory: sessionmaker[Session] | None = None,
    chain_reader: ChainReader | None = None,
    emitter: WebhookEmitter | None = None,
) -> Services:
    """Build the service graph; tests pass their own session factory and fakes."""
    if session_factory is None:
        session_factory = create_session_factory(create_db_engine(config.database_url))
    if chain_reader is None:
        chain_reader = SolanaRpcReader(
            rpc_url=config.solana_rpc_url,
            mint_address=config.tkoin_mint_address,
            timeout=config.solana_rpc_timeout_seconds,
        )
    if emitter is None:
        emitter = WebhookEmitter(
            max_attempts=config.webhook_max_attempts,
            base_delay=config.webhook_retry_base_delay_seconds,
            max_delay=config.webhook_retry_max_delay_seconds,
            default_timeout=config.webhook_verification_timeout_seconds,
        )

    schedule = config.tier_schedule
    ledger = LedgerService(session_factory)
    audit = AuditSink(session_factory)
    settlements = SettlementService(
        session_factory,
        notification_timeout=config.webhook_settlement_timeout_seconds,
        max_notification_attempts=config.settlement_notification_max_attempts,
    )
    platforms = PlatformRegistry(session_factory)
    nonces = NonceStore(session_factory)

    return Services(
        session_factory=session_factory,
        ledger=ledger,
        audit=audit,
        chain_reader=chain_reader,
        staking=StakingService(
            ledger, audit, chain_reader,
            params=config.staking_params,
            schedule=schedule,
            decimals=config.token_decimals,
        ),
        slashing=SlashingService(
            ledger, audit, penalties=config.slashing_penalties, schedule=schedule
        ),
        burn=BurnProposalService(
            ledger, audit, chain_reader, default_limits=config.burn_limits
        ),
        orders=P2pOrderService(
            ledger, audit, settlements, order_ttl_minutes=config.order_ttl_minutes
        ),
        order_expiry=OrderExpirySweep(ledger, audit),
        platforms=platforms,
        nonces=nonces,
        nonce_cleanup=NonceCleanupSweep(nonces),
        verifier=InboundWebhookVerifier(
            platforms,
            nonces,
            freshness_window_seconds=config.webhook_freshness_window_seconds,
            nonce_retention_seconds=config.nonce_retention_seconds,
        ),
        settlements=settlements,
        emitter=emitter,
    )
