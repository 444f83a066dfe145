"""Shared fixtures: a throwaway SQLite ledger, a fake chain reader, wired services."""

from __future__ import annotations

import httpx
import pytest

from tkoin_settlement.config import TkoinSettings
from tkoin_settlement.container import build_services
from tkoin_settlement.db import create_db_engine, create_session_factory
from tkoin_settlement.errors import ChainReaderError
from tkoin_settlement.ledger.models import Base
from tkoin_settlement.webhooks.emitter import WebhookEmitter

TOKEN = 10**9


class FakeChainReader:
    """In-memory stand-in for the Solana reader."""

    def __init__(self) -> None:
        self.wallets: dict[str, int] = {}
        self.accounts: dict[str, int] = {}
        self.supply = 0
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ChainReaderError("RPC unavailable")

    def get_available_balance(self, wallet_address: str) -> int:
        self._check()
        return self.wallets.get(wallet_address, 0)

    def get_token_supply(self) -> int:
        self._check()
        return self.supply

    def get_token_account_balance(self, token_account: str) -> int:
        self._check()
        return self.accounts.get(token_account, 0)


async def _no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'tkoin.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def config():
    return TkoinSettings(_env_file=None)


@pytest.fixture
def services(session_factory, chain, config):
    emitter = WebhookEmitter(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, text="ok")),
        sleep=_no_sleep,
    )
    return build_services(config, session_factory=session_factory, chain_reader=chain, emitter=emitter)


@pytest.fixture
def make_agent(services):
    """Register an active agent holding ``tokens`` TKOIN."""

    def _make(agent_id: str = "agent-1", tokens: int = 10_000, wallet: str | None = None):
        return services.ledger.register_agent(
            agent_id,
            wallet_address=wallet or f"wallet-{agent_id}",
            tkoin_balance=tokens * TOKEN,
        )

    return _make
