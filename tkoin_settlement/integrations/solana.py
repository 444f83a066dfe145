"""
Solana RPC reader — the on-chain balance oracle.

Staking reads an agent's available TKOIN before accepting a stake; burn
governance reads the treasury balance and circulating supply. The reader is
read-only and trusted: it never causes ledger side effects, and every
transport or RPC failure surfaces as ``ChainReaderError``.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Protocol

import httpx

from tkoin_settlement.errors import ChainReaderError

logger = logging.getLogger(__name__)


class ChainReader(Protocol):
    """What the core needs from the chain, in base units."""

    def get_available_balance(self, wallet_address: str) -> int: ...

    def get_token_supply(self) -> int: ...

    def get_token_account_balance(self, token_account: str) -> int: ...


class SolanaRpcReader:
    """
    Sync JSON-RPC client for the TKOIN mint.

    Uses httpx. Balances are summed across every token account the wallet
    owns for the mint.
    """

    def __init__(
        self,
        rpc_url: str,
        mint_address: str,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.mint_address = mint_address
        self._ids = itertools.count(1)
        self._client = httpx.Client(
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        if not self._client.is_closed:
            self._client.close()

    # ── Balances ───────────────────────────────────────────────

    def get_available_balance(self, wallet_address: str) -> int:
        result = self._call(
            "getTokenAccountsByOwner",
            [
                wallet_address,
                {"mint": self.mint_address},
                {"encoding": "jsonParsed"},
            ],
        )
        total = 0
        for account in result.get("value", []):
            try:
                token_amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
                total += int(token_amount["amount"])
            except (KeyError, TypeError, ValueError) as exc:
                raise ChainReaderError(
                    f"Malformed token account for wallet {wallet_address}"
                ) from exc
        return total

    def get_token_supply(self) -> int:
        result = self._call("getTokenSupply", [self.mint_address])
        return self._amount(result, "token supply")

    def get_token_account_balance(self, token_account: str) -> int:
        result = self._call("getTokenAccountBalance", [token_account])
        return self._amount(result, f"balance of {token_account}")

    # ── Internal ───────────────────────────────────────────────

    def _call(self, method: str, params: list[Any]) -> dict[str, Any]:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            resp = self._client.post(self.rpc_url, json=payload)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Solana RPC %s failed: %s", method, exc)
            raise ChainReaderError(f"Solana RPC {method} failed: {exc}") from exc

        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ChainReaderError(f"Solana RPC {method} returned an error: {message}")
        result = data.get("result")
        if not isinstance(result, dict):
            raise ChainReaderError(f"Solana RPC {method} returned no result")
        return result

    @staticmethod
    def _amount(result: dict[str, Any], what: str) -> int:
        try:
            return int(result["value"]["amount"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ChainReaderError(f"Malformed {what} response") from exc
