"""
Balance Oracle - On-chain token balances with a short-lived cache.
Bounds RPC load when the poll loop and the swap engine ask for the same
(mint, owner) pair within a few seconds of each other.
"""

import time
from dataclasses import dataclass
from typing import Dict, Tuple
import structlog

from .config import NATIVE_SOL_MINT
from .rpc import RPCClient

logger = structlog.get_logger(__name__)

DEFAULT_DECIMALS = 9


@dataclass(frozen=True)
class TokenBalance:
    """Raw balance plus the mint's decimals."""
    raw: int
    decimals: int

    @property
    def amount(self) -> float:
        """Human-readable amount."""
        return self.raw / (10 ** self.decimals)


class BalanceOracle:
    """Queries token balances for (mint, owner) pairs, caching for ``ttl_seconds``."""

    def __init__(self, rpc_client: RPCClient, ttl_seconds: float = 3.0):
        self.rpc = rpc_client
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[Tuple[str, str], Tuple[TokenBalance, float]] = {}
        self._decimals: Dict[str, int] = {NATIVE_SOL_MINT: 9}

    async def get_decimals(self, mint: str) -> int:
        """Decimals of a mint. Never changes, so cached forever."""
        if mint in self._decimals:
            return self._decimals[mint]

        account = await self.rpc.get_account_info(mint)
        decimals = DEFAULT_DECIMALS
        if account:
            data = account.get("data")
            if isinstance(data, dict):
                decimals = data.get("parsed", {}).get("info", {}).get("decimals", DEFAULT_DECIMALS)
        else:
            logger.warning("mint_not_found", mint=mint[:8], assumed_decimals=DEFAULT_DECIMALS)

        self._decimals[mint] = decimals
        return decimals

    async def get_token_balance(self, mint: str, owner: str, fresh: bool = False) -> TokenBalance:
        """
        Balance of ``mint`` held by ``owner``.

        Native SOL is read from the account's lamports; SPL tokens are summed
        across every token account the owner has for the mint.
        """
        key = (mint, owner)
        now = time.monotonic()
        if not fresh and key in self._cache:
            balance, cached_at = self._cache[key]
            if now - cached_at < self.ttl_seconds:
                return balance

        if mint == NATIVE_SOL_MINT:
            lamports = await self.rpc.get_balance(owner)
            balance = TokenBalance(raw=int(lamports), decimals=9)
        else:
            accounts = await self.rpc.get_token_accounts_by_owner(owner, mint)
            raw = 0
            decimals = None
            for account in accounts:
                info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
                token_amount = info.get("tokenAmount", {})
                raw += int(token_amount.get("amount", 0))
                if decimals is None and "decimals" in token_amount:
                    decimals = int(token_amount["decimals"])
            if decimals is None:
                decimals = await self.get_decimals(mint)
            else:
                self._decimals.setdefault(mint, decimals)
            balance = TokenBalance(raw=raw, decimals=decimals)

        self._cache[key] = (balance, time.monotonic())
        return balance

    async def get_balance(self, mint: str, owner: str, fresh: bool = False) -> float:
        """Human-readable balance of ``mint`` held by ``owner``."""
        balance = await self.get_token_balance(mint, owner, fresh=fresh)
        return balance.amount

    def invalidate(self, mint: str, owner: str) -> None:
        """Drop a cached balance, e.g. after we traded the mint."""
        self._cache.pop((mint, owner), None)
