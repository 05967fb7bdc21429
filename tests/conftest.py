"""
Shared fixtures: a fully populated Config and in-memory test doubles for
balances and the swap gateway.
"""

from typing import Dict, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from slipstream.balance_oracle import TokenBalance
from slipstream.config import Config
from slipstream.gateway import PriorityFees, Quote

FOLLOWER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
TARGET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
TOKEN_X = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


def make_config(tmp_path=None, **overrides) -> Config:
    """Config with test defaults; state files live under ``tmp_path``."""
    base = str(tmp_path) + "/" if tmp_path is not None else ""
    values = dict(
        rpc_url="https://rpc.test",
        ws_url="wss://rpc.test",
        network="mainnet-beta",
        rpc_max_requests_per_second=100.0,
        wallet_private_key="",
        target_wallet=TARGET,
        jupiter_quote_api="https://jup.test/quote",
        jupiter_swap_api="https://jup.test/swap",
        priority_fee_url="https://rpc.test",
        enable_buy=True,
        enable_sell=True,
        base_slippage_bps=300,
        slippage_increment_bps=200,
        max_slippage_bps=1500,
        emergency_slippage_bps=3000,
        max_retries=3,
        retry_backoff_seconds=0.0,
        max_price_impact_pct=100.0,
        min_trade_sol=0.001,
        min_sell_pct=5.0,
        sell_noise_pct=0.5,
        max_buy_sol=0.5,
        fee_reserve_sol=0.05,
        buy_fee_fraction=0.5,
        default_priority_fee_micro_lamports=50_000,
        confirm_commitment="confirmed",
        confirm_timeout_seconds=1.0,
        detector_mode="both",
        push_debounce_ms=500,
        poll_mint_delay_ms=0,
        balance_cache_ttl_ms=3000,
        heartbeat_interval_seconds=30.0,
        max_reconnect_attempts=3,
        holdings_file=base + "holdings.json",
        pending_sells_file=base + "pending_sells.json",
        trade_history_file=base + "trade_history.json",
        max_pending_sell_attempts=5,
        pending_sell_interval_seconds=60.0,
        log_level="DEBUG",
    )
    values.update(overrides)
    return Config(**values)


class FakeOracle:
    """In-memory balance oracle keyed by (mint, owner), base units."""

    def __init__(self):
        self.balances: Dict[Tuple[str, str], TokenBalance] = {}
        self.decimals: Dict[str, int] = {}
        self.calls = 0

    def set(self, mint: str, owner: str, raw: int, decimals: int = 6) -> None:
        self.balances[(mint, owner)] = TokenBalance(raw=raw, decimals=decimals)
        self.decimals[mint] = decimals

    async def get_decimals(self, mint: str) -> int:
        self.calls += 1
        return self.decimals.get(mint, 9)

    async def get_token_balance(self, mint: str, owner: str, fresh: bool = False) -> TokenBalance:
        self.calls += 1
        return self.balances.get((mint, owner), TokenBalance(raw=0, decimals=self.decimals.get(mint, 9)))

    async def get_balance(self, mint: str, owner: str, fresh: bool = False) -> float:
        balance = await self.get_token_balance(mint, owner, fresh)
        return balance.amount

    def invalidate(self, mint: str, owner: str) -> None:
        pass


def make_quote(input_mint: str, output_mint: str, in_amount: int, out_amount: int,
               price_impact_pct: float = 0.1, slippage_bps: int = 300) -> Quote:
    raw = {
        "inputMint": input_mint,
        "outputMint": output_mint,
        "inAmount": str(in_amount),
        "outAmount": str(out_amount),
        "priceImpactPct": str(price_impact_pct),
        "slippageBps": slippage_bps,
    }
    return Quote.from_response(raw, slippage_bps)


def make_gateway(out_amount: int = 1_000_000, price_impact_pct: float = 0.1) -> MagicMock:
    """Gateway double whose quotes echo the request."""
    gateway = MagicMock()
    gateway.wallet.address = FOLLOWER

    async def get_quote(input_mint, output_mint, amount, slippage_bps):
        return make_quote(input_mint, output_mint, amount, out_amount, price_impact_pct, slippage_bps)

    gateway.get_quote = AsyncMock(side_effect=get_quote)
    gateway.get_priority_fee = AsyncMock(return_value=PriorityFees(low=10, medium=100, high=1000))
    gateway.ensure_token_account = AsyncMock(return_value=None)
    gateway.execute = AsyncMock(return_value=["sig_ok"])
    gateway.close = AsyncMock()
    return gateway


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def oracle():
    return FakeOracle()
