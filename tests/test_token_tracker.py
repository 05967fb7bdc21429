"""
Unit tests for poll-mode detection.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock

from conftest import FOLLOWER, TARGET, TOKEN_X, FakeOracle, make_config
from slipstream.config import NATIVE_SOL_MINT
from slipstream.holdings import HoldingsStore
from slipstream.swap_engine import SwapResult
from slipstream.token_tracker import TokenTracker

TOKEN_Y = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def sold(amount: int, decimals: int = 0) -> SwapResult:
    return SwapResult(
        signatures=["sell_sig"],
        input_mint=TOKEN_X,
        output_mint=NATIVE_SOL_MINT,
        amount_in=amount,
        amount_out=1_000_000,
        is_sell=True,
        slippage_bps=300,
        attempts=1,
        input_decimals=decimals,
    )


async def make_tracker(config, oracle, on_sell, amount=1_000, target_amount=1_000.0):
    holdings = HoldingsStore(config.holdings_file)
    await holdings.add_holding(TOKEN_X, amount, 0, target_amount=target_amount)
    tracker = TokenTracker(config, holdings, oracle, on_sell, follower_address=FOLLOWER)
    return tracker, holdings


@pytest.mark.asyncio
class TestTokenTracker:
    """Counterparty balance reconciliation."""

    async def test_full_exit_sells_everything_and_removes(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 0, decimals=0)
        on_sell = AsyncMock(return_value=sold(1_000))
        tracker, holdings = await make_tracker(config, oracle, on_sell)

        intent = await tracker.check_holding(holdings.get(TOKEN_X))

        assert intent.full_exit
        assert intent.amount_in == 1_000
        assert intent.token_out_mint == NATIVE_SOL_MINT
        assert intent.source_signature.startswith(f"poll:{TOKEN_X}:")
        on_sell.assert_awaited_once()
        assert holdings.get(TOKEN_X) is None

    async def test_partial_sell_reduces_by_sold_amount(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 600, decimals=0)
        on_sell = AsyncMock(return_value=sold(400))
        tracker, holdings = await make_tracker(config, oracle, on_sell)

        intent = await tracker.check_holding(holdings.get(TOKEN_X))

        assert not intent.full_exit
        assert intent.amount_in == pytest.approx(400)
        assert intent.counterparty_pre_balance == 1_000
        holding = holdings.get(TOKEN_X)
        assert holding.amount == 600
        assert holding.target_amount == 600

    async def test_failed_full_sell_keeps_holding(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 0, decimals=0)
        tracker, holdings = await make_tracker(config, oracle, AsyncMock(return_value=None))

        await tracker.check_holding(holdings.get(TOKEN_X))

        holding = holdings.get(TOKEN_X)
        assert holding.amount == 1_000
        assert holding.target_amount == 0

    async def test_increase_moves_baseline_without_selling(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 1_500, decimals=0)
        on_sell = AsyncMock()
        tracker, holdings = await make_tracker(config, oracle, on_sell)

        intent = await tracker.check_holding(holdings.get(TOKEN_X))

        assert intent is None
        on_sell.assert_not_awaited()
        assert holdings.get(TOKEN_X).target_amount == 1_500

    async def test_unchanged_balance_is_ignored(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 1_000, decimals=0)
        on_sell = AsyncMock()
        tracker, holdings = await make_tracker(config, oracle, on_sell)

        assert await tracker.check_holding(holdings.get(TOKEN_X)) is None
        on_sell.assert_not_awaited()

    async def test_check_once_walks_all_holdings(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 1_000, decimals=0)
        tracker, holdings = await make_tracker(config, oracle, AsyncMock())
        tracker.running = True

        assert await tracker.check_once() == 1

    async def test_heartbeat_reads_both_sides(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 1_000, decimals=0)
        oracle.set(TOKEN_X, FOLLOWER, 900, decimals=0)
        tracker, _ = await make_tracker(config, oracle, AsyncMock())

        await tracker.heartbeat()

        assert oracle.calls == 2

    async def test_check_once_outlives_balance_timeout(self, config):
        class FlakyOracle(FakeOracle):
            async def get_balance(self, mint, owner, fresh=False):
                if mint == TOKEN_X:
                    raise asyncio.TimeoutError()
                return await super().get_balance(mint, owner, fresh)

        oracle = FlakyOracle()
        oracle.set(TOKEN_Y, TARGET, 0, decimals=0)
        on_sell = AsyncMock(return_value=sold(500))
        tracker, holdings = await make_tracker(config, oracle, on_sell)
        await holdings.add_holding(TOKEN_Y, 500, 0, target_amount=500.0)
        tracker.running = True

        assert await tracker.check_once() == 2

        on_sell.assert_awaited_once()
        assert on_sell.call_args.args[0].token_in_mint == TOKEN_Y
        assert holdings.get(TOKEN_X).target_amount == 1_000

    async def test_check_once_outlives_sell_callback_error(self, config):
        oracle = FakeOracle()
        oracle.set(TOKEN_X, TARGET, 0, decimals=0)
        tracker, holdings = await make_tracker(
            config, oracle, AsyncMock(side_effect=RuntimeError("boom"))
        )
        tracker.running = True

        assert await tracker.check_once() == 1
        assert holdings.get(TOKEN_X).amount == 1_000

    async def test_heartbeat_loop_outlives_errors(self, tmp_path):
        config = make_config(tmp_path, heartbeat_interval_seconds=0.0)
        tracker, _ = await make_tracker(config, FakeOracle(), AsyncMock())
        tracker.heartbeat = AsyncMock(side_effect=RuntimeError("boom"))
        tracker.running = True

        task = asyncio.create_task(tracker._heartbeat_loop())
        for _ in range(10):
            await asyncio.sleep(0)
        tracker.running = False
        await asyncio.wait_for(task, 1)

        assert tracker.heartbeat.await_count >= 2
