"""
Unit tests for the trade journal.
"""

import json

from conftest import TARGET, TOKEN_X
from slipstream.config import NATIVE_SOL_MINT
from slipstream.trade_logger import TradeLogger


class TestTradeLogger:

    def test_appends_records(self, tmp_path):
        path = tmp_path / "history.json"
        journal = TradeLogger(str(path))

        journal.log_trade(
            trade_type="buy",
            input_mint=NATIVE_SOL_MINT,
            output_mint=TOKEN_X,
            amount_in=100_000_000,
            amount_out=42,
            signatures=["s1"],
            slippage_bps=300,
            attempts=1,
            target_wallet=TARGET,
            source_signature="src",
            delay_seconds=1.5
        )
        journal.log_failure(
            trade_type="sell",
            input_mint=TOKEN_X,
            output_mint=NATIVE_SOL_MINT,
            amount_in=42,
            error="0x1771",
            attempts=4
        )

        records = json.loads(path.read_text())
        assert [r["trade_type"] for r in records] == ["buy", "sell"]
        assert records[0]["source_signature"] == "src"
        assert records[1]["success"] is False
        assert records[1]["amount_out"] == 0

    def test_summary(self, tmp_path):
        journal = TradeLogger(str(tmp_path / "history.json"))
        for trade_type, attempts in (("buy", 1), ("sell", 3), ("emergency_sell", 1)):
            journal.log_trade(
                trade_type=trade_type,
                input_mint=TOKEN_X,
                output_mint=NATIVE_SOL_MINT,
                amount_in=1,
                amount_out=1,
                signatures=["s"],
                slippage_bps=300,
                attempts=attempts
            )
        journal.log_failure("buy", NATIVE_SOL_MINT, TOKEN_X, 1, "no route")

        summary = journal.get_summary()

        assert summary["total_trades"] == 4
        assert summary["buys"] == 1
        assert summary["sells"] == 2
        assert summary["emergency_sells"] == 1
        assert summary["failed"] == 1
        assert summary["avg_attempts"] == 5 / 3

    def test_empty_summary(self, tmp_path):
        summary = TradeLogger(str(tmp_path / "history.json")).get_summary()

        assert summary["total_trades"] == 0
        assert summary["avg_attempts"] == 0
