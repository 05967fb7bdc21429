"""
Unit tests for push-mode detection. The websocket and RPC are mocked.
"""

import aiohttp
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from conftest import TARGET, TOKEN_X
from slipstream.rpc import RPCError
from slipstream.wallet_monitor import ConnectionExhaustedError, WalletMonitor
from test_tx_parser import make_tx, token_balance


def notification(signature, err=None):
    return {
        "jsonrpc": "2.0",
        "method": "logsNotification",
        "params": {
            "subscription": 7,
            "result": {"value": {"signature": signature, "err": err, "logs": []}},
        },
    }


def make_monitor(config, tx=None, on_intent=None):
    rpc = MagicMock()
    rpc.get_transaction = AsyncMock(return_value=tx)
    return WalletMonitor(config, rpc, on_intent or AsyncMock())


@pytest.mark.asyncio
class TestHandleMessage:
    """Subscription bookkeeping and notification dispatch."""

    async def test_subscription_ack_resets_failures(self, config):
        monitor = make_monitor(config)
        monitor._failures = 2

        assert monitor.handle_message({"jsonrpc": "2.0", "id": 1, "result": 42}) is None
        assert monitor.subscription_id == 42
        assert monitor._failures == 0

    async def test_subscribe_request_mentions_target(self, config):
        request = make_monitor(config)._subscribe_request()

        assert request["method"] == "logsSubscribe"
        assert request["params"][0] == {"mentions": [TARGET]}
        assert request["params"][1]["commitment"] == "confirmed"

    async def test_notification_dispatches_intent(self, config):
        tx = make_tx(
            post_tokens=[token_balance(TOKEN_X, TARGET, 1_000_000, 6)],
            pre_sol=[5_000_000_000],
            post_sol=[3_999_995_000],
        )
        on_intent = AsyncMock()
        monitor = make_monitor(config, tx, on_intent)

        task = monitor.handle_message(notification("sig_a"))
        intent = await task

        monitor.rpc.get_transaction.assert_awaited_once_with("sig_a")
        on_intent.assert_awaited_once_with(intent)
        assert intent.source_signature == "sig_a"
        assert intent.token_out_mint == TOKEN_X

    async def test_burst_inside_debounce_is_dropped(self, config):
        monitor = make_monitor(config)

        first = monitor.handle_message(notification("sig_a"))
        second = monitor.handle_message(notification("sig_b"))
        await first

        assert second is None
        assert monitor.notifications == 2
        assert monitor.dropped == 1
        monitor.rpc.get_transaction.assert_awaited_once_with("sig_a")

    async def test_failed_transactions_are_ignored(self, config):
        monitor = make_monitor(config)

        assert monitor.handle_message(notification("sig_a", err={"Custom": 1})) is None
        assert monitor.notifications == 0

    async def test_fetch_failure_drops_notification(self, config):
        on_intent = AsyncMock()
        monitor = make_monitor(config, on_intent=on_intent)
        monitor.rpc.get_transaction = AsyncMock(side_effect=RPCError("timeout"))

        assert await monitor.process_signature("sig_a") is None
        on_intent.assert_not_awaited()

    async def test_callback_error_is_contained(self, config):
        tx = make_tx(
            post_tokens=[token_balance(TOKEN_X, TARGET, 1_000_000, 6)],
            post_sol=[3_999_995_000],
        )
        monitor = make_monitor(config, tx, AsyncMock(side_effect=RuntimeError("boom")))

        intent = await monitor.process_signature("sig_a")

        assert intent is not None


@pytest.mark.asyncio
class TestReconnect:
    """Reconnect loop and its attempt ceiling."""

    async def test_gives_up_after_max_attempts(self, config):
        monitor = make_monitor(config)
        monitor._listen = AsyncMock(side_effect=aiohttp.ClientError("refused"))

        with patch("slipstream.wallet_monitor.BACKOFF_BASE_SECONDS", 0.0):
            with pytest.raises(ConnectionExhaustedError):
                await monitor.start()

        assert monitor._listen.await_count == config.max_reconnect_attempts + 1
        assert monitor.session.closed

    async def test_stop_ends_loop(self, config):
        monitor = make_monitor(config)

        async def listen_once():
            await monitor.stop()

        monitor._listen = AsyncMock(side_effect=listen_once)

        await monitor.start()

        assert monitor._listen.await_count == 1
        assert not monitor.running
