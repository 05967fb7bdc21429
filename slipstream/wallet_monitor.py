"""
Wallet Monitor - Push-mode trade detection for the target wallet.
Subscribes to log notifications mentioning the target over the RPC
websocket, fetches each transaction and hands parsed intents to a callback.
"""

import asyncio
import json
import time
import aiohttp
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import structlog

from .config import Config, BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS
from .rpc import RPCClient, RPCError
from .tx_parser import TradeIntent, TransactionParser

logger = structlog.get_logger(__name__)

IntentCallback = Callable[[TradeIntent], Awaitable[Any]]


class ConnectionExhaustedError(Exception):
    """The websocket could not be re-established within the allowed attempts."""


class WalletMonitor:
    """
    Monitors the target wallet through ``logsSubscribe``.

    Notifications closer together than the debounce interval are dropped,
    not queued. A failed transaction fetch drops the notification.
    """

    def __init__(
        self,
        config: Config,
        rpc_client: RPCClient,
        on_intent: IntentCallback,
        parser: Optional[TransactionParser] = None,
        target_wallet: Optional[str] = None
    ):
        self.config = config
        self.rpc = rpc_client
        self.on_intent = on_intent
        self.parser = parser or TransactionParser()
        self.target_wallet = target_wallet or config.target_wallet
        self.debounce_seconds = config.push_debounce_seconds

        self.session: Optional[aiohttp.ClientSession] = None
        self.running = False
        self.subscription_id: Optional[int] = None
        self._last_accepted: float = 0.0
        self._failures = 0
        self._tasks: Set[asyncio.Task] = set()

        # Counters for the stop summary
        self.notifications = 0
        self.dropped = 0

    async def start(self) -> None:
        """
        Run the subscription loop until stopped.

        Raises ConnectionExhaustedError after ``max_reconnect_attempts``
        consecutive connection failures.
        """
        self.session = aiohttp.ClientSession()
        self.running = True

        logger.info(
            "wallet_monitor_started",
            wallet=self.target_wallet[:8] + "...",
            debounce_ms=self.config.push_debounce_ms
        )

        try:
            while self.running:
                try:
                    await self._listen()
                    if not self.running:
                        break
                    logger.warning("websocket_closed", wallet=self.target_wallet[:8])
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.warning("websocket_error", error=str(e), failures=self._failures + 1)

                self._failures += 1
                if self._failures > self.config.max_reconnect_attempts:
                    logger.critical(
                        "websocket_reconnect_exhausted",
                        attempts=self.config.max_reconnect_attempts
                    )
                    raise ConnectionExhaustedError(
                        f"Gave up after {self.config.max_reconnect_attempts} reconnect attempts"
                    )

                delay = min(BACKOFF_BASE_SECONDS * (2 ** (self._failures - 1)), BACKOFF_MAX_SECONDS)
                logger.info("websocket_reconnecting", attempt=self._failures, delay_seconds=delay)
                await asyncio.sleep(delay)
        finally:
            if self.session and not self.session.closed:
                await self.session.close()

    async def stop(self) -> None:
        """Stop the wallet monitor."""
        self.running = False
        for task in list(self._tasks):
            task.cancel()
        if self.session and not self.session.closed:
            await self.session.close()
        logger.info(
            "wallet_monitor_stopped",
            notifications=self.notifications,
            dropped=self.dropped
        )

    def _subscribe_request(self) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self.target_wallet]},
                {"commitment": "confirmed"}
            ]
        }

    async def _listen(self) -> None:
        """One websocket session: subscribe, then dispatch until it closes."""
        async with self.session.ws_connect(self.config.ws_url, heartbeat=20) as ws:
            await ws.send_str(json.dumps(self._subscribe_request()))

            async for msg in ws:
                if not self.running:
                    return
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except ValueError:
                        logger.warning("websocket_bad_message", data=str(msg.data)[:200])
                        continue
                    self.handle_message(data)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break

    def handle_message(self, data: Dict[str, Any]) -> Optional[asyncio.Task]:
        """
        Handle one websocket message.

        Returns the processing task when a notification was accepted.
        """
        if "result" in data and data.get("id") == 1:
            self.subscription_id = data["result"]
            self._failures = 0
            logger.info("logs_subscribed", subscription=self.subscription_id)
            return None

        if data.get("method") != "logsNotification":
            return None

        value = data.get("params", {}).get("result", {}).get("value", {})
        signature = value.get("signature")
        if not signature:
            return None
        if value.get("err") is not None:
            logger.debug("failed_tx_ignored", signature=signature[:16])
            return None

        self.notifications += 1
        now = time.monotonic()
        if now - self._last_accepted < self.debounce_seconds:
            self.dropped += 1
            logger.debug("notification_debounced", signature=signature[:16])
            return None
        self._last_accepted = now

        task = asyncio.create_task(self.process_signature(signature))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process_signature(self, signature: str) -> Optional[TradeIntent]:
        """Fetch, parse and dispatch one transaction."""
        try:
            tx_data = await self.rpc.get_transaction(signature)
        except RPCError as e:
            logger.warning("transaction_fetch_failed", signature=signature[:16], error=str(e))
            return None

        if not tx_data:
            logger.warning("transaction_not_found", signature=signature[:16])
            return None

        intent = self.parser.parse_intent(tx_data, self.target_wallet, signature)
        if intent is None:
            return None

        try:
            await self.on_intent(intent)
        except Exception as e:
            logger.error("intent_callback_error", signature=signature[:16], error=str(e))
        return intent
