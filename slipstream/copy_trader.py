"""
Copy Trader - Top-level controller for copy trading.
Wires the push and poll detectors into the swap engine, serialises trades
and owns the follower's signing key.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional
import structlog

from .balance_oracle import BalanceOracle
from .config import Config, NATIVE_SOL_MINT, LAMPORTS_PER_SOL
from .gateway import SwapGateway
from .holdings import HoldingsStore, PendingSellQueue
from .rpc import RPCClient
from .swap_engine import SwapEngine, SwapResult, TradingSwitches
from .token_tracker import TokenTracker
from .trade_logger import TradeLogger
from .tx_parser import TradeIntent, TransactionParser
from .wallet import Wallet
from .wallet_monitor import WalletMonitor

logger = structlog.get_logger(__name__)

SEEN_SIGNATURES_MAX = 2000
SEEN_SIGNATURES_TTL_SECONDS = 3600


class SeenSignatures:
    """Bounded, expiring set of source signatures already acted on."""

    def __init__(self, max_size: int = SEEN_SIGNATURES_MAX, ttl_seconds: float = SEEN_SIGNATURES_TTL_SECONDS):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def _prune(self, now: float) -> None:
        while self._seen:
            signature, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl_seconds and len(self._seen) <= self.max_size:
                break
            self._seen.pop(signature)

    def check_and_add(self, signature: str) -> bool:
        """Record ``signature``. False when it was already seen."""
        now = time.monotonic()
        self._prune(now)
        if signature in self._seen:
            return False
        self._seen[signature] = now
        self._prune(now)
        return True

    def __contains__(self, signature: str) -> bool:
        self._prune(time.monotonic())
        return signature in self._seen

    def __len__(self) -> int:
        return len(self._seen)


@dataclass
class TradeStats:
    """Statistics for copy trading."""
    total_detected: int = 0
    total_duplicates: int = 0
    total_copied: int = 0
    total_not_copied: int = 0  # Guard rejections and exhausted retries
    total_sol_spent: float = 0.0
    total_sol_received: float = 0.0


class CopyTrader:
    """
    Copy Trading Bot - Watches the target wallet and copies its trades.
    """

    def __init__(
        self,
        config: Config,
        wallet: Wallet,
        rpc_client: RPCClient,
        gateway: Optional[SwapGateway] = None,
        oracle: Optional[BalanceOracle] = None,
        holdings: Optional[HoldingsStore] = None,
        pending_sells: Optional[PendingSellQueue] = None,
        trade_logger: Optional[TradeLogger] = None,
        engine: Optional[SwapEngine] = None
    ):
        self.config = config
        self.wallet = wallet
        self.rpc = rpc_client

        # Components
        self.gateway = gateway or SwapGateway(config, wallet, rpc_client)
        self.oracle = oracle or BalanceOracle(rpc_client, ttl_seconds=config.balance_cache_ttl_seconds)
        self.holdings = holdings or HoldingsStore(config.holdings_file)
        self.pending_sells = pending_sells or PendingSellQueue(
            config.pending_sells_file,
            max_attempts=config.max_pending_sell_attempts
        )
        self.trade_logger = trade_logger or TradeLogger(config.trade_history_file)
        # One swap in flight at a time, emergency sells included
        self._trade_lock = asyncio.Lock()
        self.engine = engine or SwapEngine(
            config,
            self.gateway,
            self.oracle,
            self.holdings,
            self.pending_sells,
            switches=TradingSwitches(
                buy_enabled=config.enable_buy,
                sell_enabled=config.enable_sell
            ),
            trade_logger=self.trade_logger,
            trade_lock=self._trade_lock
        )
        self.parser = TransactionParser()
        self.monitor: Optional[WalletMonitor] = None
        self.tracker: Optional[TokenTracker] = None

        # State
        self.stats = TradeStats()
        self.seen = SeenSignatures()
        self.running = False
        self._tasks: List[asyncio.Task] = []

    def set_buy_enabled(self, enabled: bool) -> None:
        """Circuit breaker for buys."""
        self.engine.switches.buy_enabled = enabled
        logger.warning("buy_switch_changed", enabled=enabled)

    def set_sell_enabled(self, enabled: bool) -> None:
        """Circuit breaker for sells."""
        self.engine.switches.sell_enabled = enabled
        logger.warning("sell_switch_changed", enabled=enabled)

    async def start(self) -> None:
        """
        Start the copy trader and block while the detectors run.

        ConnectionExhaustedError from the push detector propagates.
        """
        self.holdings.load()
        self.pending_sells.load()
        self.running = True

        logger.info(
            "copy_trader_started",
            follower=self.wallet.address,
            target=self.config.target_wallet,
            mode=self.config.detector_mode,
            holdings=len(self.holdings),
            pending_sells=len(self.pending_sells),
            buy_enabled=self.engine.switches.buy_enabled,
            sell_enabled=self.engine.switches.sell_enabled
        )

        detectors = []
        if self.config.push_enabled:
            self.monitor = WalletMonitor(
                self.config,
                self.rpc,
                on_intent=self.handle_intent,
                parser=self.parser
            )
            detectors.append(asyncio.create_task(self.monitor.start()))

        if self.config.poll_enabled:
            self.tracker = TokenTracker(
                self.config,
                self.holdings,
                self.oracle,
                on_sell=self.handle_poll_sell,
                follower_address=self.wallet.address
            )
            detectors.append(asyncio.create_task(self.tracker.start()))

        self._tasks = detectors + [asyncio.create_task(self._pending_sell_loop())]

        await asyncio.gather(*detectors)

    async def stop(self) -> None:
        """Stop the copy trader."""
        self.running = False

        if self.monitor:
            await self.monitor.stop()
        if self.tracker:
            await self.tracker.stop()
        for task in self._tasks:
            task.cancel()

        # Let running emergency sells finish
        await self.engine.wait_background()
        await self.gateway.close()

        logger.info(
            "copy_trader_stopped",
            stats=self._format_stats(),
            journal=self.trade_logger.get_summary(),
            engine=self.engine.stats()
        )

    async def handle_intent(self, intent: TradeIntent) -> Optional[SwapResult]:
        """Push-mode entry point: copy one counterparty swap."""
        if not self.seen.check_and_add(intent.source_signature):
            self.stats.total_duplicates += 1
            logger.info("duplicate_intent_ignored", signature=intent.source_signature[:16])
            return None

        self.stats.total_detected += 1
        try:
            if intent.is_sell:
                return await self._copy_sell(intent)
            return await self._copy_buy(intent)
        except Exception as e:
            # One failed trade never takes the process down
            self.stats.total_not_copied += 1
            logger.error(
                "copy_trade_error",
                signature=intent.source_signature[:16],
                token_in=intent.token_in_mint[:8],
                error=str(e)
            )
            return None

    async def handle_poll_sell(self, intent: TradeIntent) -> Optional[SwapResult]:
        """
        Poll-mode entry point. Holdings bookkeeping is left to the tracker.

        The baseline is re-read under the trade lock. A move the push path
        already copied is skipped, and a partly copied one is resized on
        what is left of it.
        """
        self.stats.total_detected += 1
        mint = intent.token_in_mint
        try:
            amount = await self._to_base_units(mint, intent.amount_in, intent.amount_in_raw)
            async with self._trade_lock:
                holding = self.holdings.get(mint)
                if holding is None or holding.target_amount <= intent.counterparty_post_balance:
                    self._skip_reconciled(intent)
                    return None
                result = await self._execute(intent, amount, None)
                if result is not None:
                    await self.holdings.update_target(mint, intent.counterparty_post_balance)
                return result
        except Exception as e:
            self.stats.total_not_copied += 1
            logger.error("poll_sell_error", token=mint[:8], error=str(e))
            return None

    async def _copy_sell(self, intent: TradeIntent) -> Optional[SwapResult]:
        mint = intent.token_in_mint
        amount = await self._to_base_units(mint, intent.amount_in, intent.amount_in_raw)
        async with self._trade_lock:
            holding = self.holdings.get(mint)
            if holding is not None and holding.target_amount <= intent.counterparty_post_balance:
                self._skip_reconciled(intent)
                return None

            result = await self._execute(intent, amount, intent.counterparty_pre_balance)

            # Move the baseline so the poll loop does not sell the same move again
            if result is not None and mint in self.holdings:
                remaining = await self.oracle.get_token_balance(mint, self.wallet.address, fresh=True)
                if remaining.raw == 0:
                    await self.holdings.remove_holding(mint)
                else:
                    await self.holdings.reduce_holding(mint, result.amount_in_ui)
                    await self.holdings.update_target(mint, intent.counterparty_post_balance)
            return result

    def _skip_reconciled(self, intent: TradeIntent) -> None:
        """The counterparty's move is already reflected in our baseline."""
        self.stats.total_duplicates += 1
        holding = self.holdings.get(intent.token_in_mint)
        logger.info(
            "sell_already_copied",
            source=intent.source_signature[:16],
            token=intent.token_in_mint[:8],
            baseline=holding.target_amount if holding else None,
            their_balance=intent.counterparty_post_balance
        )

    async def _copy_buy(self, intent: TradeIntent) -> Optional[SwapResult]:
        amount = await self.size_buy(intent)
        if amount <= 0:
            self.stats.total_not_copied += 1
            logger.info(
                "buy_skipped",
                reason="no_size",
                token=intent.token_out_mint[:8],
                their_amount=intent.amount_in
            )
            return None
        async with self._trade_lock:
            return await self._execute(intent, amount, None)

    async def size_buy(self, intent: TradeIntent) -> int:
        """
        Follower buy size in base units of ``token_in``.

        The counterparty's spend as a share of its pre-trade balance, applied
        to our own balance. For SOL the fee reserve is held back and the size
        is capped at ``max_buy_sol``.
        """
        mint = intent.token_in_mint
        if intent.counterparty_pre_balance <= 0:
            return 0
        fraction = min(1.0, intent.amount_in / intent.counterparty_pre_balance)

        balance = await self.oracle.get_token_balance(mint, self.wallet.address, fresh=True)
        available = balance.amount
        if mint == NATIVE_SOL_MINT:
            available -= self.config.fee_reserve_sol

        size = available * fraction
        if mint == NATIVE_SOL_MINT:
            size = min(size, self.config.max_buy_sol)
        if size <= 0:
            return 0

        logger.debug(
            "buy_sized",
            token=intent.token_out_mint[:8],
            fraction=f"{fraction:.4f}",
            available=available,
            size=size
        )
        return int(size * (10 ** balance.decimals))

    async def _to_base_units(self, mint: str, amount: float, raw: Optional[int] = None) -> int:
        if raw is not None:
            return raw
        decimals = await self.oracle.get_decimals(mint)
        return round(amount * (10 ** decimals))

    async def _execute(
        self,
        intent: TradeIntent,
        amount: int,
        previous_target_balance: Optional[float]
    ) -> Optional[SwapResult]:
        """Run one swap. The caller holds the trade lock."""
        started = time.monotonic()
        result = await self.engine.execute_swap(
            intent.token_in_mint,
            intent.token_out_mint,
            amount,
            target_wallet=intent.target_wallet,
            is_sell=intent.is_sell,
            previous_target_balance=previous_target_balance,
            source_signature=intent.source_signature,
            detected_at=started
        )

        if result is None:
            self.stats.total_not_copied += 1
            return None

        self.stats.total_copied += 1
        if result.input_mint == NATIVE_SOL_MINT:
            self.stats.total_sol_spent += result.amount_in / LAMPORTS_PER_SOL
        if result.output_mint == NATIVE_SOL_MINT:
            self.stats.total_sol_received += result.amount_out / LAMPORTS_PER_SOL

        logger.info(
            "trade_copied",
            source=intent.source_signature[:16],
            side="sell" if result.is_sell else "buy",
            signature=result.signature,
            elapsed=f"{time.monotonic() - started:.1f}s"
        )
        return result

    async def retry_pending_sells(self) -> int:
        """Retry queued sells through the emergency path. Returns how many cleared."""
        if not self.engine.switches.sell_enabled:
            return 0

        cleared = 0
        for entry in self.pending_sells.due():
            await self.pending_sells.record_attempt(entry.mint)
            logger.info(
                "pending_sell_retry",
                token=entry.mint[:8],
                attempt=entry.attempts,
                amount=entry.amount
            )
            async with self._trade_lock:
                result = await self.engine.emergency_sell(
                    entry.mint,
                    target_wallet=entry.target_wallet
                )
            if result is not None:
                cleared += 1
        return cleared

    async def _pending_sell_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.pending_sell_interval_seconds)
            try:
                await self.retry_pending_sells()
            except Exception as e:
                logger.error("pending_sell_loop_error", error=str(e))

    def _format_stats(self) -> Dict:
        """Format stats for logging."""
        stats = asdict(self.stats)
        stats["total_sol_spent"] = f"{self.stats.total_sol_spent:.4f}"
        stats["total_sol_received"] = f"{self.stats.total_sol_received:.4f}"
        return stats

    def get_stats(self) -> TradeStats:
        """Get current statistics."""
        return self.stats
