"""
Token Tracker - Poll-mode trade detection.

Walks the holdings we copied and compares the counterparty's current balance
of each mint with the baseline stored on the holding. A drop becomes a sell
intent sized on our own holding.
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional
import structlog

from .balance_oracle import BalanceOracle
from .config import Config, NATIVE_SOL_MINT
from .holdings import Holding, HoldingsStore
from .rpc import RPCError
from .swap_engine import SwapResult
from .tx_parser import TradeIntent

logger = structlog.get_logger(__name__)

SellCallback = Callable[[TradeIntent], Awaitable[Optional[SwapResult]]]

# Sleep when there is nothing to track
IDLE_SLEEP_SECONDS = 2.0


def poll_signature(mint: str) -> str:
    """Synthetic source id for intents that did not come from a transaction."""
    return f"poll:{mint}:{int(time.time() * 1000)}"


class TokenTracker:
    """Continuous reconciliation loop over tracked holdings."""

    def __init__(
        self,
        config: Config,
        holdings: HoldingsStore,
        oracle: BalanceOracle,
        on_sell: SellCallback,
        follower_address: str,
        target_wallet: Optional[str] = None
    ):
        self.config = config
        self.holdings = holdings
        self.oracle = oracle
        self.on_sell = on_sell
        self.follower_address = follower_address
        self.target_wallet = target_wallet or config.target_wallet
        self.running = False
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Run the poll loop until stopped."""
        self.running = True
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

        logger.info(
            "token_tracker_started",
            holdings=len(self.holdings),
            mint_delay_ms=self.config.poll_mint_delay_ms
        )

        while self.running:
            checked = await self.check_once()
            if checked == 0:
                await asyncio.sleep(IDLE_SLEEP_SECONDS)

    async def stop(self) -> None:
        self.running = False
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
        logger.info("token_tracker_stopped")

    async def check_once(self) -> int:
        """One pass over every holding. Returns how many were checked."""
        snapshot = self.holdings.all()
        for holding in snapshot:
            if not self.running:
                break
            try:
                await self.check_holding(holding)
            except Exception as e:
                logger.error("poll_check_failed", token=holding.mint[:8], error=str(e))
            await asyncio.sleep(self.config.poll_mint_delay_seconds)
        return len(snapshot)

    async def check_holding(self, holding: Holding) -> Optional[TradeIntent]:
        """
        Compare one holding with the counterparty and sell on a decrease.

        The emitted intent's ``amount_in`` is sized on our holding, not on the
        counterparty's delta. The baseline moves to the observed balance
        whatever the outcome of the sell.
        """
        mint = holding.mint
        try:
            current = await self.oracle.get_balance(mint, self.target_wallet)
        except RPCError as e:
            logger.warning("target_balance_failed", token=mint[:8], error=str(e))
            return None

        previous = holding.target_amount
        intent = None

        if current < previous:
            full_exit = current == 0 and previous > 0
            if full_exit:
                amount = holding.amount
                logger.info("target_full_exit", token=mint[:8], previous=previous)
            else:
                sell_pct = (previous - current) / previous * 100
                amount = holding.amount * sell_pct / 100
                logger.info(
                    "target_partial_sell",
                    token=mint[:8],
                    previous=previous,
                    current=current,
                    sell_pct=f"{sell_pct:.2f}"
                )

            intent = TradeIntent(
                token_in_mint=mint,
                token_out_mint=NATIVE_SOL_MINT,
                amount_in=amount,
                source_signature=poll_signature(mint),
                target_wallet=self.target_wallet,
                counterparty_pre_balance=previous,
                counterparty_post_balance=current,
                is_sell=True,
                full_exit=full_exit,
            )

            result = await self.on_sell(intent)
            if result is not None:
                if full_exit:
                    await self.holdings.remove_holding(mint)
                else:
                    await self.holdings.reduce_holding(mint, result.amount_in_ui)

        if mint in self.holdings:
            await self.holdings.update_target(mint, current)

        return intent

    async def _heartbeat_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            try:
                await self.heartbeat()
            except Exception as e:
                logger.error("heartbeat_failed", error=str(e))

    async def heartbeat(self) -> None:
        """Log our holdings next to the counterparty's balances."""
        holdings = self.holdings.all()
        logger.info("tracker_heartbeat", holdings=len(holdings))

        for holding in holdings:
            try:
                ours = await self.oracle.get_balance(holding.mint, self.follower_address)
                theirs = await self.oracle.get_balance(holding.mint, self.target_wallet)
            except RPCError as e:
                logger.warning("heartbeat_balance_failed", token=holding.mint[:8], error=str(e))
                continue

            logger.info(
                "holding_comparison",
                token=holding.mint[:8],
                tracked=holding.amount,
                ours=ours,
                theirs=theirs,
                baseline=holding.target_amount
            )
