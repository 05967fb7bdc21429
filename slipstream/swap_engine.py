"""
Swap Engine - Executes a copy trade with guards, retries and fallbacks.

Every trade goes through the same pipeline: circuit breaker, ownership and
proportional resize for sells, dust and price-impact guards on the quote,
then up to ``max_retries + 1`` attempts with escalating slippage. A sell
that exhausts its retries gets exactly one emergency sell of the whole
position; if that fails too the position is queued for later retries.
"""

import asyncio
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
import structlog

from .balance_oracle import BalanceOracle, TokenBalance
from .config import Config, LAMPORTS_PER_SOL, NATIVE_SOL_MINT, QUOTE_MINTS
from .gateway import PriorityFees, Quote, SwapApiError, SwapGateway
from .holdings import HoldingsStore, PendingSellQueue
from .rpc import RPCError
from .trade_logger import TradeLogger

logger = structlog.get_logger(__name__)

# Jupiter's SlippageToleranceExceeded surfaces as custom error 0x1771 (6001)
SLIPPAGE_ERROR_PATTERN = re.compile(r"slippage|0x1771|\b6001\b", re.IGNORECASE)


class GuardRejection(Exception):
    """A pre-trade guard decided the swap must not happen."""

    def __init__(self, reason: str, **context: Any):
        self.reason = reason
        self.context = context
        super().__init__(reason)


@dataclass
class TradingSwitches:
    """Operator circuit breakers. Flipping one takes effect on the next swap."""
    buy_enabled: bool = True
    sell_enabled: bool = True

    def allows(self, is_sell: bool) -> bool:
        return self.sell_enabled if is_sell else self.buy_enabled


@dataclass
class SwapResult:
    """A confirmed swap. Amounts are in base units."""
    signatures: List[str]
    input_mint: str
    output_mint: str
    amount_in: int
    amount_out: int
    is_sell: bool
    slippage_bps: int
    attempts: int
    input_decimals: int = 9
    emergency: bool = False
    confirmed_at: float = field(default_factory=time.time)

    @property
    def signature(self) -> str:
        return self.signatures[-1] if self.signatures else ""

    @property
    def amount_in_ui(self) -> float:
        return self.amount_in / (10 ** self.input_decimals)


def slippage_for_attempt(attempt: int, base_bps: int, increment_bps: int, max_bps: int) -> int:
    """Slippage tolerance for a zero-based attempt, never above ``max_bps``."""
    return min(base_bps + attempt * increment_bps, max_bps)


def priority_fee_for_attempt(
    fees: PriorityFees,
    attempt: int,
    is_sell: bool,
    buy_fee_fraction: float
) -> int:
    """
    Priority fee in micro-lamports.

    Buys pay a fraction of the medium estimate. Sells pay medium on the first
    attempt and high on every retry.
    """
    if not is_sell:
        return int(fees.medium * buy_fee_fraction)
    return fees.medium if attempt == 0 else fees.high


def proportional_sell_amount(
    follower_raw: int,
    previous_target: float,
    current_target: float,
    min_sell_pct: float,
    noise_pct: float
) -> Optional[int]:
    """
    Mirror the counterparty's relative decrease on our own balance.

    Returns None when the decrease is below ``noise_pct`` (or is not a
    decrease at all). Otherwise the percentage is clamped to
    ``[min_sell_pct, 100]`` and applied to ``follower_raw``.
    """
    if previous_target <= 0:
        return None
    pct = (previous_target - current_target) / previous_target * 100
    if pct < noise_pct:
        return None
    pct = max(min_sell_pct, min(pct, 100.0))
    return int(follower_raw * pct / 100)


def is_slippage_error(error: BaseException) -> bool:
    return bool(SLIPPAGE_ERROR_PATTERN.search(str(error)))


class SwapEngine:
    """Turns a trade intent into at most one confirmed swap."""

    def __init__(
        self,
        config: Config,
        gateway: SwapGateway,
        oracle: BalanceOracle,
        holdings: HoldingsStore,
        pending_sells: PendingSellQueue,
        switches: Optional[TradingSwitches] = None,
        trade_logger: Optional[TradeLogger] = None,
        trade_lock: Optional[asyncio.Lock] = None
    ):
        self.config = config
        self.gateway = gateway
        self.oracle = oracle
        self.holdings = holdings
        self.pending_sells = pending_sells
        self.switches = switches or TradingSwitches(
            buy_enabled=config.enable_buy,
            sell_enabled=config.enable_sell
        )
        self.trade_logger = trade_logger
        # Held around every swap, scheduled emergency sells included
        self.trade_lock = trade_lock or asyncio.Lock()
        self._background_tasks: Set[asyncio.Task] = set()

    @property
    def follower(self) -> str:
        return self.gateway.wallet.address

    async def execute_swap(
        self,
        token_in_mint: str,
        token_out_mint: str,
        amount_in: int,
        target_wallet: Optional[str] = None,
        is_sell: Optional[bool] = None,
        previous_target_balance: Optional[float] = None,
        source_signature: Optional[str] = None,
        detected_at: Optional[float] = None
    ) -> Optional[SwapResult]:
        """
        Execute one copy trade.

        ``amount_in`` is in base units of ``token_in_mint``. For sells it is
        replaced by the proportional size when a counterparty baseline is
        known (``previous_target_balance`` or the holding's stored one), and
        otherwise capped at our balance.
        ``detected_at`` is the monotonic time the source trade was seen; it
        only feeds the journal.

        Returns the SwapResult on confirmation, None when a guard rejected the
        trade or every attempt failed.
        """
        if is_sell is None:
            is_sell = token_in_mint not in QUOTE_MINTS
        target_wallet = target_wallet or self.config.target_wallet
        side = "sell" if is_sell else "buy"

        try:
            if not self.switches.allows(is_sell):
                raise GuardRejection(f"{side}_disabled")
            if is_sell:
                amount_in = await self._size_sell(
                    token_in_mint, amount_in, target_wallet, previous_target_balance
                )
            if amount_in <= 0:
                raise GuardRejection("zero_amount")
        except GuardRejection as e:
            logger.info(
                "swap_skipped",
                side=side,
                reason=e.reason,
                input=token_in_mint[:8],
                output=token_out_mint[:8],
                **e.context
            )
            return None
        except RPCError as e:
            logger.error("swap_sizing_failed", side=side, input=token_in_mint[:8], error=str(e))
            return None

        follower_before: Optional[TokenBalance] = None
        if not is_sell:
            try:
                follower_before = await self.oracle.get_token_balance(
                    token_out_mint, self.follower, fresh=True
                )
            except RPCError as e:
                logger.warning("balance_snapshot_failed", token=token_out_mint[:8], error=str(e))

        logger.info(
            "swap_started",
            side=side,
            input=token_in_mint[:8],
            output=token_out_mint[:8],
            amount_in=amount_in
        )

        max_retries = self.config.max_retries
        last_error: Optional[Exception] = None
        for attempt in range(max_retries + 1):
            slippage_bps = slippage_for_attempt(
                attempt,
                self.config.base_slippage_bps,
                self.config.slippage_increment_bps,
                self.config.max_slippage_bps
            )
            try:
                if token_out_mint != NATIVE_SOL_MINT:
                    await self.gateway.ensure_token_account(token_out_mint)

                quote = await self.gateway.get_quote(
                    token_in_mint, token_out_mint, amount_in, slippage_bps
                )
                self._check_trade_value(token_in_mint, token_out_mint, amount_in, quote)
                self._check_price_impact(quote)

                fees = await self._get_priority_fees()
                fee = priority_fee_for_attempt(fees, attempt, is_sell, self.config.buy_fee_fraction)

                signatures = await self.gateway.execute(quote, fee)
            except GuardRejection as e:
                logger.warning(
                    "swap_aborted",
                    side=side,
                    reason=e.reason,
                    input=token_in_mint[:8],
                    output=token_out_mint[:8],
                    **e.context
                )
                return None
            except Exception as e:
                last_error = e
                slippage_hit = is_slippage_error(e)
                logger.warning(
                    "swap_attempt_failed",
                    side=side,
                    input=token_in_mint[:8],
                    attempt=attempt + 1,
                    max_attempts=max_retries + 1,
                    slippage_bps=slippage_bps,
                    slippage_error=slippage_hit,
                    error=str(e)
                )
                # Slippage failures retry immediately at the next tolerance
                if not slippage_hit and attempt < max_retries:
                    await asyncio.sleep(self.config.retry_backoff_seconds * (2 ** attempt))
                continue

            result = SwapResult(
                signatures=signatures,
                input_mint=token_in_mint,
                output_mint=token_out_mint,
                amount_in=amount_in,
                amount_out=quote.output_amount,
                is_sell=is_sell,
                slippage_bps=slippage_bps,
                attempts=attempt + 1,
            )
            try:
                await self._on_confirmed(
                    result, target_wallet, follower_before, source_signature, detected_at
                )
            except RPCError as e:
                # The swap is on chain either way, bookkeeping catches up on the next poll
                logger.error("post_swap_bookkeeping_failed", signature=result.signature, error=str(e))
            return result

        if is_sell:
            logger.error(
                "sell_failed_all_retries",
                token=token_in_mint[:8],
                attempts=max_retries + 1,
                error=str(last_error)
            )
            self._schedule_emergency_sell(token_in_mint, token_out_mint, target_wallet)
        else:
            logger.error(
                "buy_failed_all_retries",
                token=token_out_mint[:8],
                attempts=max_retries + 1,
                error=str(last_error)
            )
        if self.trade_logger:
            self.trade_logger.log_failure(
                trade_type=side,
                input_mint=token_in_mint,
                output_mint=token_out_mint,
                amount_in=amount_in,
                error=str(last_error),
                attempts=max_retries + 1,
                target_wallet=target_wallet,
                source_signature=source_signature
            )
        return None

    async def _size_sell(
        self,
        mint: str,
        amount_in: int,
        target_wallet: str,
        previous_target_balance: Optional[float]
    ) -> int:
        """Ownership check plus proportional resize. Raises GuardRejection."""
        follower_balance = await self.oracle.get_token_balance(mint, self.follower, fresh=True)
        if follower_balance.raw <= 0:
            raise GuardRejection("not_held", token=mint[:8])

        baseline = previous_target_balance
        if baseline is None:
            holding = self.holdings.get(mint)
            baseline = holding.target_amount if holding else None

        if not baseline or baseline <= 0:
            return min(amount_in, follower_balance.raw)

        current_target = await self.oracle.get_balance(mint, target_wallet, fresh=True)
        amount = proportional_sell_amount(
            follower_balance.raw,
            baseline,
            current_target,
            self.config.min_sell_pct,
            self.config.sell_noise_pct
        )
        if amount is None:
            raise GuardRejection(
                "below_sell_threshold",
                previous_target=baseline,
                current_target=current_target
            )

        logger.info(
            "sell_resized",
            token=mint[:8],
            previous_target=baseline,
            current_target=current_target,
            follower_balance=follower_balance.raw,
            amount=amount
        )
        return amount

    def _check_trade_value(
        self,
        token_in_mint: str,
        token_out_mint: str,
        amount_in: int,
        quote: Quote
    ) -> None:
        """Dust guard, only applied when one side of the trade is SOL."""
        if token_in_mint == NATIVE_SOL_MINT:
            value_sol = amount_in / LAMPORTS_PER_SOL
        elif token_out_mint == NATIVE_SOL_MINT:
            value_sol = quote.output_amount / LAMPORTS_PER_SOL
        else:
            return
        if value_sol < self.config.min_trade_sol:
            raise GuardRejection(
                "below_min_trade_value",
                value_sol=value_sol,
                min_sol=self.config.min_trade_sol
            )

    def _check_price_impact(self, quote: Quote) -> None:
        if quote.price_impact_pct > self.config.max_price_impact_pct:
            raise GuardRejection(
                "price_impact_too_high",
                price_impact_pct=quote.price_impact_pct,
                max_pct=self.config.max_price_impact_pct
            )

    async def _get_priority_fees(self) -> PriorityFees:
        try:
            return await self.gateway.get_priority_fee()
        except SwapApiError as e:
            default = self.config.default_priority_fee_micro_lamports
            logger.warning("priority_fee_fallback", fee=default, error=str(e))
            return PriorityFees(low=default, medium=default, high=default)

    async def _on_confirmed(
        self,
        result: SwapResult,
        target_wallet: str,
        follower_before: Optional[TokenBalance],
        source_signature: Optional[str] = None,
        detected_at: Optional[float] = None
    ) -> None:
        self.oracle.invalidate(result.input_mint, self.follower)
        self.oracle.invalidate(result.output_mint, self.follower)
        result.input_decimals = await self.oracle.get_decimals(result.input_mint)

        if not result.is_sell:
            after = await self.oracle.get_token_balance(result.output_mint, self.follower, fresh=True)
            received = after.raw - follower_before.raw if follower_before else 0
            if received <= 0:
                # RPC lagging behind the confirmation, trust the quote
                received = result.amount_out
            result.amount_out = received

            target_amount = await self.oracle.get_balance(
                result.output_mint, target_wallet, fresh=True
            )
            holding = await self.holdings.add_holding(
                result.output_mint,
                received,
                after.decimals,
                target_amount=target_amount
            )
            if holding.target_amount != target_amount:
                # Merged buy, the counterparty added to its position too
                await self.holdings.update_target(result.output_mint, target_amount)

        logger.info(
            "swap_confirmed",
            side="sell" if result.is_sell else "buy",
            input=result.input_mint[:8],
            output=result.output_mint[:8],
            amount_in=result.amount_in,
            amount_out=result.amount_out,
            attempts=result.attempts,
            slippage_bps=result.slippage_bps,
            signature=result.signature
        )

        if self.trade_logger:
            self.trade_logger.log_trade(
                trade_type="sell" if result.is_sell else "buy",
                input_mint=result.input_mint,
                output_mint=result.output_mint,
                amount_in=result.amount_in,
                amount_out=result.amount_out,
                signatures=result.signatures,
                slippage_bps=result.slippage_bps,
                attempts=result.attempts,
                target_wallet=target_wallet,
                source_signature=source_signature,
                delay_seconds=time.monotonic() - detected_at if detected_at is not None else None
            )

    def _schedule_emergency_sell(self, mint: str, token_out_mint: str, target_wallet: str) -> None:
        task = asyncio.create_task(self._locked_emergency_sell(mint, token_out_mint, target_wallet))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)

    async def _locked_emergency_sell(
        self,
        mint: str,
        token_out_mint: str,
        target_wallet: str
    ) -> Optional[SwapResult]:
        async with self.trade_lock:
            return await self.emergency_sell(mint, token_out_mint, target_wallet)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_task_failed", error=str(exc))

    async def wait_background(self) -> None:
        """Wait for scheduled emergency sells to finish."""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def emergency_sell(
        self,
        mint: str,
        token_out_mint: str = NATIVE_SOL_MINT,
        target_wallet: Optional[str] = None
    ) -> Optional[SwapResult]:
        """
        Sell our entire balance of ``mint`` once at emergency slippage.

        On success the holding is removed. On failure the position goes to the
        pending-sell queue. The caller holds ``trade_lock``.
        """
        target_wallet = target_wallet or self.config.target_wallet
        slippage_bps = self.config.emergency_slippage_bps
        logger.warning("emergency_sell_started", token=mint[:8], slippage_bps=slippage_bps)

        balance: Optional[TokenBalance] = None
        try:
            balance = await self.oracle.get_token_balance(mint, self.follower, fresh=True)
            if balance.raw <= 0:
                logger.warning("emergency_sell_nothing_held", token=mint[:8])
                await self.holdings.remove_holding(mint)
                await self.pending_sells.resolve(mint)
                return None

            quote = await self.gateway.get_quote(mint, token_out_mint, balance.raw, slippage_bps)
            fees = await self._get_priority_fees()
            signatures = await self.gateway.execute(quote, fees.high)
        except Exception as e:
            holding = self.holdings.get(mint)
            if balance is not None:
                amount = balance.amount
            else:
                amount = holding.amount if holding else 0.0
            logger.critical(
                "emergency_sell_failed",
                token=mint,
                amount=amount,
                error=str(e),
                message="Position queued for retry"
            )
            await self.pending_sells.enqueue(mint, amount, target_wallet)
            return None

        self.oracle.invalidate(mint, self.follower)
        await self.holdings.remove_holding(mint)
        await self.pending_sells.resolve(mint)

        result = SwapResult(
            signatures=signatures,
            input_mint=mint,
            output_mint=token_out_mint,
            amount_in=balance.raw,
            amount_out=quote.output_amount,
            is_sell=True,
            slippage_bps=slippage_bps,
            attempts=1,
            input_decimals=balance.decimals,
            emergency=True,
        )
        logger.info("emergency_sell_confirmed", token=mint[:8], signature=result.signature)

        if self.trade_logger:
            self.trade_logger.log_trade(
                trade_type="emergency_sell",
                input_mint=mint,
                output_mint=token_out_mint,
                amount_in=result.amount_in,
                amount_out=result.amount_out,
                signatures=signatures,
                slippage_bps=slippage_bps,
                attempts=1,
                target_wallet=target_wallet
            )
        return result

    def stats(self) -> Dict[str, Any]:
        return {
            "buy_enabled": self.switches.buy_enabled,
            "sell_enabled": self.switches.sell_enabled,
            "pending_sells": len(self.pending_sells),
            "background_tasks": len(self._background_tasks),
        }
