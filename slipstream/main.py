"""
Main entry point for Slipstream.
Run with: python -m slipstream.main
"""

import asyncio
import logging
import signal
import sys
from typing import Optional
import structlog

from .config import Config, LAMPORTS_PER_SOL, load_config
from .wallet import create_wallet
from .rpc import create_rpc_client
from .copy_trader import CopyTrader
from .wallet_monitor import ConnectionExhaustedError

logger = structlog.get_logger(__name__)


def configure_logging(log_level: str = "INFO") -> None:
    """JSON log lines on stdout, filtered at ``log_level``."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


class SlipstreamBot:
    """Main copy trading bot class."""

    def __init__(self, config: Config):
        self.config = config
        self.wallet = None
        self.rpc = None
        self.copy_trader: Optional[CopyTrader] = None
        self._main_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        """Initialize all components."""
        logger.info("initializing_slipstream", network=self.config.network)

        self.wallet = create_wallet(self.config)
        self.rpc = create_rpc_client(self.config)

        balance = await self.rpc.get_balance(self.wallet.pubkey)
        balance_sol = balance / LAMPORTS_PER_SOL
        logger.info("wallet_balance", balance_sol=f"{balance_sol:.4f}")

        if balance_sol < self.config.fee_reserve_sol:
            logger.warning(
                "low_balance",
                message="Balance is below the fee reserve, buys will be skipped"
            )

        self.copy_trader = CopyTrader(
            config=self.config,
            wallet=self.wallet,
            rpc_client=self.rpc
        )

        logger.info(
            "copy_trader_initialized",
            target=self.config.target_wallet[:8] + "...",
            mode=self.config.detector_mode,
            base_slippage_bps=self.config.base_slippage_bps,
            max_slippage_bps=self.config.max_slippage_bps,
            max_retries=self.config.max_retries,
            max_buy_sol=self.config.max_buy_sol
        )

    async def cleanup(self) -> None:
        """Clean up resources."""
        logger.info("cleaning_up")

        if self.copy_trader:
            await self.copy_trader.stop()
        if self.rpc:
            await self.rpc.close()

    async def run(self) -> None:
        """
        Main run loop.

        ConnectionExhaustedError is re-raised after cleanup; anything else
        that reaches here is logged.
        """
        self._main_task = asyncio.current_task()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_shutdown)

        logger.info("copy_trader_starting", message="Watching target wallet for trades to copy...")

        try:
            await self.copy_trader.start()
        except asyncio.CancelledError:
            logger.info("copy_trader_cancelled")
        finally:
            await self.cleanup()
            logger.info("copy_trader_shutdown_complete")

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal."""
        logger.info("shutdown_requested")

        if self.copy_trader:
            self.copy_trader.running = False
        if self._main_task and not self._main_task.done():
            self._main_task.cancel()


async def main() -> int:
    """Entry point. Returns the process exit status."""
    try:
        config = load_config()
    except ValueError as e:
        logger.error("config_invalid", error=str(e))
        return 1

    configure_logging(config.log_level)
    bot = SlipstreamBot(config)

    try:
        await bot.initialize()
        await bot.run()
    except ConnectionExhaustedError as e:
        logger.critical("connection_exhausted", error=str(e))
        return 1
    except Exception as e:
        logger.error("fatal_error", error=str(e))
        return 1
    return 0


def run():
    """Sync entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")


if __name__ == "__main__":
    run()
