"""
Trade Logger - Journal of every copy trade we attempted.
Appends to a JSON history file for later comparison with the target wallet.
"""

import json
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, asdict, field
from pathlib import Path
import structlog

logger = structlog.get_logger(__name__)


@dataclass
class TradeRecord:
    """Single trade record for history."""
    timestamp: str
    trade_type: str  # "buy", "sell" or "emergency_sell"
    input_mint: str
    output_mint: str

    # Our trade details, base units
    amount_in: int
    amount_out: int
    signatures: List[str] = field(default_factory=list)
    slippage_bps: int = 0
    attempts: int = 0

    # Copied trade details
    target_wallet: Optional[str] = None
    source_signature: Optional[str] = None
    delay_seconds: Optional[float] = None  # Detection to confirmation

    # Result
    success: bool = True
    error: Optional[str] = None


class TradeLogger:
    """Logs all trades for analysis."""

    def __init__(self, history_file: str):
        self.history_file = Path(history_file)
        self._load_history()

    def _load_history(self) -> None:
        """Report the size of an existing history."""
        if self.history_file.exists():
            try:
                with open(self.history_file, 'r') as f:
                    data = json.load(f)
                    # Not kept in memory, new trades are appended
                    logger.info("trade_history_loaded", count=len(data))
            except (OSError, ValueError) as e:
                logger.warning("history_load_failed", error=str(e))

    def _read_all(self) -> List[Dict[str, Any]]:
        if not self.history_file.exists():
            return []
        with open(self.history_file, 'r') as f:
            return json.load(f)

    def _save_trade(self, trade: TradeRecord) -> None:
        """Append trade to history file."""
        try:
            existing = self._read_all()
            existing.append(asdict(trade))

            if not self.history_file.parent.exists():
                self.history_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.history_file, 'w') as f:
                json.dump(existing, f, indent=2)

            logger.debug("trade_saved", token=trade.input_mint[:8])
        except (OSError, ValueError, TypeError) as e:
            logger.error("trade_save_failed", error=str(e))

    def log_trade(
        self,
        trade_type: str,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        amount_out: int,
        signatures: List[str],
        slippage_bps: int,
        attempts: int,
        target_wallet: Optional[str] = None,
        source_signature: Optional[str] = None,
        delay_seconds: Optional[float] = None
    ) -> TradeRecord:
        """Log a confirmed swap."""
        trade = TradeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            trade_type=trade_type,
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            amount_out=amount_out,
            signatures=list(signatures),
            slippage_bps=slippage_bps,
            attempts=attempts,
            target_wallet=target_wallet,
            source_signature=source_signature,
            delay_seconds=delay_seconds,
            success=True,
        )

        self._save_trade(trade)

        logger.info(
            "trade_logged",
            type=trade_type,
            input=input_mint[:8],
            output=output_mint[:8],
            amount_in=amount_in,
            amount_out=amount_out,
            attempts=attempts,
            delay=f"{delay_seconds:.1f}s" if delay_seconds is not None else None
        )
        return trade

    def log_failure(
        self,
        trade_type: str,
        input_mint: str,
        output_mint: str,
        amount_in: int,
        error: str,
        attempts: int = 0,
        target_wallet: Optional[str] = None,
        source_signature: Optional[str] = None
    ) -> TradeRecord:
        """Log a swap that never confirmed."""
        trade = TradeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            trade_type=trade_type,
            input_mint=input_mint,
            output_mint=output_mint,
            amount_in=amount_in,
            amount_out=0,
            attempts=attempts,
            target_wallet=target_wallet,
            source_signature=source_signature,
            success=False,
            error=error,
        )

        self._save_trade(trade)

        logger.info(
            "trade_logged",
            type=trade_type,
            input=input_mint[:8],
            output=output_mint[:8],
            success=False,
            error=error
        )
        return trade

    def get_summary(self) -> Dict[str, Any]:
        """Get trading summary statistics."""
        try:
            trades = self._read_all()
        except (OSError, ValueError) as e:
            logger.error("summary_failed", error=str(e))
            return {"error": str(e)}

        succeeded = [t for t in trades if t.get("success")]
        buys = [t for t in succeeded if t.get("trade_type") == "buy"]
        sells = [t for t in succeeded if t.get("trade_type") in ("sell", "emergency_sell")]
        emergency = [t for t in succeeded if t.get("trade_type") == "emergency_sell"]
        delays = [t["delay_seconds"] for t in succeeded if t.get("delay_seconds") is not None]

        return {
            "total_trades": len(trades),
            "buys": len(buys),
            "sells": len(sells),
            "emergency_sells": len(emergency),
            "failed": len(trades) - len(succeeded),
            "avg_attempts": sum(t.get("attempts", 0) for t in succeeded) / len(succeeded) if succeeded else 0,
            "avg_delay_seconds": sum(delays) / len(delays) if delays else 0,
        }
