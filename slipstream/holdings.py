"""
Holdings Store - Durable record of the positions we copied.

Each holding keeps our own amount and the last counterparty balance we saw
for the mint, which is the baseline the poll loop diffs against. The file is
rewritten wholesale on every mutation so the last successful write is the
recovery state after a restart.
"""

import asyncio
import json
import os
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, List, Optional
import structlog

logger = structlog.get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Holding:
    """A token position we hold because we copied a buy."""
    mint: str
    amount: float          # Our tracked amount, human units
    target_amount: float   # Last observed counterparty balance
    last_checked: int      # Epoch ms of the last reconciliation


@dataclass
class PendingSell:
    """A sell that could not be executed and is waiting to be retried."""
    mint: str
    amount: float
    attempts: int
    last_attempt: int
    target_wallet: str


def _write_json(path: Path, payload) -> None:
    """Overwrite ``path`` via a temp file so a crash never leaves half a file."""
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, 'w') as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp_path, path)


class HoldingsStore:
    """JSON-backed holdings ledger with write-through persistence."""

    def __init__(self, holdings_file: str):
        self.holdings_file = Path(holdings_file)
        self._holdings: Dict[str, Holding] = {}
        self._lock = asyncio.Lock()

    def load(self) -> None:
        """Load persisted holdings. A missing file means no holdings."""
        if not self.holdings_file.exists():
            logger.info("no_holdings_file", path=str(self.holdings_file))
            self._holdings = {}
            return

        try:
            with open(self.holdings_file, 'r') as f:
                data = json.load(f)
            self._holdings = {}
            for record in data:
                holding = Holding(
                    mint=record["mint"],
                    amount=max(0.0, float(record.get("amount", 0))),
                    target_amount=float(record.get("target_amount", 0)),
                    last_checked=int(record.get("last_checked", 0)),
                )
                self._holdings[holding.mint] = holding
            logger.info("holdings_loaded", count=len(self._holdings))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("holdings_load_failed", path=str(self.holdings_file), error=str(e))
            self._holdings = {}

    def save_holdings(self) -> bool:
        """Overwrite the holdings file with the full in-memory state."""
        try:
            _write_json(self.holdings_file, [asdict(h) for h in self._holdings.values()])
            return True
        except (OSError, TypeError) as e:
            # In-memory state stays authoritative until the next good write
            logger.error("holdings_save_failed", path=str(self.holdings_file), error=str(e))
            return False

    def get(self, mint: str) -> Optional[Holding]:
        return self._holdings.get(mint)

    def all(self) -> List[Holding]:
        """Snapshot of current holdings (safe to iterate while mutating)."""
        return list(self._holdings.values())

    def __len__(self) -> int:
        return len(self._holdings)

    def __contains__(self, mint: str) -> bool:
        return mint in self._holdings

    async def add_holding(
        self,
        mint: str,
        amount_base_units: int,
        decimals: int,
        target_amount: float = 0.0
    ) -> Holding:
        """
        Register tokens received from a confirmed buy.

        Buying a mint we already hold merges into the existing record and keeps
        its counterparty baseline.
        """
        amount = amount_base_units / (10 ** decimals)
        async with self._lock:
            existing = self._holdings.get(mint)
            if existing:
                existing.amount += amount
                existing.last_checked = _now_ms()
                holding = existing
            else:
                holding = Holding(
                    mint=mint,
                    amount=amount,
                    target_amount=target_amount,
                    last_checked=_now_ms(),
                )
                self._holdings[mint] = holding
            self.save_holdings()

        logger.info(
            "holding_added",
            token=mint[:8],
            amount=amount,
            total=holding.amount,
            target_amount=holding.target_amount
        )
        return holding

    async def update_target(self, mint: str, target_amount: float) -> None:
        """Move the counterparty baseline for ``mint``."""
        async with self._lock:
            holding = self._holdings.get(mint)
            if not holding:
                return
            holding.target_amount = target_amount
            holding.last_checked = _now_ms()
            self.save_holdings()

    async def reduce_holding(self, mint: str, amount: float) -> Optional[Holding]:
        """Subtract a partially sold amount, never going below zero."""
        async with self._lock:
            holding = self._holdings.get(mint)
            if not holding:
                return None
            holding.amount = max(0.0, holding.amount - amount)
            holding.last_checked = _now_ms()
            self.save_holdings()

        logger.info("holding_reduced", token=mint[:8], sold=amount, remaining=holding.amount)
        return holding

    async def remove_holding(self, mint: str) -> bool:
        """Forget a fully liquidated position."""
        async with self._lock:
            removed = self._holdings.pop(mint, None)
            if removed is None:
                return False
            self.save_holdings()

        logger.info("holding_removed", token=mint[:8])
        return True


class PendingSellQueue:
    """
    Durable queue of sells that failed even through the emergency path.

    Entries are retried until ``max_attempts``; after that they stay in the
    file for manual intervention and are only logged.
    """

    def __init__(self, pending_file: str, max_attempts: int = 5):
        self.pending_file = Path(pending_file)
        self.max_attempts = max_attempts
        self._pending: Dict[str, PendingSell] = {}
        self._lock = asyncio.Lock()

    def load(self) -> None:
        if not self.pending_file.exists():
            self._pending = {}
            return
        try:
            with open(self.pending_file, 'r') as f:
                data = json.load(f)
            self._pending = {r["mint"]: PendingSell(**r) for r in data}
            if self._pending:
                logger.warning("pending_sells_loaded", count=len(self._pending))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error("pending_sells_load_failed", error=str(e))
            self._pending = {}

    def _save(self) -> None:
        try:
            _write_json(self.pending_file, [asdict(p) for p in self._pending.values()])
        except (OSError, TypeError) as e:
            logger.error("pending_sells_save_failed", error=str(e))

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, mint: str) -> Optional[PendingSell]:
        return self._pending.get(mint)

    def due(self) -> List[PendingSell]:
        """Entries that still have attempts left."""
        return [p for p in self._pending.values() if p.attempts < self.max_attempts]

    async def enqueue(self, mint: str, amount: float, target_wallet: str) -> PendingSell:
        """Add a failed sell, or refresh the amount of an existing entry."""
        async with self._lock:
            entry = self._pending.get(mint)
            if entry:
                entry.amount = amount
            else:
                entry = PendingSell(
                    mint=mint,
                    amount=amount,
                    attempts=0,
                    last_attempt=0,
                    target_wallet=target_wallet,
                )
                self._pending[mint] = entry
            self._save()

        logger.warning("pending_sell_queued", token=mint[:8], amount=amount)
        return entry

    async def record_attempt(self, mint: str) -> Optional[PendingSell]:
        """Count one more retry. Entries at the cap are kept and logged."""
        async with self._lock:
            entry = self._pending.get(mint)
            if not entry:
                return None
            entry.attempts = min(entry.attempts + 1, self.max_attempts)
            entry.last_attempt = _now_ms()
            self._save()

        if entry.attempts >= self.max_attempts:
            logger.critical(
                "pending_sell_exhausted",
                token=mint,
                amount=entry.amount,
                attempts=entry.attempts,
                message="Manual intervention required"
            )
        return entry

    async def resolve(self, mint: str) -> None:
        """Drop an entry after its sell went through."""
        async with self._lock:
            if self._pending.pop(mint, None) is not None:
                self._save()
                logger.info("pending_sell_resolved", token=mint[:8])
