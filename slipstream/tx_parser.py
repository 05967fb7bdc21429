"""
Transaction Parser - Turns a counterparty transaction into a trade intent.
Diffs pre/post balances of the target wallet and reads the venue's pool
account out of the instruction that executed the swap.
"""

from typing import Optional, List, Dict, Any, Tuple
from dataclasses import dataclass
from solders.pubkey import Pubkey
import structlog

from .config import NATIVE_SOL_MINT, QUOTE_MINTS

logger = structlog.get_logger(__name__)

# Known program IDs
PUMP_FUN_PROGRAM = "6EF8rrecthR5Dkzon8Nwu78hRvfCKubJ14M5uBEwF6P"
RAYDIUM_AMM_PROGRAM = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
RAYDIUM_CLMM_PROGRAM = "CAMMCzo5YL8w4VFF8KVHrK22GGUsp5VTaW7grrKgrWqK"


@dataclass(frozen=True)
class VenueLayout:
    """Where a venue's swap instruction keeps its pool account."""
    venue: str
    pool_index: int
    min_accounts: int


# program id -> layout of its swap instruction accounts
VENUE_LAYOUTS: Dict[str, VenueLayout] = {
    RAYDIUM_AMM_PROGRAM: VenueLayout("raydium_amm", pool_index=1, min_accounts=17),
    RAYDIUM_CLMM_PROGRAM: VenueLayout("raydium_clmm", pool_index=2, min_accounts=10),
    PUMP_FUN_PROGRAM: VenueLayout("pump.fun", pool_index=3, min_accounts=12),
}


@dataclass(frozen=True)
class VenueAccounts:
    """Venue accounts recovered from a swap instruction."""
    venue: str
    program_id: str
    pool_address: Optional[str]

    @property
    def recognized(self) -> bool:
        return self.pool_address is not None


UNRECOGNIZED_VENUE = VenueAccounts(venue="unrecognized", program_id="", pool_address=None)


@dataclass(frozen=True)
class TradeIntent:
    """
    A counterparty trade worth copying.

    Amounts are human-readable units of ``token_in_mint``, except
    ``amount_in_raw``.
    """
    token_in_mint: str
    token_out_mint: str
    amount_in: float
    source_signature: str
    target_wallet: str
    pool_address: Optional[str] = None
    counterparty_pre_balance: float = 0.0   # token_in before the trade
    counterparty_post_balance: float = 0.0  # token_in after the trade
    is_sell: bool = False
    full_exit: bool = False
    amount_in_raw: Optional[int] = None  # base units, when read from the chain

    @property
    def sell_pct(self) -> float:
        """Share of the counterparty's token_in balance that was moved."""
        if self.counterparty_pre_balance <= 0:
            return 0.0
        return min(100.0, self.amount_in / self.counterparty_pre_balance * 100)


@dataclass
class BalanceDelta:
    """Pre/post balance of one mint for one owner, base units."""
    mint: str
    pre: int
    post: int
    decimals: int

    @property
    def change(self) -> int:
        return self.post - self.pre

    def ui(self, raw: int) -> float:
        return raw / (10 ** self.decimals)


def _is_valid_pubkey(address: Any) -> bool:
    if not isinstance(address, str):
        return False
    try:
        Pubkey.from_string(address)
        return True
    except Exception:
        return False


def _get_account_keys(message: Dict, meta: Dict) -> List[str]:
    """Extract all account keys from transaction."""
    keys = []

    # Static account keys
    for key in message.get("accountKeys", []):
        if isinstance(key, str):
            keys.append(key)
        elif isinstance(key, dict):
            keys.append(key.get("pubkey", ""))

    # Loaded addresses (for versioned transactions)
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))

    return keys


def _instruction_accounts(instruction: Dict, account_keys: List[str]) -> Tuple[str, List[str]]:
    """Program id and account list of an instruction, in either RPC encoding."""
    if "programId" in instruction:
        program_id = instruction["programId"]
    else:
        index = instruction.get("programIdIndex", -1)
        program_id = account_keys[index] if 0 <= index < len(account_keys) else ""

    accounts = []
    for account in instruction.get("accounts", []):
        if isinstance(account, int):
            accounts.append(account_keys[account] if account < len(account_keys) else "")
        else:
            accounts.append(account)
    return program_id, accounts


def decode_venue_accounts(tx_data: Dict[str, Any]) -> VenueAccounts:
    """
    Find the first instruction of a known venue and read its pool account.

    Outer instructions are searched before inner ones. An instruction with
    fewer accounts than its layout requires, or whose account at the pool
    offset is not a valid address, does not count as a match. Returns
    UNRECOGNIZED_VENUE when nothing matches.
    """
    meta = tx_data.get("meta") or {}
    message = (tx_data.get("transaction") or {}).get("message", {})
    account_keys = _get_account_keys(message, meta)

    instructions = list(message.get("instructions", []))
    for inner in meta.get("innerInstructions") or []:
        instructions.extend(inner.get("instructions", []))

    for instruction in instructions:
        program_id, accounts = _instruction_accounts(instruction, account_keys)
        layout = VENUE_LAYOUTS.get(program_id)
        if layout is None:
            continue
        if len(accounts) < layout.min_accounts:
            logger.debug(
                "venue_layout_mismatch",
                venue=layout.venue,
                accounts=len(accounts),
                required=layout.min_accounts
            )
            continue
        pool_address = accounts[layout.pool_index]
        if not _is_valid_pubkey(pool_address):
            continue
        return VenueAccounts(venue=layout.venue, program_id=program_id, pool_address=pool_address)

    return UNRECOGNIZED_VENUE


class TransactionParser:
    """
    Parses Solana transactions to extract the target wallet's swap.
    """

    def __init__(self, quote_mints=QUOTE_MINTS):
        self.quote_mints = frozenset(quote_mints)

    def balance_deltas(self, tx_data: Dict[str, Any], wallet: str) -> Dict[str, BalanceDelta]:
        """
        Per-mint balance changes of ``wallet``.

        Native lamports are folded into the wrapped-SOL mint. When the wallet
        paid the fee it is added back so the fee alone never looks like a trade.
        Mints whose balance did not change are dropped.
        """
        meta = tx_data.get("meta") or {}
        deltas: Dict[str, BalanceDelta] = {}

        for field_name, attr in (("preTokenBalances", "pre"), ("postTokenBalances", "post")):
            for b in meta.get(field_name) or []:
                if b.get("owner") != wallet or not b.get("mint"):
                    continue
                ui_amount = b.get("uiTokenAmount", {})
                mint = b["mint"]
                delta = deltas.setdefault(
                    mint,
                    BalanceDelta(mint=mint, pre=0, post=0, decimals=int(ui_amount.get("decimals", 0)))
                )
                setattr(delta, attr, getattr(delta, attr) + int(ui_amount.get("amount", "0")))

        account_keys = _get_account_keys(
            (tx_data.get("transaction") or {}).get("message", {}),
            meta
        )
        pre_sol = meta.get("preBalances") or []
        post_sol = meta.get("postBalances") or []
        if wallet in account_keys:
            wallet_index = account_keys.index(wallet)
            if wallet_index < len(pre_sol) and wallet_index < len(post_sol):
                lamports_post = post_sol[wallet_index]
                if wallet_index == 0:
                    lamports_post += meta.get("fee", 0)
                sol = deltas.setdefault(
                    NATIVE_SOL_MINT,
                    BalanceDelta(mint=NATIVE_SOL_MINT, pre=0, post=0, decimals=9)
                )
                sol.pre += pre_sol[wallet_index]
                sol.post += lamports_post

        return {mint: d for mint, d in deltas.items() if d.change != 0}

    def parse_intent(
        self,
        tx_data: Dict[str, Any],
        wallet: str,
        signature: Optional[str] = None
    ) -> Optional[TradeIntent]:
        """
        Parse a transaction of ``wallet`` into a TradeIntent.

        A swap needs at least one mint going down and one going up. With more
        candidates (multi-hop routes) the largest decrease is the input and the
        largest increase is the output.

        Returns:
            TradeIntent if a swap was detected, None otherwise
        """
        meta = tx_data.get("meta") or {}
        if meta.get("err") is not None:
            logger.debug("tx_failed", wallet=wallet[:8])
            return None

        if signature is None:
            sigs = (tx_data.get("transaction") or {}).get("signatures", [])
            signature = sigs[0] if sigs else ""

        deltas = self.balance_deltas(tx_data, wallet)
        decreases = [d for d in deltas.values() if d.change < 0]
        increases = [d for d in deltas.values() if d.change > 0]
        if not decreases or not increases:
            logger.debug(
                "not_a_swap",
                signature=signature[:16],
                decreases=len(decreases),
                increases=len(increases)
            )
            return None

        # Magnitudes are compared in human units, mints differ in decimals
        token_in = max(decreases, key=lambda d: abs(d.ui(d.change)))
        token_out = max(increases, key=lambda d: d.ui(d.change))

        venue = decode_venue_accounts(tx_data)

        intent = TradeIntent(
            token_in_mint=token_in.mint,
            token_out_mint=token_out.mint,
            amount_in=token_in.ui(-token_in.change),
            amount_in_raw=-token_in.change,
            source_signature=signature,
            target_wallet=wallet,
            pool_address=venue.pool_address,
            counterparty_pre_balance=token_in.ui(token_in.pre),
            counterparty_post_balance=token_in.ui(token_in.post),
            is_sell=token_in.mint not in self.quote_mints,
            full_exit=token_in.post == 0,
        )

        logger.info(
            "trade_detected",
            signature=signature[:16],
            side="sell" if intent.is_sell else "buy",
            token_in=intent.token_in_mint[:8],
            token_out=intent.token_out_mint[:8],
            amount_in=intent.amount_in,
            venue=venue.venue,
            pool=venue.pool_address
        )
        return intent
