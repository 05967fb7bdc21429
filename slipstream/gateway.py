"""
Quote/Execution Gateway for Slipstream.
Stateless wrapper around the Jupiter quote/swap API and the RPC node:
quote, priority fee, transaction bundle, sign, submit, confirm.
"""

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union
import aiohttp
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import Transaction, VersionedTransaction
from spl.token.instructions import create_associated_token_account, get_associated_token_address
import structlog

from .config import Config, NATIVE_SOL_MINT
from .rpc import RPCClient, RPCError
from .wallet import Wallet

logger = structlog.get_logger(__name__)

# Programs that Helius should price the fee estimate against
JUPITER_V6_PROGRAM = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"

# Compute budget for token account creation
ATA_COMPUTE_UNIT_PRICE = 25_000
ATA_COMPUTE_UNIT_LIMIT = 25_000
ATA_CREATE_RETRIES = 3

SignedTransaction = Union[Transaction, VersionedTransaction]


class SwapApiError(Exception):
    """The quote/swap API returned an error or an unusable response."""


class TransactionDecodeError(SwapApiError):
    """A transaction payload could not be decoded in any known format."""


class TxFormat(Enum):
    LEGACY = "legacy"
    VERSIONED = "versioned"

    @classmethod
    def from_tag(cls, tag: Optional[str]) -> "TxFormat":
        """Map the API's version tag ('legacy', 'v0', 0, ...) to a format."""
        if tag is None:
            return cls.VERSIONED
        return cls.LEGACY if str(tag).lower() == "legacy" else cls.VERSIONED


@dataclass
class Quote:
    """A swap quote. ``raw`` is passed back verbatim when building the swap."""
    input_mint: str
    output_mint: str
    input_amount: int
    output_amount: int
    price_impact_pct: float
    slippage_bps: int
    raw: Dict[str, Any]

    @classmethod
    def from_response(cls, data: Dict[str, Any], slippage_bps: int) -> "Quote":
        try:
            return cls(
                input_mint=data["inputMint"],
                output_mint=data["outputMint"],
                input_amount=int(data["inAmount"]),
                output_amount=int(data["outAmount"]),
                price_impact_pct=float(data.get("priceImpactPct") or 0),
                slippage_bps=int(data.get("slippageBps", slippage_bps)),
                raw=data,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SwapApiError(f"Malformed quote response: {e}") from e


@dataclass(frozen=True)
class PriorityFees:
    """Fee-percentile recommendation in micro-lamports per compute unit."""
    low: int
    medium: int
    high: int


@dataclass
class SwapPayload:
    """One transaction of a swap bundle, tagged with its wire format."""
    format: TxFormat
    transaction: SignedTransaction


def _is_versioned_message(raw: bytes) -> bool:
    """
    True when the message after the signature block carries the
    versioned-message prefix bit.
    """
    # Signature count is a compact-u16
    count = 0
    shift = 0
    offset = 0
    while offset < len(raw):
        byte = raw[offset]
        count |= (byte & 0x7F) << shift
        offset += 1
        if not byte & 0x80:
            break
        shift += 7
    message_start = offset + 64 * count
    if message_start >= len(raw):
        return False
    return bool(raw[message_start] & 0x80)


def decode_transaction(raw: bytes, declared: TxFormat = TxFormat.VERSIONED) -> SwapPayload:
    """
    Decode a serialized swap transaction.

    Versioned decoding is attempted first and legacy is the fallback. A legacy
    tag from the API or a message without the version bit goes straight to
    legacy decoding.
    """
    if declared is TxFormat.LEGACY or not _is_versioned_message(raw):
        candidates = [TxFormat.LEGACY, TxFormat.VERSIONED]
    else:
        candidates = [TxFormat.VERSIONED, TxFormat.LEGACY]

    errors = []
    for fmt in candidates:
        try:
            if fmt is TxFormat.VERSIONED:
                return SwapPayload(fmt, VersionedTransaction.from_bytes(raw))
            return SwapPayload(fmt, Transaction.from_bytes(raw))
        except Exception as e:  # solders raises its own serde error types
            errors.append(f"{fmt.value}: {e}")

    raise TransactionDecodeError("; ".join(errors))


class SwapGateway:
    """Talks to the swap API and the RPC node on behalf of the swap engine."""

    def __init__(
        self,
        config: Config,
        wallet: Wallet,
        rpc_client: RPCClient
    ):
        self.config = config
        self.wallet = wallet
        self.rpc = rpc_client
        self._session: Optional[aiohttp.ClientSession] = None
        self._known_token_accounts: Set[str] = set()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=15))
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def get_quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int
    ) -> Quote:
        """Get a swap quote from Jupiter. Raises SwapApiError on failure."""
        session = await self._get_session()

        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }

        try:
            async with session.get(self.config.jupiter_quote_api, params=params) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise SwapApiError(f"quote_failed ({response.status}): {error_text[:200]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise SwapApiError(f"quote_request_failed: {e}") from e

        if "error" in data:
            raise SwapApiError(f"quote_failed: {data['error']}")

        quote = Quote.from_response(data, slippage_bps)
        logger.debug(
            "quote_received",
            input_mint=input_mint[:8],
            output_mint=output_mint[:8],
            in_amount=quote.input_amount,
            out_amount=quote.output_amount,
            price_impact=quote.price_impact_pct,
            slippage_bps=slippage_bps
        )
        return quote

    async def get_priority_fee(self) -> PriorityFees:
        """Ask the fee-estimate endpoint for low/medium/high priority fees."""
        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getPriorityFeeEstimate",
            "params": [{
                "accountKeys": [JUPITER_V6_PROGRAM],
                "options": {"includeAllPriorityFeeLevels": True}
            }]
        }

        try:
            async with session.post(self.config.priority_fee_url, json=payload) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise SwapApiError(f"priority_fee_failed ({response.status}): {error_text[:200]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise SwapApiError(f"priority_fee_request_failed: {e}") from e

        levels = (data.get("result") or {}).get("priorityFeeLevels")
        if not levels:
            raise SwapApiError(f"priority_fee_unavailable: {data.get('error', data)}")

        return PriorityFees(
            low=int(levels.get("low", 0)),
            medium=int(levels.get("medium", 0)),
            high=int(levels.get("high", 0)),
        )

    async def build_swap_transactions(
        self,
        quote: Quote,
        fee_micro_lamports: int,
        wrap_and_unwrap_sol: bool = True
    ) -> List[SwapPayload]:
        """
        Get the swap transaction(s) for a quote.

        The API answers with either a single ``swapTransaction`` or a list of
        ``transactions``, optionally tagged with ``txVersion``.
        """
        session = await self._get_session()

        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": self.wallet.address,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "dynamicComputeUnitLimit": True,
            "computeUnitPriceMicroLamports": int(fee_micro_lamports),
        }

        try:
            async with session.post(
                self.config.jupiter_swap_api,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status != 200:
                    error_text = await response.text()
                    raise SwapApiError(f"swap_failed ({response.status}): {error_text[:200]}")
                data = await response.json()
        except aiohttp.ClientError as e:
            raise SwapApiError(f"swap_request_failed: {e}") from e

        if data.get("error"):
            raise SwapApiError(f"swap_failed: {data['error']}")

        encoded = data.get("transactions")
        if encoded is None:
            single = data.get("swapTransaction")
            encoded = [single] if single else []
        if not encoded:
            raise SwapApiError("no_swap_transaction")

        declared = TxFormat.from_tag(data.get("txVersion", data.get("type")))
        return [decode_transaction(base64.b64decode(tx_b64), declared) for tx_b64 in encoded]

    def sign(self, payload: SwapPayload) -> SignedTransaction:
        """Sign a payload with the follower key."""
        if payload.format is TxFormat.VERSIONED:
            return self.wallet.sign_versioned_transaction(payload.transaction)
        return self.wallet.sign_transaction(payload.transaction)

    async def submit_and_confirm(self, transaction: SignedTransaction) -> str:
        """
        Send a signed transaction and wait for the configured commitment.

        Preflight is skipped. A fresh last-valid block height is fetched right
        before submission and bounds the confirmation wait.
        """
        _, last_valid_block_height = await self.rpc.get_latest_blockhash()
        signature = await self.rpc.send_raw_transaction(bytes(transaction), skip_preflight=True)

        logger.info("transaction_sent", signature=signature)

        await self.rpc.confirm_transaction(
            signature,
            commitment=self.config.confirm_commitment,
            timeout_seconds=self.config.confirm_timeout_seconds,
            last_valid_block_height=last_valid_block_height
        )
        return signature

    async def execute(self, quote: Quote, fee_micro_lamports: int) -> List[str]:
        """Build, sign, submit and confirm every transaction of a swap in order."""
        payloads = await self.build_swap_transactions(quote, fee_micro_lamports)

        signatures = []
        for index, payload in enumerate(payloads):
            signed = self.sign(payload)
            signature = await self.submit_and_confirm(signed)
            signatures.append(signature)
            logger.info(
                "swap_transaction_confirmed",
                index=index + 1,
                total=len(payloads),
                format=payload.format.value,
                signature=signature
            )
        return signatures

    async def ensure_token_account(self, mint: str) -> Optional[Pubkey]:
        """
        Make sure our associated token account for ``mint`` exists.

        Creation is submitted and confirmed before returning. Native SOL is
        wrapped by the swap itself and needs no account.
        """
        if mint == NATIVE_SOL_MINT:
            return None

        mint_account = await self.rpc.get_account_info(mint)
        if not mint_account:
            raise SwapApiError(f"Mint {mint} not found")
        token_program = Pubkey.from_string(mint_account["owner"])

        mint_pubkey = Pubkey.from_string(mint)
        ata = get_associated_token_address(self.wallet.pubkey, mint_pubkey, token_program)
        if str(ata) in self._known_token_accounts:
            return ata

        if await self.rpc.get_account_info(ata, encoding="base64"):
            self._known_token_accounts.add(str(ata))
            return ata

        logger.info("creating_token_account", token=mint[:8], account=str(ata))

        instructions = [
            set_compute_unit_price(ATA_COMPUTE_UNIT_PRICE),
            set_compute_unit_limit(ATA_COMPUTE_UNIT_LIMIT),
            create_associated_token_account(
                self.wallet.pubkey,
                self.wallet.pubkey,
                mint_pubkey,
                token_program
            ),
        ]

        last_error: Optional[Exception] = None
        for attempt in range(ATA_CREATE_RETRIES):
            try:
                blockhash, last_valid_block_height = await self.rpc.get_latest_blockhash("finalized")
                transaction = self.wallet.build_signed(instructions, Hash.from_string(blockhash))
                signature = await self.rpc.send_raw_transaction(
                    bytes(transaction), skip_preflight=False
                )
                await self.rpc.confirm_transaction(
                    signature,
                    commitment="confirmed",
                    timeout_seconds=self.config.confirm_timeout_seconds,
                    last_valid_block_height=last_valid_block_height
                )
                self._known_token_accounts.add(str(ata))
                logger.info("token_account_created", token=mint[:8], signature=signature)
                return ata
            except RPCError as e:
                last_error = e
                logger.warning(
                    "token_account_create_retry",
                    token=mint[:8],
                    attempt=attempt + 1,
                    error=str(e)
                )

        raise SwapApiError(f"Could not create token account for {mint}: {last_error}")
