"""
RPC client wrapper for Solana.
Supports Helius/QuickNode with rate limiting and backoff.
"""

import asyncio
import base64
import time
from typing import Optional, Dict, Any, List, Tuple, Union
import aiohttp
from solders.pubkey import Pubkey
import structlog

from .config import Config, BACKOFF_BASE_SECONDS, BACKOFF_MAX_SECONDS

logger = structlog.get_logger(__name__)

# Ordering used to decide whether a status satisfies the requested commitment
COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}


class RPCError(Exception):
    """An RPC request failed (transport, HTTP status or JSON-RPC error)."""


class TransactionFailedError(RPCError):
    """The transaction landed but its status carries an error."""

    def __init__(self, signature: str, err: Any):
        self.signature = signature
        self.err = err
        super().__init__(f"Transaction {signature} failed: {err}")


class ConfirmationTimeoutError(RPCError):
    """Confirmation did not arrive before the timeout or blockhash expiry."""


class RateLimiter:
    """Simple rate limiter using token bucket algorithm."""

    def __init__(self, max_per_second: float):
        self.max_per_second = max_per_second
        self.tokens = max_per_second
        self.last_update = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Acquire a token, waiting if necessary."""
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self.last_update
            self.tokens = min(self.max_per_second, self.tokens + elapsed * self.max_per_second)
            self.last_update = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / self.max_per_second
                await asyncio.sleep(wait_time)
                self.tokens = 0
            else:
                self.tokens -= 1


class RPCClient:
    """Async RPC client for Solana with rate limiting and backoff."""

    def __init__(self, config: Config):
        self.config = config
        self.rpc_url = config.rpc_url
        self.rate_limiter = RateLimiter(config.rpc_max_requests_per_second)
        self._session: Optional[aiohttp.ClientSession] = None
        self._backoff_until: float = 0
        self._consecutive_errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _wait_for_backoff(self) -> None:
        """Wait if we're in backoff period."""
        now = time.monotonic()
        if now < self._backoff_until:
            wait_time = self._backoff_until - now
            logger.warning("rpc_backoff_waiting", wait_seconds=round(wait_time, 2))
            await asyncio.sleep(wait_time)

    def _apply_backoff(self) -> None:
        """Apply exponential backoff after an error."""
        self._consecutive_errors += 1
        backoff = min(
            BACKOFF_BASE_SECONDS * (2 ** self._consecutive_errors),
            BACKOFF_MAX_SECONDS
        )
        self._backoff_until = time.monotonic() + backoff
        logger.warning("rpc_backoff_applied", backoff_seconds=backoff)

    def _reset_backoff(self) -> None:
        """Reset backoff after successful request."""
        self._consecutive_errors = 0
        self._backoff_until = 0

    async def _request(self, method: str, params: List[Any]) -> Any:
        """Make a JSON-RPC request and return its ``result``."""
        await self._wait_for_backoff()
        await self.rate_limiter.acquire()

        session = await self._get_session()
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params
        }

        try:
            async with session.post(
                self.rpc_url,
                json=payload,
                headers={"Content-Type": "application/json"}
            ) as response:
                if response.status == 429:
                    self._apply_backoff()
                    raise RPCError("Rate limited by RPC")

                response.raise_for_status()
                result = await response.json()

                if "error" in result:
                    error = result["error"]
                    message = error.get("message", error) if isinstance(error, dict) else error
                    raise RPCError(f"RPC error ({method}): {message}")

                self._reset_backoff()
                return result.get("result")

        except aiohttp.ClientError as e:
            self._apply_backoff()
            logger.error("rpc_request_failed", method=method, error=str(e))
            raise RPCError(f"{method} failed: {e}") from e

        except (asyncio.TimeoutError, ValueError) as e:
            # Session timeouts and non-JSON bodies
            self._apply_backoff()
            logger.error("rpc_request_failed", method=method, error=repr(e))
            raise RPCError(f"{method} failed: {e!r}") from e

    async def get_balance(self, pubkey: Union[Pubkey, str]) -> int:
        """Get SOL balance in lamports."""
        result = await self._request("getBalance", [str(pubkey)])
        return (result or {}).get("value", 0)

    async def get_latest_blockhash(self, commitment: str = "confirmed") -> Tuple[str, int]:
        """Get the latest blockhash and its last valid block height."""
        result = await self._request("getLatestBlockhash", [{"commitment": commitment}])
        value = result["value"]
        return value["blockhash"], value["lastValidBlockHeight"]

    async def get_block_height(self, commitment: str = "confirmed") -> int:
        """Get the current block height."""
        return await self._request("getBlockHeight", [{"commitment": commitment}])

    async def get_account_info(
        self,
        pubkey: Union[Pubkey, str],
        encoding: str = "jsonParsed"
    ) -> Optional[Dict[str, Any]]:
        """Get account info, None if the account does not exist."""
        result = await self._request(
            "getAccountInfo",
            [str(pubkey), {"encoding": encoding}]
        )
        return (result or {}).get("value")

    async def get_token_accounts_by_owner(
        self,
        owner: Union[Pubkey, str],
        mint: str
    ) -> List[Dict[str, Any]]:
        """Get parsed token accounts of ``owner`` for ``mint``."""
        result = await self._request(
            "getTokenAccountsByOwner",
            [str(owner), {"mint": mint}, {"encoding": "jsonParsed"}]
        )
        return (result or {}).get("value", [])

    async def send_raw_transaction(
        self,
        tx_bytes: bytes,
        skip_preflight: bool = True,
        preflight_commitment: str = "confirmed"
    ) -> str:
        """Send a serialized signed transaction and return its signature."""
        tx_base64 = base64.b64encode(tx_bytes).decode('utf-8')

        options = {
            "skipPreflight": skip_preflight,
            "preflightCommitment": preflight_commitment,
            "encoding": "base64",
            "maxRetries": 3
        }

        result = await self._request("sendTransaction", [tx_base64, options])

        if isinstance(result, str):
            return result

        raise RPCError(f"Unexpected sendTransaction result: {result}")

    async def confirm_transaction(
        self,
        signature: str,
        commitment: str = "confirmed",
        timeout_seconds: float = 30.0,
        last_valid_block_height: Optional[int] = None
    ) -> str:
        """
        Wait until ``signature`` reaches ``commitment``.

        Returns the reached confirmation status. Raises TransactionFailedError
        when the status carries an error, ConfirmationTimeoutError on timeout
        or when the blockhash has expired.
        """
        start_time = time.monotonic()
        wanted = COMMITMENT_RANK.get(commitment, 1)

        while time.monotonic() - start_time < timeout_seconds:
            try:
                result = await self._request(
                    "getSignatureStatuses",
                    [[signature], {"searchTransactionHistory": True}]
                )
            except RPCError as e:
                logger.warning(
                    "confirm_transaction_error",
                    signature=signature[:16],
                    error=str(e)
                )
                await asyncio.sleep(1.0)
                continue

            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise TransactionFailedError(signature, status["err"])

                confirmation_status = status.get("confirmationStatus") or "processed"
                if COMMITMENT_RANK.get(confirmation_status, 0) >= wanted:
                    logger.info(
                        "transaction_confirmed",
                        signature=signature,
                        status=confirmation_status
                    )
                    return confirmation_status
            elif last_valid_block_height is not None:
                block_height = await self.get_block_height(commitment)
                if block_height > last_valid_block_height:
                    raise ConfirmationTimeoutError(
                        f"Blockhash expired before {signature} landed"
                    )

            await asyncio.sleep(0.5)

        logger.warning("transaction_timeout", signature=signature[:16], timeout=timeout_seconds)
        raise ConfirmationTimeoutError(
            f"{signature} not {commitment} after {timeout_seconds:.0f}s"
        )

    async def get_transaction(self, signature: str) -> Optional[Dict]:
        """Get a transaction by signature (jsonParsed)."""
        return await self._request(
            "getTransaction",
            [
                signature,
                {
                    "encoding": "jsonParsed",
                    "commitment": "confirmed",
                    "maxSupportedTransactionVersion": 0
                }
            ]
        )


def create_rpc_client(config: Config) -> RPCClient:
    """Factory function to create an RPC client."""
    return RPCClient(config)
