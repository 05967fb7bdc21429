"""
Follower wallet for Slipstream.
Owns the signing keypair; only the public address ever leaves this module.
"""

import json
from typing import List, Sequence
import base58
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.transaction import Transaction, VersionedTransaction
import structlog

from .config import Config

logger = structlog.get_logger(__name__)


def decode_secret_key(secret: str) -> Keypair:
    """
    Keypair from a base58 secret or a solana-keygen style JSON byte array.

    64 bytes is a full keypair, 32 bytes a seed.
    """
    secret = secret.strip()
    if secret.startswith("["):
        key_bytes = bytes(json.loads(secret))
    else:
        key_bytes = base58.b58decode(secret)

    if len(key_bytes) == 64:
        return Keypair.from_bytes(key_bytes)
    if len(key_bytes) == 32:
        return Keypair.from_seed(key_bytes)
    raise ValueError(f"Invalid private key length: {len(key_bytes)}")


class Wallet:
    """
    Signs follower transactions. The keypair itself is never handed out.
    """

    def __init__(self, config: Config):
        try:
            self._keypair = decode_secret_key(config.wallet_private_key)
        except Exception as e:
            logger.error("wallet_load_failed", error=str(e))
            raise ValueError(f"Failed to load wallet: {e}")

        logger.info("wallet_loaded", address=self.address, network=config.network)

    @property
    def pubkey(self) -> Pubkey:
        return self._keypair.pubkey()

    @property
    def address(self) -> str:
        return str(self.pubkey)

    def sign_transaction(self, transaction: Transaction) -> Transaction:
        """Sign a legacy transaction in place against its own blockhash."""
        transaction.sign([self._keypair], transaction.message.recent_blockhash)
        return transaction

    def sign_versioned_transaction(self, transaction: VersionedTransaction) -> VersionedTransaction:
        # Versioned transactions are immutable, re-create with our signature
        return VersionedTransaction(transaction.message, [self._keypair])

    def build_signed(self, instructions: Sequence[Instruction], blockhash: Hash) -> Transaction:
        """Legacy transaction paid and signed by the follower."""
        ixs: List[Instruction] = list(instructions)
        return Transaction.new_signed_with_payer(ixs, self.pubkey, [self._keypair], blockhash)

    def __repr__(self) -> str:
        return f"Wallet(address={self.address})"


def create_wallet(config: Config) -> Wallet:
    """Factory function to create a wallet instance."""
    return Wallet(config)
