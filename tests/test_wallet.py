"""
Unit tests for follower key loading and signing.
"""

import json
import base58
import pytest
from solders.compute_budget import set_compute_unit_price
from solders.hash import Hash
from solders.keypair import Keypair
from solders.signature import Signature

from conftest import make_config
from slipstream.wallet import Wallet, decode_secret_key


class TestDecodeSecretKey:

    def test_base58_keypair(self):
        keypair = Keypair()

        decoded = decode_secret_key(base58.b58encode(bytes(keypair)).decode())

        assert decoded.pubkey() == keypair.pubkey()

    def test_json_byte_array(self):
        keypair = Keypair()

        decoded = decode_secret_key(json.dumps(list(bytes(keypair))))

        assert decoded.pubkey() == keypair.pubkey()

    def test_seed(self):
        seed = bytes(range(32))

        decoded = decode_secret_key(base58.b58encode(seed).decode())

        assert decoded.pubkey() == Keypair.from_seed(seed).pubkey()

    def test_wrong_length(self):
        with pytest.raises(ValueError):
            decode_secret_key(base58.b58encode(b"short").decode())


class TestWallet:

    def test_bad_key_raises(self):
        with pytest.raises(ValueError):
            Wallet(make_config(wallet_private_key="0OIl"))

    def test_address_only(self):
        keypair = Keypair()
        wallet = Wallet(make_config(wallet_private_key=base58.b58encode(bytes(keypair)).decode()))

        assert wallet.address == str(keypair.pubkey())
        assert not hasattr(wallet, "keypair")
        assert wallet.address in repr(wallet)

    def test_build_signed(self):
        keypair = Keypair()
        wallet = Wallet(make_config(wallet_private_key=base58.b58encode(bytes(keypair)).decode()))

        tx = wallet.build_signed([set_compute_unit_price(1)], Hash.default())

        assert tx.message.account_keys[0] == keypair.pubkey()
        assert tx.signatures[0] != Signature.default()
