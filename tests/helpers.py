"""
Shared fixtures for atomicswap tests.

Deterministic regtest keys, contract/transaction builders and a mock chain
client standing in for BTCClient.
"""

import os
import sys
from unittest.mock import MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from bitcoin import SelectParams
from bitcoin.core import CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, b2x
from bitcoin.wallet import CBitcoinAddress

from atomicswap.core import ContractParams, hash160
from atomicswap.chains.btc import Block
from atomicswap.chains.profiles import SHA256_PROFILE, Slot
from atomicswap.chains.wallet import encode_wif, privkey_to_pubkey
from atomicswap.htlc.contract import pubkey_hash_to_address

SelectParams('regtest')

NOW = 1_700_000_000
HOUR = 3600


class SwapKey:
    """A fixed secp256k1 key with its regtest P2WPKH address."""

    def __init__(self, privkey: bytes):
        self.privkey = privkey
        self.wif = encode_wif(privkey)
        self.pubkey = privkey_to_pubkey(privkey)
        self.pubkey_hash = hash160(self.pubkey)
        self.address = pubkey_hash_to_address(self.pubkey_hash)


ALICE = SwapKey(bytes([0x11] * 32))
BOB = SwapKey(bytes([0x22] * 32))
CAROL = SwapKey(bytes([0x33] * 32))

SECRET = bytes(range(32))


def contract_tokens(params: ContractParams, profile=SHA256_PROFILE):
    """Template tokens filled with params, for building broken scripts."""
    values = {
        "secret_hash": params.secret_hash,
        "recipient_hash": params.recipient_hash,
        "refund_hash": params.refund_hash,
        "locktime": params.locktime,
    }
    return [values[t.name] if isinstance(t, Slot) else t for t in profile.script_template()]


def pay_to(address: str, value: int, prev: bytes = b'\x01' * 32) -> CMutableTransaction:
    """Wallet-like transaction paying value to address, plus change."""
    txin = CMutableTxIn(COutPoint(prev, 0))
    outputs = [
        CMutableTxOut(value, CBitcoinAddress(address).to_scriptPubKey()),
        CMutableTxOut(50_000, CBitcoinAddress(CAROL.address).to_scriptPubKey()),
    ]
    return CMutableTransaction([txin], outputs, nVersion=2)


def tx_hex(tx) -> str:
    return b2x(tx.serialize())


def mock_chain(address: str, now: int = NOW, height: int = 200) -> MagicMock:
    """
    MagicMock chain client.

    get_new_address always returns address; fund_output pays the requested
    address with a fresh funding transaction.
    """
    chain = MagicMock()
    chain.get_latest_block.return_value = Block(
        height=height, hash="00" * 32, time=now, median_time=now
    )
    chain.get_new_address.return_value = address

    counter = iter(range(2, 256))

    def fund_output(addr, amount, fee_rate, deadline=None):
        return pay_to(addr, amount, prev=bytes([next(counter)]) * 32), 141

    chain.fund_output.side_effect = fund_output
    chain.broadcast.side_effect = lambda tx, timeout=None: tx.GetTxid()[::-1].hex()
    return chain


def set_chain_time(chain: MagicMock, now: int, height: int = 200):
    chain.get_latest_block.return_value = Block(
        height=height, hash="00" * 32, time=now, median_time=now
    )
