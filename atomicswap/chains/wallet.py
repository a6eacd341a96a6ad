"""
Signing services for contract spends.

The HTLC builders never hold keys: they hand an unsigned transaction,
the input index, the witness script and the pubkey hash the contract
requires to a signer, and get back (signature, pubkey).

KeySigner signs with WIF keys supplied by the caller.
NodeWalletSigner looks the key up in the Bitcoin Core wallet.
"""

import hashlib
import logging
from typing import Dict, Iterable, Optional, Tuple

import base58
from ecdsa import SigningKey, SECP256k1
from ecdsa.util import sigencode_der_canonize
from bitcoin.core import CTransaction
from bitcoin.core.script import CScript, SignatureHash, SIGHASH_ALL, SIGVERSION_WITNESS_V0
from bitcoin.wallet import P2PKHBitcoinAddress

from ..core import hash160, DEFAULT_RPC_TIMEOUT
from ..errors import SigningError, RPCError, InvalidParameter
from .btc import Deadline

log = logging.getLogger(__name__)

WIF_PREFIXES = (0x80, 0xef)  # mainnet, test networks


def decode_wif(wif: str) -> Tuple[bytes, bool]:
    """Decode WIF to (private key bytes, compressed)."""
    try:
        decoded = base58.b58decode_check(wif)
    except ValueError as e:
        raise InvalidParameter(f"invalid WIF key: {e}") from None

    if decoded[0] not in WIF_PREFIXES:
        raise InvalidParameter(f"invalid WIF prefix: {decoded[0]:#x}")
    if len(decoded) == 34 and decoded[-1] == 0x01:
        return decoded[1:33], True
    if len(decoded) == 33:
        return decoded[1:33], False
    raise InvalidParameter(f"invalid WIF length: {len(decoded)}")


def encode_wif(privkey: bytes, compressed: bool = True, testnet: bool = True) -> str:
    """Encode a private key as WIF."""
    payload = bytes([WIF_PREFIXES[1] if testnet else WIF_PREFIXES[0]]) + privkey
    if compressed:
        payload += b'\x01'
    return base58.b58encode_check(payload).decode()


def privkey_to_pubkey(privkey: bytes, compressed: bool = True) -> bytes:
    """Derive the secp256k1 public key."""
    vk = SigningKey.from_string(privkey, curve=SECP256k1).get_verifying_key()
    return vk.to_string("compressed" if compressed else "uncompressed")


def sign_digest(privkey: bytes, digest: bytes) -> bytes:
    """Deterministic (RFC 6979) low-S DER signature of a 32-byte digest."""
    sk = SigningKey.from_string(privkey, curve=SECP256k1)
    return sk.sign_digest_deterministic(
        digest, hashfunc=hashlib.sha256, sigencode=sigencode_der_canonize
    )


def witness_sighash(tx: CTransaction, input_index: int, script_code: bytes,
                    amount: int) -> bytes:
    """BIP-143 SIGHASH_ALL digest for a P2WSH input."""
    return SignatureHash(
        CScript(script_code), tx, input_index, SIGHASH_ALL,
        amount=amount, sigversion=SIGVERSION_WITNESS_V0,
    )


class KeySigner:
    """Signs with private keys given as WIF strings."""

    def __init__(self, wifs: Iterable[str] = ()):
        self._keys: Dict[bytes, Tuple[bytes, bytes]] = {}
        for wif in wifs:
            self.add_wif(wif)

    def add_wif(self, wif: str) -> bytes:
        """Register a key; returns its pubkey hash."""
        privkey, compressed = decode_wif(wif)
        pubkey = privkey_to_pubkey(privkey, compressed)
        pubkey_hash = hash160(pubkey)
        self._keys[pubkey_hash] = (privkey, pubkey)
        return pubkey_hash

    def has_key(self, pubkey_hash: bytes) -> bool:
        return pubkey_hash in self._keys

    def sign_input(self, tx: CTransaction, input_index: int, script_code: bytes,
                   amount: int, pubkey_hash: bytes,
                   deadline: Optional[Deadline] = None) -> Tuple[bytes, bytes]:
        """
        Sign one P2WSH input. Signing is local, so deadline is unused.

        Returns:
            (DER signature + sighash byte, pubkey)
        """
        if pubkey_hash not in self._keys:
            raise SigningError(f"no key for pubkey hash {pubkey_hash.hex()}")
        privkey, pubkey = self._keys[pubkey_hash]
        sighash = witness_sighash(tx, input_index, script_code, amount)
        signature = sign_digest(privkey, sighash) + bytes([SIGHASH_ALL])
        return signature, pubkey


class NodeWalletSigner:
    """
    Signs with keys held by the Bitcoin Core wallet.

    The key is fetched with dumpprivkey for the P2WPKH or P2PKH address of
    the required pubkey hash, which only works with legacy wallets.
    Descriptor wallet users pass their key with --wif instead.
    """

    def __init__(self, client, timeout: float = DEFAULT_RPC_TIMEOUT):
        self.client = client
        self.timeout = timeout

    def _find_wif(self, pubkey_hash: bytes, deadline: Deadline) -> str:
        from ..htlc.contract import pubkey_hash_to_address

        candidates = (
            pubkey_hash_to_address(pubkey_hash),
            str(P2PKHBitcoinAddress.from_bytes(pubkey_hash)),
        )
        for address in candidates:
            try:
                return self.client.dump_private_key(address, timeout=deadline.remaining())
            except RPCError as e:
                log.debug(f"dumpprivkey {address} failed: {e}")
        raise SigningError(
            f"wallet has no exportable key for pubkey hash {pubkey_hash.hex()} "
            f"(descriptor wallets: pass the key with --wif)"
        )

    def sign_input(self, tx: CTransaction, input_index: int, script_code: bytes,
                   amount: int, pubkey_hash: bytes,
                   deadline: Optional[Deadline] = None) -> Tuple[bytes, bytes]:
        """Sign with the wallet key; lookups share deadline, else self.timeout."""
        deadline = deadline or Deadline(self.timeout)
        signer = KeySigner([self._find_wif(pubkey_hash, deadline)])
        return signer.sign_input(tx, input_index, script_code, amount, pubkey_hash)
