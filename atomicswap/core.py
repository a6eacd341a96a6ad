"""
Core types and utilities for atomicswap.
"""

import hashlib
import hmac
import secrets
from decimal import Decimal, InvalidOperation
from enum import Enum
from dataclasses import dataclass
from typing import Optional, Dict, Any

from Crypto.Hash import RIPEMD160

from .errors import InvalidParameter


class SwapState(Enum):
    """Lifecycle of one contract leg, as observed on-chain."""
    UNSTARTED = "unstarted"     # No contract yet
    INITIATED = "initiated"     # Contract built, funding tx not broadcast
    FUNDED = "funded"           # Funding output exists on-chain
    REDEEMED = "redeemed"       # Spent via the secret branch
    REFUNDED = "refunded"       # Spent via the locktime branch


@dataclass(frozen=True)
class ContractParams:
    """Parameters committed to by an HTLC contract."""
    recipient_hash: bytes   # HASH160 of the key that redeems with the secret
    refund_hash: bytes      # HASH160 of the key that refunds after locktime
    secret_hash: bytes
    locktime: int           # Absolute block height or unix timestamp


@dataclass
class AuditResult:
    """Read-only view of a contract and the output funding it."""
    contract_address: str
    recipient: str
    refund_address: str
    secret_hash: str
    locktime: int
    locked_amount: int      # sats
    funding_txid: str
    output_index: int
    well_formed: bool = True
    locktime_remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_address": self.contract_address,
            "recipient": self.recipient,
            "refund_address": self.refund_address,
            "secret_hash": self.secret_hash,
            "locktime": self.locktime,
            "locked_amount": self.locked_amount,
            "funding_txid": self.funding_txid,
            "output_index": self.output_index,
            "well_formed": self.well_formed,
            "locktime_remaining": self.locktime_remaining,
        }


# =============================================================================
# Hashing
# =============================================================================

def sha256(data: bytes) -> bytes:
    """SHA256 hash."""
    return hashlib.sha256(data).digest()


def ripemd160(data: bytes) -> bytes:
    """RIPEMD160 hash (pycryptodome, OpenSSL 3 may not ship it)."""
    return RIPEMD160.new(data).digest()


def hash160(data: bytes) -> bytes:
    """HASH160 = RIPEMD160(SHA256(data))."""
    return ripemd160(sha256(data))


# =============================================================================
# Secrets
# =============================================================================

SECRET_SIZE = 32


def generate_secret() -> bytes:
    """
    Generate a random 32-byte swap secret.

    Never retried: if the OS random source is unavailable the error
    propagates and the command fails.
    """
    return secrets.token_bytes(SECRET_SIZE)


def hash_secret(secret: bytes, profile=None) -> bytes:
    """Hash a secret with the profile's hash-lock function (SHA256 by default)."""
    if profile is None:
        return sha256(secret)
    return profile.hash(secret)


def verify_secret(secret: bytes, secret_hash: bytes, profile=None) -> bool:
    """
    Check that hash(secret) == secret_hash.

    Comparison is constant time. Secrets of the wrong size never verify,
    since the contract's OP_SIZE check would reject them on-chain.
    """
    if len(secret) != SECRET_SIZE:
        return False
    return hmac.compare_digest(hash_secret(secret, profile), secret_hash)


def parse_hex(value: str, name: str, size: Optional[int] = None) -> bytes:
    """Decode a hex command argument, optionally checking its byte length."""
    try:
        data = bytes.fromhex(value)
    except (ValueError, TypeError):
        raise InvalidParameter(f"{name} is not valid hex") from None
    if size is not None and len(data) != size:
        raise InvalidParameter(f"{name} has wrong length", f"{size} bytes", f"{len(data)} bytes")
    return data


# =============================================================================
# Amounts
# =============================================================================

COIN = 100_000_000


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to coin units."""
    return Decimal(sats) / COIN


def btc_to_sats(amount) -> int:
    """
    Convert a decimal coin amount ("1.5", Decimal, int) to satoshis.

    Rejects non-positive amounts and sub-satoshi precision.
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidParameter(f"invalid amount {amount!r}") from None
    if not value.is_finite() or value <= 0:
        raise InvalidParameter(f"amount must be positive, got {amount}")
    sats = value * COIN
    if sats != sats.to_integral_value():
        raise InvalidParameter(f"amount {amount} has more than 8 decimals")
    return int(sats)


# =============================================================================
# Constants
# =============================================================================

DUST_THRESHOLD = 546        # sats
DEFAULT_FEE_RATE = 2        # sat/vB
DEFAULT_RPC_TIMEOUT = 10.0  # seconds per command
