"""
Chain profiles for the HTLC contract.

A profile is the pluggable part of the contract: which hash-lock opcode
(and therefore which hash function and digest size) the script uses, how
locktimes are interpreted, and the script template itself. The counterpart
tool on the other chain must use the same hash function for the swap to be
atomic.

Template slots:
    SECRET_HASH     digest of the secret, profile.secret_hash_size bytes
    RECIPIENT_HASH  HASH160 of the recipient pubkey (redeem branch)
    REFUND_HASH     HASH160 of the refund pubkey (refund branch)
    LOCKTIME        absolute locktime, script number
"""

from dataclasses import dataclass
from typing import Callable, Tuple

from bitcoin.core.script import (
    OP_IF, OP_ELSE, OP_ENDIF, OP_SIZE, OP_EQUALVERIFY, OP_DUP, OP_DROP,
    OP_HASH160, OP_SHA256, OP_RIPEMD160, OP_CHECKSIG, OP_NOP2, CScriptOp,
)

from ..core import sha256, ripemd160, SECRET_SIZE
from ..errors import InvalidParameter

OP_CHECKLOCKTIMEVERIFY = OP_NOP2

# nLockTime values below this are block heights, above are unix timestamps
LOCKTIME_THRESHOLD = 500_000_000

TIMESTAMP = "timestamp"
HEIGHT = "height"


@dataclass(frozen=True)
class Slot:
    """Placeholder for a contract parameter inside a script template."""
    name: str
    size: int = 0  # 0 = script number


SECRET_HASH = "secret_hash"
RECIPIENT_HASH = "recipient_hash"
REFUND_HASH = "refund_hash"
LOCKTIME = "locktime"

PUBKEY_HASH_SIZE = 20


@dataclass(frozen=True)
class ChainProfile:
    """Hash algorithm, locktime semantics and script template of a contract."""
    name: str
    hash_algorithm: str
    hash_opcode: CScriptOp
    hash_func: Callable[[bytes], bytes]
    secret_hash_size: int
    locktime_semantics: str = TIMESTAMP

    # Safety bounds on locktimes, in units of locktime_semantics
    min_locktime_margin: int = 3600          # 1h
    max_locktime_horizon: int = 30 * 86400   # 30 days

    # Default lock durations for the two legs
    initiate_lock: int = 48 * 3600
    participate_lock: int = 24 * 3600

    def hash(self, data: bytes) -> bytes:
        return self.hash_func(data)

    def script_template(self) -> Tuple:
        return (
            OP_IF,
                OP_SIZE, SECRET_SIZE, OP_EQUALVERIFY,
                self.hash_opcode, Slot(SECRET_HASH, self.secret_hash_size), OP_EQUALVERIFY,
                OP_DUP, OP_HASH160, Slot(RECIPIENT_HASH, PUBKEY_HASH_SIZE),
            OP_ELSE,
                Slot(LOCKTIME), OP_CHECKLOCKTIMEVERIFY, OP_DROP,
                OP_DUP, OP_HASH160, Slot(REFUND_HASH, PUBKEY_HASH_SIZE),
            OP_ENDIF,
            OP_EQUALVERIFY, OP_CHECKSIG,
        )

    def locktime_kind(self, locktime: int) -> str:
        return TIMESTAMP if locktime >= LOCKTIME_THRESHOLD else HEIGHT

    def chain_time(self, block) -> int:
        """Current chain time comparable with this profile's locktimes.

        CHECKLOCKTIMEVERIFY compares timestamps against the median time
        past of the chain tip, and heights against the next block height.
        """
        if self.locktime_semantics == HEIGHT:
            return block.height
        return block.median_time


SHA256_PROFILE = ChainProfile(
    name="sha256",
    hash_algorithm="sha256",
    hash_opcode=OP_SHA256,
    hash_func=sha256,
    secret_hash_size=32,
)

# Pairs with chains whose counterpart tool locks on OP_RIPEMD160
RIPEMD160_PROFILE = ChainProfile(
    name="ripemd160",
    hash_algorithm="ripemd160",
    hash_opcode=OP_RIPEMD160,
    hash_func=ripemd160,
    secret_hash_size=20,
)

# Block-height locktimes, ~10 min blocks
SHA256_HEIGHT_PROFILE = ChainProfile(
    name="sha256-height",
    hash_algorithm="sha256",
    hash_opcode=OP_SHA256,
    hash_func=sha256,
    secret_hash_size=32,
    locktime_semantics=HEIGHT,
    min_locktime_margin=6,
    max_locktime_horizon=4320,
    initiate_lock=288,
    participate_lock=144,
)

PROFILES = {
    p.name: p for p in (SHA256_PROFILE, RIPEMD160_PROFILE, SHA256_HEIGHT_PROFILE)
}


def get_profile(name: str) -> ChainProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise InvalidParameter(
            f"unknown chain profile {name!r}, choose one of {', '.join(sorted(PROFILES))}"
        ) from None
