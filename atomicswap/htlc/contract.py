"""
HTLC contract construction and parsing.

Contracts are P2WSH witness scripts built from a chain profile's template:

    OP_IF
        OP_SIZE 32 OP_EQUALVERIFY
        OP_SHA256 <secret_hash> OP_EQUALVERIFY
        OP_DUP OP_HASH160 <recipient_pkh>
    OP_ELSE
        <locktime> OP_CHECKLOCKTIMEVERIFY OP_DROP
        OP_DUP OP_HASH160 <refund_pkh>
    OP_ENDIF
    OP_EQUALVERIFY OP_CHECKSIG

To redeem (with secret):
    <signature> <pubkey> <secret> 0x01 <contract>

To refund (after locktime):
    <signature> <pubkey> <empty> <contract>

Building is deterministic: the same parameters always give the same script,
and parsing only accepts scripts that are byte-identical to the canonical
build of the parameters they carry.
"""

import logging
from dataclasses import dataclass

from bitcoin.base58 import Base58Error
from bitcoin.bech32 import Bech32Error
from bitcoin.core.script import (
    CScript, CScriptOp, CScriptInvalidError,
    OP_0, OP_1, OP_16, OP_IF, OP_NOTIF, OP_ELSE, OP_ENDIF,
    OP_SHA256, OP_RIPEMD160, OP_HASH160, OP_HASH256, OP_SHA1,
)
from bitcoin.wallet import (
    CBitcoinAddress, CBitcoinAddressError,
    P2PKHBitcoinAddress, P2WPKHBitcoinAddress, P2WSHBitcoinAddress,
)

from ..core import ContractParams, sha256
from ..chains.profiles import (
    ChainProfile, SHA256_PROFILE, Slot, OP_CHECKLOCKTIMEVERIFY,
    SECRET_HASH, RECIPIENT_HASH, REFUND_HASH, LOCKTIME,
)
from ..errors import InvalidParameter, UnsafeLocktime, MalformedContract

log = logging.getLogger(__name__)

MAX_LOCKTIME = 0xffffffff

_HASH_OPS = (OP_SHA256, OP_RIPEMD160, OP_HASH160, OP_HASH256, OP_SHA1)
_BRANCH_OPS = (OP_IF, OP_NOTIF, OP_ELSE, OP_ENDIF)


# =============================================================================
# Addresses
# =============================================================================

def address_to_pubkey_hash(address: str) -> bytes:
    """
    Return the HASH160 pubkey hash behind a P2PKH or P2WPKH address.

    Addresses are checked against the currently selected network params.
    """
    try:
        addr = CBitcoinAddress(address)
    except (CBitcoinAddressError, Base58Error, Bech32Error, ValueError) as e:
        raise InvalidParameter(f"invalid address {address!r}: {e}") from None
    if not isinstance(addr, (P2PKHBitcoinAddress, P2WPKHBitcoinAddress)):
        raise InvalidParameter(
            f"address {address} is not a single-key address",
            "P2PKH or P2WPKH", type(addr).__name__,
        )
    return bytes(addr)


def pubkey_hash_to_address(pubkey_hash: bytes) -> str:
    """P2WPKH address paying to a pubkey hash."""
    return str(P2WPKHBitcoinAddress.from_scriptPubKey(CScript([OP_0, pubkey_hash])))


def p2wsh_script_pubkey(script: bytes) -> CScript:
    """scriptPubKey OP_0 <SHA256(script)>."""
    return CScript([OP_0, sha256(bytes(script))])


def contract_address(script: bytes) -> str:
    """P2WSH address of a contract script."""
    return str(P2WSHBitcoinAddress.from_scriptPubKey(p2wsh_script_pubkey(script)))


# =============================================================================
# Contract
# =============================================================================

@dataclass(frozen=True)
class Contract:
    """An HTLC witness script together with its decoded parameters."""
    script: bytes
    params: ContractParams
    profile: ChainProfile = SHA256_PROFILE

    @property
    def address(self) -> str:
        return contract_address(self.script)

    @property
    def script_pubkey(self) -> CScript:
        return p2wsh_script_pubkey(self.script)

    @property
    def recipient_address(self) -> str:
        return pubkey_hash_to_address(self.params.recipient_hash)

    @property
    def refund_address(self) -> str:
        return pubkey_hash_to_address(self.params.refund_hash)

    @property
    def secret_hash(self) -> bytes:
        return self.params.secret_hash

    @property
    def locktime(self) -> int:
        return self.params.locktime


def build_script(params: ContractParams, profile: ChainProfile = SHA256_PROFILE) -> CScript:
    """Fill the profile's template with contract parameters."""
    values = {
        SECRET_HASH: params.secret_hash,
        RECIPIENT_HASH: params.recipient_hash,
        REFUND_HASH: params.refund_hash,
        LOCKTIME: params.locktime,
    }
    return CScript([
        values[token.name] if isinstance(token, Slot) else token
        for token in profile.script_template()
    ])


def check_locktime(locktime: int, now: int, profile: ChainProfile,
                   min_margin: int = 1) -> None:
    """
    Check a locktime against the current chain time.

    Raises UnsafeLocktime unless the locktime has the profile's kind
    (height or timestamp), is at least min_margin ahead of now and no more
    than the profile's horizon ahead.
    """
    kind = profile.locktime_kind(locktime)
    if kind != profile.locktime_semantics:
        raise UnsafeLocktime(
            f"locktime {locktime} is a {kind}", profile.locktime_semantics, kind
        )
    if locktime - now < min_margin:
        raise UnsafeLocktime(
            f"locktime {locktime} is not far enough in the future",
            f">= {now + min_margin}", locktime,
        )
    if locktime - now > profile.max_locktime_horizon:
        raise UnsafeLocktime(
            f"locktime {locktime} is too far in the future",
            f"<= {now + profile.max_locktime_horizon}", locktime,
        )


def build_contract(recipient: str, refund_address: str, secret_hash: bytes,
                   locktime: int, now: int,
                   profile: ChainProfile = SHA256_PROFILE) -> Contract:
    """
    Build an HTLC contract.

    Args:
        recipient: Address that can redeem with the secret
        refund_address: Address that can refund after locktime
        secret_hash: Hash of the secret (profile.secret_hash_size bytes)
        locktime: Absolute height or unix timestamp
        now: Current chain time, in the profile's locktime units
        profile: Chain profile

    Returns:
        Contract (script, params, profile)
    """
    recipient_hash = address_to_pubkey_hash(recipient)
    refund_hash = address_to_pubkey_hash(refund_address)
    if recipient_hash == refund_hash:
        raise InvalidParameter("recipient and refund address are the same key")

    if len(secret_hash) != profile.secret_hash_size:
        raise InvalidParameter(
            f"{profile.hash_algorithm} secret hash has wrong length",
            f"{profile.secret_hash_size} bytes", f"{len(secret_hash)} bytes",
        )
    if not 0 < locktime <= MAX_LOCKTIME:
        raise InvalidParameter(f"locktime {locktime} out of range")
    check_locktime(locktime, now, profile, min_margin=profile.min_locktime_margin)

    params = ContractParams(
        recipient_hash=recipient_hash,
        refund_hash=refund_hash,
        secret_hash=bytes(secret_hash),
        locktime=locktime,
    )
    contract = Contract(bytes(build_script(params, profile)), params, profile)
    log.info(f"Built contract {contract.address}, locktime={locktime}")
    return contract


# =============================================================================
# Parsing
# =============================================================================

def _describe(opcode: int, data) -> str:
    if data is None:
        return repr(CScriptOp(opcode))
    return f"push of {len(data)} bytes"


def _decode_script_num(opcode: int, data) -> int:
    if data is None:
        if OP_1 <= opcode <= OP_16:
            return opcode - OP_1 + 1
        raise ValueError(f"{_describe(opcode, data)} is not a number")
    if len(data) > 5:
        raise ValueError("script number longer than 5 bytes")
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def _mismatch_message(expected: CScriptOp, opcode: int, profile: ChainProfile) -> str:
    if expected == profile.hash_opcode and opcode in _HASH_OPS:
        return "wrong hash-lock opcode"
    if expected == OP_CHECKLOCKTIMEVERIFY:
        return "wrong locktime opcode"
    if expected in _BRANCH_OPS or opcode in _BRANCH_OPS:
        return "unexpected branch structure"
    return "unexpected opcode"


def parse_contract(script: bytes, profile: ChainProfile = SHA256_PROFILE) -> Contract:
    """
    Decode a contract script and recover its parameters.

    Raises MalformedContract naming the first token that deviates from the
    profile's template.
    """
    script = CScript(bytes(script))
    try:
        tokens = list(script.raw_iter())
    except CScriptInvalidError as e:
        raise MalformedContract(f"undecodable script: {e}") from None

    template = profile.script_template()
    values = {}
    for i, expected in enumerate(template):
        if i >= len(tokens):
            raise MalformedContract(
                "script truncated", i, expected=f"{len(template)} tokens",
                observed=f"{len(tokens)} tokens",
            )
        opcode, data, _ = tokens[i]

        if isinstance(expected, Slot):
            if expected.size:
                if data is None or len(data) != expected.size:
                    raise MalformedContract(
                        f"bad {expected.name}", i,
                        expected=f"push of {expected.size} bytes",
                        observed=_describe(opcode, data),
                    )
                values[expected.name] = bytes(data)
            else:
                try:
                    values[expected.name] = _decode_script_num(opcode, data)
                except ValueError as e:
                    raise MalformedContract(f"bad {expected.name}: {e}", i) from None
        elif isinstance(expected, CScriptOp):
            if data is not None or opcode != expected:
                raise MalformedContract(
                    _mismatch_message(expected, opcode, profile), i,
                    expected=repr(expected), observed=_describe(opcode, data),
                )
        else:
            try:
                constant = _decode_script_num(opcode, data)
            except ValueError:
                constant = None
            if data is None or constant != expected:
                raise MalformedContract(
                    "unexpected constant", i,
                    expected=expected, observed=_describe(opcode, data),
                )

    if len(tokens) > len(template):
        opcode, data, _ = tokens[len(template)]
        raise MalformedContract(
            "trailing script data", len(template),
            expected="end of script", observed=_describe(opcode, data),
        )

    locktime = values[LOCKTIME]
    if not 0 < locktime <= MAX_LOCKTIME:
        raise MalformedContract(f"locktime {locktime} out of range")

    params = ContractParams(
        recipient_hash=values[RECIPIENT_HASH],
        refund_hash=values[REFUND_HASH],
        secret_hash=values[SECRET_HASH],
        locktime=locktime,
    )
    if bytes(build_script(params, profile)) != bytes(script):
        raise MalformedContract("non-canonical script encoding")

    return Contract(bytes(script), params, profile)
