"""
Redeem and refund transactions for HTLC contracts.

Both spend the single contract output of the funding transaction to a
P2WPKH output, minus a fee estimated from the transaction's virtual size.

Witness stack for redeem (IF branch):
    [0]: signature
    [1]: pubkey (HASH160 must equal recipient hash)
    [2]: secret (32 bytes)
    [3]: 0x01
    [4]: contract

Witness stack for refund (ELSE branch):
    [0]: signature
    [1]: pubkey (HASH160 must equal refund hash)
    [2]: empty
    [3]: contract

Refunds set nLockTime to the contract locktime and a non-final sequence so
OP_CHECKLOCKTIMEVERIFY passes.

Only one of the two can ever confirm for a given funding output; the chain
enforces that. These builders only guarantee the right branch is used and
that a redeem is never built with a wrong secret.
"""

import logging
from dataclasses import dataclass

from bitcoin.core import (
    CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, CTransaction,
    CTxWitness, CTxInWitness, CScriptWitness, b2x, b2lx,
)
from bitcoin.core.script import CScript, OP_0

from ..core import verify_secret, hash_secret, hash160, DUST_THRESHOLD, DEFAULT_FEE_RATE
from ..chains.profiles import TIMESTAMP
from ..errors import SecretMismatch, LocktimeNotElapsed, InvalidParameter, SigningError
from .audit import find_contract_output
from .contract import Contract, pubkey_hash_to_address

log = logging.getLogger(__name__)

SEQUENCE_FINAL = 0xffffffff
SEQUENCE_LOCKTIME = 0xfffffffe  # Enables nLockTime

# Upper bounds for witness items
SIGNATURE_SIZE = 73
PUBKEY_SIZE = 33


@dataclass
class SpendResult:
    """A signed redeem or refund transaction."""
    tx: CMutableTransaction
    fee: int                # sats
    value: int              # sats paid out
    payout_address: str

    @property
    def txid(self) -> str:
        return b2lx(self.tx.GetTxid())

    @property
    def hex(self) -> str:
        return b2x(self.tx.serialize())


def _compact_size_len(n: int) -> int:
    if n < 0xfd:
        return 1
    return 3 if n <= 0xffff else 5


def estimate_vsize(contract_script: bytes, redeem: bool) -> int:
    """Virtual size of a one-input, one-P2WPKH-output contract spend."""
    # version + vin count + outpoint/scriptSig/sequence + vout count + P2WPKH out + locktime
    base = 4 + 1 + 41 + 1 + 31 + 4
    items = [SIGNATURE_SIZE, PUBKEY_SIZE]
    items += [32, 1] if redeem else [0]
    items.append(len(contract_script))
    # marker + flag + item count + items
    witness = 2 + 1 + sum(_compact_size_len(n) + n for n in items)
    return base + (witness + 3) // 4


def _unsigned_spend(contract: Contract, funding_tx: CTransaction, payout_hash: bytes,
                    fee_rate: int, redeem: bool):
    index, value = find_contract_output(contract, funding_tx)

    fee = estimate_vsize(contract.script, redeem) * fee_rate
    out_value = value - fee
    if out_value < DUST_THRESHOLD:
        raise InvalidParameter(
            "output after fee is below dust threshold",
            expected=f">= {DUST_THRESHOLD}", observed=out_value,
        )

    if redeem:
        txin = CMutableTxIn(COutPoint(funding_tx.GetTxid(), index), nSequence=SEQUENCE_FINAL)
        locktime = 0
    else:
        txin = CMutableTxIn(COutPoint(funding_tx.GetTxid(), index), nSequence=SEQUENCE_LOCKTIME)
        locktime = contract.locktime

    txout = CMutableTxOut(out_value, CScript([OP_0, payout_hash]))
    tx = CMutableTransaction([txin], [txout], nLockTime=locktime, nVersion=2)
    return tx, value, fee, out_value


def _sign(tx: CMutableTransaction, contract: Contract, value: int, pubkey_hash: bytes,
          signer, deadline=None):
    signature, pubkey = signer.sign_input(
        tx, 0, contract.script, value, pubkey_hash, deadline=deadline
    )
    if hash160(pubkey) != pubkey_hash:
        raise SigningError(
            "signer returned a key the contract does not accept",
            expected=pubkey_hash.hex(), observed=hash160(pubkey).hex(),
        )
    return signature, pubkey


def build_redeem_tx(contract: Contract, funding_tx: CTransaction, secret: bytes,
                    signer, fee_rate: int = DEFAULT_FEE_RATE, deadline=None) -> SpendResult:
    """
    Spend the contract through its secret branch, paying the recipient.

    Args:
        contract: Parsed contract
        funding_tx: Transaction holding the contract output
        secret: 32-byte secret
        signer: Signing service holding the recipient key
        fee_rate: sat/vB
        deadline: Deadline for signer RPC calls, if the signer makes any

    Returns:
        SpendResult
    """
    if not verify_secret(secret, contract.secret_hash, contract.profile):
        raise SecretMismatch(
            "secret does not match the contract's secret hash",
            expected=contract.secret_hash.hex(),
            observed=hash_secret(secret, contract.profile).hex(),
        )

    recipient_hash = contract.params.recipient_hash
    tx, value, fee, out_value = _unsigned_spend(
        contract, funding_tx, recipient_hash, fee_rate, redeem=True
    )
    signature, pubkey = _sign(tx, contract, value, recipient_hash, signer, deadline)

    stack = [signature, pubkey, bytes(secret), b'\x01', contract.script]
    tx.wit = CTxWitness([CTxInWitness(CScriptWitness(stack))])

    result = SpendResult(tx, fee, out_value, pubkey_hash_to_address(recipient_hash))
    log.info(f"Built redeem transaction {result.txid} for {contract.address}, fee={fee}")
    return result


def _refund(contract: Contract, funding_tx: CTransaction, signer, fee_rate: int,
            deadline=None) -> SpendResult:
    refund_hash = contract.params.refund_hash
    tx, value, fee, out_value = _unsigned_spend(
        contract, funding_tx, refund_hash, fee_rate, redeem=False
    )
    signature, pubkey = _sign(tx, contract, value, refund_hash, signer, deadline)

    stack = [signature, pubkey, b'', contract.script]
    tx.wit = CTxWitness([CTxInWitness(CScriptWitness(stack))])

    result = SpendResult(tx, fee, out_value, pubkey_hash_to_address(refund_hash))
    log.info(f"Built refund transaction {result.txid} for {contract.address}, "
             f"locktime={contract.locktime}")
    return result


def build_refund_tx(contract: Contract, funding_tx: CTransaction, now: int,
                    signer, fee_rate: int = DEFAULT_FEE_RATE, deadline=None) -> SpendResult:
    """
    Spend the contract through its locktime branch, paying the refund address.

    For timestamp locktimes nodes apply BIP113: the transaction is final
    only once the median time past is strictly greater than nLockTime. At
    now == locktime the refund is built but will be rejected as non-final
    until the next block moves the median time past.

    Args:
        contract: Parsed contract
        funding_tx: Transaction holding the contract output
        now: Current chain time, in the contract's locktime units
        signer: Signing service holding the refund key
        fee_rate: sat/vB
        deadline: Deadline for signer RPC calls, if the signer makes any

    Returns:
        SpendResult
    """
    if now < contract.locktime:
        raise LocktimeNotElapsed(
            f"contract locktime has not elapsed, wait {contract.locktime - now} more",
            expected=f">= {contract.locktime}", observed=now,
        )
    if now == contract.locktime and contract.profile.locktime_semantics == TIMESTAMP:
        log.warning(f"Median time past equals locktime {contract.locktime}; nodes accept "
                    f"the refund only after the next block")

    return _refund(contract, funding_tx, signer, fee_rate, deadline)


def build_presigned_refund_tx(contract: Contract, funding_tx: CTransaction, signer,
                              fee_rate: int = DEFAULT_FEE_RATE, deadline=None) -> SpendResult:
    """
    Refund transaction built at contract creation, to be kept by the funder.

    It can only be mined once the locktime passes.
    """
    return _refund(contract, funding_tx, signer, fee_rate, deadline)


REDEEM = "redeem"
REFUND = "refund"


def witness_branch(stack, contract_script: bytes = None):
    """
    Which contract branch a witness stack spends through.

    Returns REDEEM, REFUND, or None when the stack does not have the shape
    of a contract spend (or spends a different script than contract_script).
    """
    stack = [bytes(item) for item in stack]
    if contract_script is not None and (not stack or stack[-1] != bytes(contract_script)):
        return None
    if len(stack) == 5 and stack[3] == b'\x01':
        return REDEEM
    if len(stack) == 4 and stack[2] == b'':
        return REFUND
    return None
