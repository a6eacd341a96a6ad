"""
Secret extraction from redeem transactions.

Redeeming a contract puts the secret on-chain in the witness. The party
on the other leg reads it back here and uses it to redeem their own
contract, which is what makes the swap atomic.
"""

import logging

from bitcoin.core import CTransaction, b2lx
from bitcoin.core.script import CScriptInvalidError

from ..core import verify_secret
from ..chains.profiles import ChainProfile, SHA256_PROFILE
from ..errors import SecretNotFound, InvalidParameter
from .spend import witness_branch, REFUND

log = logging.getLogger(__name__)


def _script_sig_pushes(txin):
    try:
        return [data for _, data, _ in txin.scriptSig.raw_iter() if data]
    except CScriptInvalidError:
        # Unparseable scriptSig reveals nothing
        return []


def extract_secret(spend_tx: CTransaction, secret_hash: bytes,
                   profile: ChainProfile = SHA256_PROFILE) -> bytes:
    """
    Find the secret revealed by a transaction.

    Scans the witness stack and scriptSig pushes of every input for a value
    hashing to secret_hash.

    Args:
        spend_tx: Transaction observed on-chain
        secret_hash: Hash the secret must match
        profile: Chain profile (hash function)

    Returns:
        The 32-byte secret
    """
    if len(secret_hash) != profile.secret_hash_size:
        raise InvalidParameter(
            f"{profile.hash_algorithm} secret hash has wrong length",
            f"{profile.secret_hash_size} bytes", f"{len(secret_hash)} bytes",
        )

    witnesses = spend_tx.wit.vtxinwit
    refunds = 0
    for i, txin in enumerate(spend_tx.vin):
        stack = list(witnesses[i].scriptWitness.stack) if i < len(witnesses) else []
        for item in stack + _script_sig_pushes(txin):
            if verify_secret(bytes(item), secret_hash, profile):
                log.info(f"Secret found in input {i} of {b2lx(spend_tx.GetTxid())}")
                return bytes(item)
        if witness_branch(stack) == REFUND:
            refunds += 1

    txid = b2lx(spend_tx.GetTxid())
    if refunds:
        raise SecretNotFound(f"transaction {txid} spends the refund branch, no secret revealed")
    raise SecretNotFound(f"transaction {txid} reveals no secret for hash {secret_hash.hex()}")
