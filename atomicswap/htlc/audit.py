"""
Contract auditing.

Before funding the second leg, the participant audits the initiator's
contract and funding transaction; before redeeming, the initiator audits
the participant's. The audit is the only defence against a counterpart
handing over a malformed contract, a contract with a different secret hash
or locktime than agreed, or a funding transaction paying some other
address.
"""

import hmac
import logging
from typing import Optional, Tuple

from bitcoin.core import CTransaction, CTxOut, b2lx
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError

from ..core import AuditResult
from ..chains.profiles import ChainProfile, SHA256_PROFILE
from ..errors import AddressMismatch, AmountMismatch, SecretHashMismatch
from .contract import Contract, parse_contract, check_locktime

log = logging.getLogger(__name__)


def _output_address(txout: CTxOut) -> str:
    try:
        return str(CBitcoinAddress.from_scriptPubKey(txout.scriptPubKey))
    except CBitcoinAddressError:
        return txout.scriptPubKey.hex()


def find_contract_output(contract: Contract, funding_tx: CTransaction) -> Tuple[int, int]:
    """
    Locate the output of funding_tx that pays the contract.

    Returns:
        (output index, value in sats)
    """
    script_pubkey = contract.script_pubkey
    for index, txout in enumerate(funding_tx.vout):
        if txout.scriptPubKey == script_pubkey:
            return index, txout.nValue

    paid = ", ".join(_output_address(txout) for txout in funding_tx.vout) or "nothing"
    raise AddressMismatch(
        f"transaction {b2lx(funding_tx.GetTxid())} does not pay the contract",
        expected=contract.address, observed=paid,
    )


def audit_contract(contract_script: bytes, funding_tx: CTransaction,
                   now: Optional[int] = None,
                   expected_amount: Optional[int] = None,
                   expected_secret_hash: Optional[bytes] = None,
                   profile: ChainProfile = SHA256_PROFILE) -> AuditResult:
    """
    Verify a contract and the transaction funding it.

    Args:
        contract_script: Serialized contract (witness script)
        funding_tx: Transaction claimed to fund the contract
        now: Current chain time; when given, the locktime must lie ahead
            of it and within the profile's horizon
        expected_amount: Minimum value the contract output must lock (sats)
        expected_secret_hash: Hash the contract must commit to
        profile: Chain profile

    Returns:
        AuditResult
    """
    contract = parse_contract(contract_script, profile)

    if expected_secret_hash is not None and not hmac.compare_digest(
            contract.secret_hash, expected_secret_hash):
        raise SecretHashMismatch(
            "contract commits to a different secret hash",
            expected=expected_secret_hash.hex(), observed=contract.secret_hash.hex(),
        )

    index, value = find_contract_output(contract, funding_tx)
    if value <= 0:
        raise AmountMismatch("contract output locks no value", expected="> 0", observed=value)
    if expected_amount is not None and value < expected_amount:
        raise AmountMismatch(
            "contract output locks less than the agreed amount",
            expected=expected_amount, observed=value,
        )

    remaining = None
    if now is not None:
        check_locktime(contract.locktime, now, profile)
        remaining = contract.locktime - now

    txid = b2lx(funding_tx.GetTxid())
    log.info(f"Audited contract {contract.address}: {value} sats in {txid}:{index}")

    return AuditResult(
        contract_address=contract.address,
        recipient=contract.recipient_address,
        refund_address=contract.refund_address,
        secret_hash=contract.secret_hash.hex(),
        locktime=contract.locktime,
        locked_amount=value,
        funding_txid=txid,
        output_index=index,
        well_formed=True,
        locktime_remaining=remaining,
    )
