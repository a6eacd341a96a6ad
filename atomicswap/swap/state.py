"""
Swap leg state machine.

    UNSTARTED -> INITIATED -> FUNDED -> REDEEMED
                                     -> REFUNDED

Nothing is persisted: the state of a leg is rebuilt from what the caller
shows us of the chain (the contract, its funding transaction and,
optionally, the transaction spending it). `audited` is orthogonal and set
once the contract passed the audit checks.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from bitcoin.core import CTransaction, b2lx

from ..core import SwapState
from ..errors import InvalidTransition
from ..htlc.audit import find_contract_output
from ..htlc.contract import Contract
from ..htlc.spend import witness_branch, REDEEM, REFUND

log = logging.getLogger(__name__)

TRANSITIONS = {
    SwapState.UNSTARTED: {SwapState.INITIATED},
    SwapState.INITIATED: {SwapState.FUNDED},
    SwapState.FUNDED: {SwapState.REDEEMED, SwapState.REFUNDED},
    SwapState.REDEEMED: set(),
    SwapState.REFUNDED: set(),
}


@dataclass
class SwapStatus:
    """State of one contract leg."""
    state: SwapState = SwapState.UNSTARTED
    audited: bool = False

    @property
    def is_final(self) -> bool:
        return not TRANSITIONS[self.state]

    def can_advance(self, new_state: SwapState) -> bool:
        return new_state in TRANSITIONS[self.state]

    def advance(self, new_state: SwapState) -> "SwapStatus":
        if not self.can_advance(new_state):
            raise InvalidTransition(
                f"swap cannot move from {self.state.value} to {new_state.value}"
            )
        log.debug(f"Swap state {self.state.value} -> {new_state.value}")
        self.state = new_state
        return self

    def mark_audited(self) -> "SwapStatus":
        if self.state in (SwapState.UNSTARTED, SwapState.INITIATED):
            raise InvalidTransition("only a funded contract can be audited")
        self.audited = True
        return self


def classify_spend(contract: Contract, funding_tx: CTransaction,
                   spend_tx: CTransaction) -> SwapState:
    """
    Tell whether spend_tx redeemed or refunded the contract output.

    Raises InvalidTransition when spend_tx does not spend that output.
    """
    index, _ = find_contract_output(contract, funding_tx)
    funding_txid = funding_tx.GetTxid()
    witnesses = spend_tx.wit.vtxinwit

    for i, txin in enumerate(spend_tx.vin):
        if txin.prevout.hash != funding_txid or txin.prevout.n != index:
            continue
        stack = witnesses[i].scriptWitness.stack if i < len(witnesses) else []
        branch = witness_branch(stack, contract.script)
        if branch == REDEEM:
            return SwapState.REDEEMED
        if branch == REFUND:
            return SwapState.REFUNDED
        raise InvalidTransition(
            f"input {i} of {b2lx(spend_tx.GetTxid())} spends the contract "
            f"with an unrecognised witness"
        )

    raise InvalidTransition(
        f"transaction {b2lx(spend_tx.GetTxid())} does not spend contract output "
        f"{b2lx(funding_txid)}:{index}"
    )


def observe(contract: Contract, funding_tx: Optional[CTransaction] = None,
            spend_tx: Optional[CTransaction] = None) -> SwapStatus:
    """Rebuild a leg's status from the chain evidence at hand."""
    status = SwapStatus().advance(SwapState.INITIATED)
    if funding_tx is None:
        return status

    find_contract_output(contract, funding_tx)
    status.advance(SwapState.FUNDED)
    if spend_tx is not None:
        status.advance(classify_spend(contract, funding_tx, spend_tx))
    return status
