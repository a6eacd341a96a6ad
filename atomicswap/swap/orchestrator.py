"""
Swap orchestration for atomicswap.

Each command is one independent state transition of one leg. Nothing is
kept between invocations: the caller saves the secret, contract and
transactions printed by one command and passes them back to the next.

There are two directions the swap can run, as the initiator can be on
either chain. This tool only builds the transactions for this chain's leg;
the counterpart tool handles the other one. Example with this chain as the
second leg:

    A initiates on the other chain, publishing H = hash(S)
    B participates here with H, locktime earlier than A's
    A audits B's contract, then redeems it here, revealing S
    B extracts S from A's redeem transaction and redeems on the other chain

and with this chain as the first leg:

    A initiates here
    B audits, then participates on the other chain with H
    A redeems there, revealing S
    B extracts S and redeems A's contract here

The initiator's locktime must be later than the participant's so the
participant, who moves second, always has time to redeem after learning S.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from bitcoin import SelectParams
from bitcoin.core import CTransaction
from bitcoin.core.serialize import SerializationError

from ..core import (
    AuditResult, SwapState, generate_secret, hash_secret, parse_hex,
    SECRET_SIZE, DEFAULT_FEE_RATE, DEFAULT_RPC_TIMEOUT,
)
from ..chains.btc import Deadline
from ..chains.profiles import ChainProfile, get_profile
from ..errors import InvalidParameter, UnsafeLocktime, SigningError
from ..htlc.audit import audit_contract
from ..htlc.contract import Contract, build_contract, parse_contract
from ..htlc.extract import extract_secret
from ..htlc.spend import (
    SpendResult, build_redeem_tx, build_refund_tx, build_presigned_refund_tx,
)
from .state import SwapStatus, observe

log = logging.getLogger(__name__)

NETWORKS = ("mainnet", "testnet", "signet", "regtest")

TXID_HEX_LEN = 64


@dataclass
class SwapConfig:
    """Orchestrator configuration, built by the CLI from its flags."""
    network: str = "mainnet"
    profile: str = "sha256"
    fee_rate: int = DEFAULT_FEE_RATE            # sat/vB
    rpc_timeout: float = DEFAULT_RPC_TIMEOUT    # seconds per command

    # Lock durations in the profile's locktime units; None = profile default
    initiate_lock: Optional[int] = None
    participate_lock: Optional[int] = None

    @property
    def chain_profile(self) -> ChainProfile:
        return get_profile(self.profile)


@dataclass
class LegResult:
    """Outcome of one command on one contract leg."""
    contract: Contract
    status: SwapStatus = field(default_factory=SwapStatus)
    contract_tx: Optional[CTransaction] = None
    contract_fee: int = 0
    amount: int = 0
    secret: Optional[bytes] = None
    spend: Optional[SpendResult] = None     # redeem or refund
    refund: Optional[SpendResult] = None    # refund kept by the funder
    audit: Optional[AuditResult] = None


def select_network(network: str):
    """Select python-bitcoinlib chain params (address encodings)."""
    if network not in NETWORKS:
        raise InvalidParameter(f"unknown network {network!r}, choose one of {', '.join(NETWORKS)}")
    SelectParams(network)


class SwapOrchestrator:
    """
    Runs the swap commands for this chain's leg.

    Args:
        config: SwapConfig
        chain: Chain RPC client (BTCClient or compatible)
        signer: Signing service (KeySigner, NodeWalletSigner)
    """

    def __init__(self, config: SwapConfig, chain, signer):
        self.config = config
        self.chain = chain
        self.signer = signer
        self.profile = config.chain_profile
        select_network(config.network)

    def _deadline(self) -> Deadline:
        return Deadline(self.config.rpc_timeout)

    def _chain_time(self, deadline: Deadline) -> int:
        block = self.chain.get_latest_block(timeout=deadline.remaining())
        now = self.profile.chain_time(block)
        log.debug(f"Chain tip {block.height} {block.hash}, chain time {now}")
        return now

    def load_transaction(self, value: str, deadline: Optional[Deadline] = None) -> CTransaction:
        """Deserialize a raw transaction, or fetch it when given a txid."""
        if len(value) == TXID_HEX_LEN:
            parse_hex(value, "txid")
            deadline = deadline or self._deadline()
            return self.chain.get_transaction(value, timeout=deadline.remaining())
        raw = parse_hex(value, "transaction")
        try:
            return CTransaction.deserialize(raw)
        except (SerializationError, ValueError) as e:
            raise InvalidParameter(f"cannot decode transaction: {e}") from None

    def load_contract(self, value: str) -> Contract:
        return parse_contract(parse_hex(value, "contract"), self.profile)

    def _fund(self, contract: Contract, amount: int, status: SwapStatus,
              deadline: Deadline, secret: Optional[bytes] = None) -> LegResult:
        contract_tx, fee = self.chain.fund_output(
            contract.address, amount, self.config.fee_rate, deadline=deadline
        )
        result = LegResult(contract, status, contract_tx, fee, amount, secret=secret)
        try:
            result.refund = build_presigned_refund_tx(
                contract, contract_tx, self.signer, self.config.fee_rate, deadline
            )
        except SigningError as e:
            log.warning(f"Refund transaction not built, run refund after locktime: {e}")
        return result

    # =========================================================================
    # Commands
    # =========================================================================

    def initiate(self, participant_address: str, amount: int) -> LegResult:
        """
        Start a swap: new secret, contract redeemable by the participant.

        The contract transaction is built and signed but not broadcast.
        """
        deadline = self._deadline()
        status = SwapStatus()

        secret = generate_secret()
        secret_hash = hash_secret(secret, self.profile)
        now = self._chain_time(deadline)
        refund_address = self.chain.get_new_address(timeout=deadline.remaining())

        lock = self.config.initiate_lock or self.profile.initiate_lock
        contract = build_contract(
            participant_address, refund_address, secret_hash, now + lock, now, self.profile
        )
        status.advance(SwapState.INITIATED)

        log.info(f"Initiated swap, contract {contract.address}, amount {amount}")
        return self._fund(contract, amount, status, deadline, secret=secret)

    def participate(self, initiator_address: str, amount: int, secret_hash: bytes,
                    initiator_locktime: Optional[int] = None) -> LegResult:
        """
        Join a swap: contract redeemable by the initiator with the same hash.

        When the initiator's locktime is known it must be strictly later than
        this contract's.
        """
        deadline = self._deadline()
        status = SwapStatus()

        now = self._chain_time(deadline)
        lock = self.config.participate_lock or self.profile.participate_lock
        locktime = now + lock

        if initiator_locktime is not None:
            if self.profile.locktime_kind(initiator_locktime) != self.profile.locktime_semantics:
                log.warning(
                    f"Initiator locktime {initiator_locktime} uses different units, "
                    f"cannot compare with {locktime}"
                )
            elif locktime >= initiator_locktime:
                raise UnsafeLocktime(
                    "participant locktime must be earlier than the initiator's",
                    expected=f"< {initiator_locktime}", observed=locktime,
                )

        refund_address = self.chain.get_new_address(timeout=deadline.remaining())
        contract = build_contract(
            initiator_address, refund_address, secret_hash, locktime, now, self.profile
        )
        status.advance(SwapState.INITIATED)

        log.info(f"Participated in swap, contract {contract.address}, amount {amount}")
        return self._fund(contract, amount, status, deadline)

    def redeem(self, contract_hex: str, contract_tx: str, secret_hex: str) -> LegResult:
        """Redeem a funded contract with the secret."""
        deadline = self._deadline()
        contract = self.load_contract(contract_hex)
        funding_tx = self.load_transaction(contract_tx, deadline)
        secret = parse_hex(secret_hex, "secret", SECRET_SIZE)

        status = observe(contract, funding_tx)
        spend = build_redeem_tx(
            contract, funding_tx, secret, self.signer, self.config.fee_rate, deadline
        )
        status.advance(SwapState.REDEEMED)
        return LegResult(contract, status, funding_tx, spend=spend, secret=secret)

    def refund(self, contract_hex: str, contract_tx: str) -> LegResult:
        """Refund a funded contract once its locktime has passed."""
        deadline = self._deadline()
        contract = self.load_contract(contract_hex)
        funding_tx = self.load_transaction(contract_tx, deadline)

        status = observe(contract, funding_tx)
        now = self._chain_time(deadline)
        spend = build_refund_tx(
            contract, funding_tx, now, self.signer, self.config.fee_rate, deadline
        )
        status.advance(SwapState.REFUNDED)
        return LegResult(contract, status, funding_tx, spend=spend)

    def audit_contract(self, contract_hex: str, contract_tx: str,
                       expected_amount: Optional[int] = None,
                       expected_secret_hash: Optional[bytes] = None) -> LegResult:
        """Check a counterpart's contract and funding transaction. No side effects."""
        deadline = self._deadline()
        contract_script = parse_hex(contract_hex, "contract")
        funding_tx = self.load_transaction(contract_tx, deadline)
        now = self._chain_time(deadline)

        audit = audit_contract(
            contract_script, funding_tx, now=now,
            expected_amount=expected_amount,
            expected_secret_hash=expected_secret_hash,
            profile=self.profile,
        )
        contract = parse_contract(contract_script, self.profile)
        status = observe(contract, funding_tx).mark_audited()
        return LegResult(contract, status, funding_tx, amount=audit.locked_amount, audit=audit)

    def extract_secret(self, redemption_tx: str, secret_hash_hex: str) -> bytes:
        """Read the secret from the counterpart's redeem transaction."""
        secret_hash = parse_hex(secret_hash_hex, "secret hash", self.profile.secret_hash_size)
        tx = self.load_transaction(redemption_tx)
        return extract_secret(tx, secret_hash, self.profile)

    def publish(self, tx: CTransaction) -> str:
        """Broadcast a transaction built by one of the commands."""
        return self.chain.broadcast(tx, timeout=self._deadline().remaining())
