"""
atomicswap - Cross-chain atomic swaps with Bitcoin HTLCs

Builds, audits, redeems and refunds the hash-time-locked contract of one
chain's leg of a swap. The other leg is handled by the counterpart tool on
the other chain; the two are tied together by the secret hash.

Usage:
    from atomicswap import BTCClient, BTCConfig, KeySigner
    from atomicswap import SwapOrchestrator, SwapConfig

    client = BTCClient(BTCConfig(network="testnet", rpc_user="u", rpc_password="p"))
    swap = SwapOrchestrator(SwapConfig(network="testnet"), client, KeySigner([wif]))

    leg = swap.initiate(participant_address, btc_to_sats("0.01"))
    swap.publish(leg.contract_tx)
"""

from .core import (
    SwapState,
    ContractParams,
    AuditResult,
    generate_secret,
    hash_secret,
    verify_secret,
    btc_to_sats,
    sats_to_btc,
)
from .errors import AtomicSwapError

from .chains.btc import BTCClient, BTCConfig
from .chains.profiles import ChainProfile, get_profile
from .chains.wallet import KeySigner, NodeWalletSigner

from .htlc.contract import Contract, build_contract, parse_contract
from .htlc.audit import audit_contract
from .htlc.spend import build_redeem_tx, build_refund_tx
from .htlc.extract import extract_secret

from .swap.orchestrator import SwapOrchestrator, SwapConfig
from .swap.state import SwapStatus

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapState",
    "ContractParams",
    "AuditResult",
    "AtomicSwapError",
    # Secrets and amounts
    "generate_secret",
    "hash_secret",
    "verify_secret",
    "btc_to_sats",
    "sats_to_btc",
    # Chain
    "BTCClient",
    "BTCConfig",
    "ChainProfile",
    "get_profile",
    "KeySigner",
    "NodeWalletSigner",
    # HTLC
    "Contract",
    "build_contract",
    "parse_contract",
    "audit_contract",
    "build_redeem_tx",
    "build_refund_tx",
    "extract_secret",
    # Swap
    "SwapOrchestrator",
    "SwapConfig",
    "SwapStatus",
]
