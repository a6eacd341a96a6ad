"""
HTLC (Hash Time-Locked Contract) for Bitcoin (P2WSH).

HTLCs make the swap trustless:
1. Funds can only be redeemed with knowledge of the secret
2. Funds can be refunded after the locktime if not redeemed
"""

from .contract import Contract, build_contract, parse_contract
from .audit import audit_contract, find_contract_output
from .spend import SpendResult, build_redeem_tx, build_refund_tx, build_presigned_refund_tx
from .extract import extract_secret

__all__ = [
    "Contract",
    "build_contract",
    "parse_contract",
    "audit_contract",
    "find_contract_output",
    "SpendResult",
    "build_redeem_tx",
    "build_refund_tx",
    "build_presigned_refund_tx",
    "extract_secret",
]
