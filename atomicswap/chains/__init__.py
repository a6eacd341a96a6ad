"""
Chain access for atomicswap.

- btc: Bitcoin Core JSON-RPC client
- profiles: hash-lock and locktime variants of the contract
- wallet: signing services
"""

from .btc import BTCClient, BTCConfig, Deadline
from .profiles import ChainProfile, PROFILES, get_profile
from .wallet import KeySigner, NodeWalletSigner

__all__ = [
    "BTCClient",
    "BTCConfig",
    "Deadline",
    "ChainProfile",
    "PROFILES",
    "get_profile",
    "KeySigner",
    "NodeWalletSigner",
]
