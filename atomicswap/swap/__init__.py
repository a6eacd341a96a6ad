"""
Swap coordination for atomicswap.
"""

from .orchestrator import SwapOrchestrator, SwapConfig, LegResult
from .state import SwapStatus

__all__ = ["SwapOrchestrator", "SwapConfig", "LegResult", "SwapStatus"]
