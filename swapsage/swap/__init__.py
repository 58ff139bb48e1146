"""
Swap resolution: persistence and the per-chain state machine.
"""

from .repository import SwapRepository
from .engine import ResolverEngine

__all__ = ["SwapRepository", "ResolverEngine"]
