"""
SwapSage resolver - cross-chain HTLC swap liquidity service.

Watches pending swaps, validates the user's source-chain HTLC, fronts the
counter-asset from pool liquidity in a destination-chain HTLC, and claims
the source HTLC once the user reveals the secret.

Usage:
    from swapsage import ResolverService, load_config

    service = ResolverService(load_config("config.json"))
    service.on("swapProcessed", lambda swap_id, status: print(swap_id, status))
    service.start()
"""

from .core import (
    SwapStatus,
    OperationType,
    OperationStatus,
    LiquidityHealth,
    SwapRequest,
    ResolverOperation,
    generate_secret,
    hash_preimage,
    verify_preimage,
    compute_destination_timelock,
)
from .config import ChainConfig, ResolverConfig, ServiceConfig, load_config
from .htlc.base import HTLCClient, HTLCDetails, HTLCState, TxReceipt
from .pool.ledger import LiquidityLedger, Reservation
from .swap.repository import SwapRepository
from .swap.engine import ResolverEngine
from .service import ResolverService

__version__ = "0.1.0"
__all__ = [
    # Core types
    "SwapStatus",
    "OperationType",
    "OperationStatus",
    "LiquidityHealth",
    "SwapRequest",
    "ResolverOperation",
    # Utilities
    "generate_secret",
    "hash_preimage",
    "verify_preimage",
    "compute_destination_timelock",
    # Config
    "ChainConfig",
    "ResolverConfig",
    "ServiceConfig",
    "load_config",
    # HTLC
    "HTLCClient",
    "HTLCDetails",
    "HTLCState",
    "TxReceipt",
    # Resolver
    "LiquidityLedger",
    "Reservation",
    "SwapRepository",
    "ResolverEngine",
    "ResolverService",
]
