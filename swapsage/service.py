"""
Resolver service.

Wires one ResolverEngine per configured chain around a shared swap
repository, liquidity ledger and HTLC client registry, and fans engine
events out to registered handlers.
"""

import time
import logging
import threading
from typing import Optional, Dict, Any, List, Callable

from .config import ServiceConfig, ChainConfig, ResolverConfig
from .core import (
    SwapRequest, SwapStatus, ResolverOperation, OperationType, OperationStatus,
    normalize_hex32, verify_preimage, token_symbol,
)
from .errors import ConfigError, HTLCNotFound, PreimageMismatch, SwapConflict
from .htlc.base import HTLCClient
from .pool.ledger import LiquidityLedger
from .swap.engine import ResolverEngine, pool_contract_seed
from .swap.repository import SwapRepository

log = logging.getLogger(__name__)

EVENTS = ("started", "stopped", "swapProcessed", "swapExpired", "error", "poolLiquidityLow")


def build_client(chain: ChainConfig, resolver: ResolverConfig) -> HTLCClient:
    """Create the HTLC client for a chain family."""
    if chain.family == "evm":
        from .htlc.evm import EVMHTLCClient
        return EVMHTLCClient(chain, resolver)
    if chain.family == "cosmos":
        from .htlc.cosmos import CosmosHTLCClient
        return CosmosHTLCClient(chain, resolver)
    raise ConfigError(f"Unsupported chain family: {chain.family}")


class ResolverService:
    """
    Multi-chain resolver.

    Events:
    - started(), stopped()
    - swapProcessed(swap_id, status)
    - swapExpired(swap_id)
    - error(exc, swap_id)
    - poolLiquidityLow(chain, token)
    """

    def __init__(
        self,
        config: ServiceConfig,
        clients: Optional[Dict[str, HTLCClient]] = None,
        repository: Optional[SwapRepository] = None,
        ledger: Optional[LiquidityLedger] = None,
    ):
        self.config = config
        self.repository = repository or SwapRepository(config.swaps_db_path)
        self.ledger = ledger or LiquidityLedger(config.liquidity_db_path)
        if self.ledger.on_low is None:
            self.ledger.on_low = lambda chain, token: self._emit("poolLiquidityLow", chain, token)

        self.clients: Dict[str, HTLCClient] = clients if clients is not None else {
            c.name: build_client(c, config.resolver_for(c.name)) for c in config.chains
        }

        self._handlers: Dict[str, List[Callable]] = {e: [] for e in EVENTS}
        self.engines: Dict[str, ResolverEngine] = {
            name: ResolverEngine(
                name, self.clients, self.repository, self.ledger,
                config=config.resolver_for(name), emit=self._emit,
            )
            for name in self.clients
        }
        self._running = False
        self._lock = threading.Lock()
        self.started_at: Optional[float] = None

        self._bootstrap_liquidity()

    def _bootstrap_liquidity(self):
        """Seed ledger entries from config for (chain, token) pairs not yet known."""
        known = {(e.chain, e.token) for e in self.ledger.entries()}
        for row in self.config.liquidity:
            chain, token = row["chain"], token_symbol(row["token"])
            if (chain, token) in known:
                continue
            self.ledger.set_balance(chain, token, int(row.get("total_balance", 0)),
                                    min_threshold=int(row.get("min_threshold", 0)))

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event: str, handler: Callable):
        """Register event handler."""
        if event not in self._handlers:
            raise ValueError(f"Unknown event: {event}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Callable):
        """Remove event handler."""
        if event in self._handlers and handler in self._handlers[event]:
            self._handlers[event].remove(handler)

    def _emit(self, event: str, *args):
        """Emit event to handlers."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception as e:
                log.error(f"Handler error for {event}: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        with self._lock:
            if self._running:
                return
            self._running = True
            self.started_at = time.time()
        for engine in self.engines.values():
            engine.start()
        log.info(f"Resolver service started: chains={list(self.engines)}")
        self._emit("started")

    def stop(self, timeout: Optional[float] = None):
        """Stop all engines; in-flight swaps finish their current step."""
        with self._lock:
            if not self._running:
                return
            self._running = False
        for engine in self.engines.values():
            engine.request_stop()
        for engine in self.engines.values():
            engine.stop(timeout=timeout)
        log.info("Resolver service stopped")
        self._emit("stopped")

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "started_at": self.started_at,
            "uptime": int(time.time() - self.started_at) if self.started_at else 0,
            "chains": [engine.status() for engine in self.engines.values()],
            "swaps": self.repository.count_by_status(),
        }

    # =========================================================================
    # Operator actions
    # =========================================================================

    def cancel_swap(self, swap_id: str) -> SwapRequest:
        """
        Cancel a PENDING swap that has not been funded.

        Besides the repository's record check, the swap's deterministic pool
        HTLC id is looked up on the target chain.

        Raises:
            SwapNotFound, SwapConflict, ChainTransientError
        """
        self._check_no_pool_htlc(self.repository.get_by_id(swap_id))
        swap = self.repository.cancel_if_unfunded(swap_id)
        reservation = self.ledger.reservation_for(swap.target_chain, token_symbol(swap.target_token), swap_id)
        if reservation:
            self.ledger.release(reservation)
        op = ResolverOperation(swap_id=swap_id, operation_type=OperationType.CANCEL_SWAP,
                               status=OperationStatus.COMPLETED, completed_at=time.time())
        self.repository.append_operation(op)
        self._emit("swapProcessed", swap_id, swap.status.value)
        return swap

    def _check_no_pool_htlc(self, swap: SwapRequest):
        client = self.clients.get(swap.target_chain)
        if client is None or swap.status != SwapStatus.PENDING:
            return
        dest_id = client.derive_contract_id(pool_contract_seed(swap.id))
        try:
            client.get_details(dest_id)
        except HTLCNotFound:
            return
        raise SwapConflict(f"Swap {swap.id} has a pool HTLC on {swap.target_chain} at {dest_id}")

    def submit_preimage(self, swap_id: str, preimage: str) -> SwapRequest:
        """
        Store a preimage revealed through the API.

        Raises:
            PreimageMismatch: sha256(preimage) != swap hash lock
            SwapConflict: swap is already terminal
        """
        swap = self.repository.get_by_id(swap_id)
        if swap.is_terminal:
            raise SwapConflict(f"Swap {swap_id} is {swap.status.value}")
        if not verify_preimage(preimage, swap.hash_lock):
            log.error(f"Swap {swap_id}: API-supplied preimage does not match hash lock")
            raise PreimageMismatch("Preimage does not hash to the swap hash lock")
        return self.repository.update_fields(swap_id, preimage=normalize_hex32(preimage))

    def operations(self, swap_id: str) -> List[ResolverOperation]:
        self.repository.get_by_id(swap_id)
        return self.repository.find_operations(swap_id)
