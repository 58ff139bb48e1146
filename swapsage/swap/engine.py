"""
Resolver engine.

One engine per destination chain. Each cycle it pulls the swaps whose
target_chain is its chain and advances them:

    PENDING         validate source HTLC -> reserve liquidity -> fund pool HTLC
    POOL_FULFILLED  watch pool HTLC -> verify revealed preimage -> claim source HTLC
    EXPIRED         refund the pool HTLC once the destination chain allows it

Polling is the source of truth: every cycle re-derives swap progress from
the chains, never from the engine's own last write.
"""

import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Dict, Any, List, Callable

from ..config import ResolverConfig
from ..core import (
    SwapRequest, SwapStatus, ResolverOperation, OperationType, OperationStatus,
    compute_destination_timelock, verify_preimage, normalize_hex32, token_symbol,
)
from ..errors import (
    ResolverError, ValidationError, SourceExpired, InsufficientLiquidity,
    ChainTransientError, AmbiguousSubmission, ChainRejected, HTLCNotFound,
    AlreadyClaimed, ContractExists, PreimageMismatch,
)
from ..htlc.base import HTLCClient, HTLCDetails, HTLCState
from ..pool.ledger import LiquidityLedger, Reservation
from .repository import SwapRepository

log = logging.getLogger(__name__)


def pool_contract_seed(swap_id: str) -> str:
    """Seed of the deterministic pool HTLC id of a swap."""
    return f"{swap_id}-pool"


class ResolverEngine:
    """
    Polling state machine for the swaps targeting one chain.

    Events (via emit):
    - swapProcessed(swap_id, status): swap changed status
    - swapExpired(swap_id)
    - poolLiquidityLow(chain, token)
    - error(exc, swap_id)
    """

    def __init__(
        self,
        chain_name: str,
        clients: Dict[str, HTLCClient],
        repository: SwapRepository,
        ledger: LiquidityLedger,
        config: Optional[ResolverConfig] = None,
        emit: Optional[Callable[..., None]] = None,
    ):
        if chain_name not in clients:
            raise ValueError(f"No HTLC client for chain {chain_name}")
        self.chain_name = chain_name
        self.client = clients[chain_name]
        self.clients = clients
        self.repository = repository
        self.ledger = ledger
        self.config = config or ResolverConfig()
        self._emit_fn = emit

        # State
        self._running = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles = 0
        self.processed_count = 0
        self.last_cycle_at: Optional[float] = None
        self._count_lock = threading.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self):
        """Start the polling loop in a background thread."""
        if self._running:
            return
        self._running = True
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"resolver-{self.chain_name}", daemon=True
        )
        self._thread.start()
        log.info(f"Resolver engine started for {self.chain_name}")

    def request_stop(self):
        """Stop pulling new batches; does not wait."""
        self._stop.set()

    def stop(self, timeout: Optional[float] = None):
        """Stop pulling batches and wait for the in-flight batch to finish."""
        if not self._running:
            return
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._running = False
        log.info(f"Resolver engine stopped for {self.chain_name}")

    @property
    def running(self) -> bool:
        return self._running

    def _loop(self):
        while not self._stop.is_set():
            try:
                self.run_cycle()
            except Exception as e:
                log.exception(f"[{self.chain_name}] cycle error: {e}")
                self._emit("error", e, None)
            self._stop.wait(self.config.processing_interval)

    def _emit(self, event: str, *args):
        if self._emit_fn:
            self._emit_fn(event, *args)

    def status(self) -> Dict[str, Any]:
        counts = self.repository.count_by_status(target_chain=self.chain_name)
        return {
            "chain": self.chain_name,
            "running": self._running,
            "cycles": self.cycles,
            "processed": self.processed_count,
            "last_cycle_at": self.last_cycle_at,
            "pending": counts[SwapStatus.PENDING.value],
            "pool_fulfilled": counts[SwapStatus.POOL_FULFILLED.value],
        }

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(self) -> int:
        """
        Process one batch. Returns the number of swaps looked at.

        Cycles never overlap: the batch is awaited before returning.
        """
        batch: List[SwapRequest] = self.repository.list_pending(
            self.config.max_batch_size, target_chain=self.chain_name
        )
        remaining = self.config.max_batch_size - len(batch)
        if remaining > 0:
            batch += self.repository.list_by_status(
                SwapStatus.POOL_FULFILLED, remaining, target_chain=self.chain_name
            )
        if self.config.auto_refund:
            batch += self._refund_candidates()

        if batch:
            log.debug(f"[{self.chain_name}] processing {len(batch)} swaps")
            workers = min(self.config.max_concurrency, len(batch))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"swap-{self.chain_name}") as pool:
                for _ in pool.map(self.process_swap, batch):
                    pass

        self.cycles += 1
        self.last_cycle_at = time.time()
        return len(batch)

    def process_swap(self, swap: SwapRequest):
        """Advance one swap. Never raises."""
        try:
            if swap.status == SwapStatus.PENDING:
                self._process_pending(swap)
            elif swap.status == SwapStatus.POOL_FULFILLED:
                self._process_fulfilled(swap)
            elif swap.status == SwapStatus.EXPIRED:
                self._process_refund(swap)
        except ChainTransientError as e:
            log.warning(f"Swap {swap.id}: chain unavailable, retry next cycle: {e}")
        except Exception as e:
            log.exception(f"Swap {swap.id}: unexpected error: {e}")
            self._emit("error", e, swap.id)

    # =========================================================================
    # Operation records
    # =========================================================================

    def _begin(self, swap_id: str, op_type: OperationType, **metadata) -> ResolverOperation:
        op = ResolverOperation(swap_id=swap_id, operation_type=op_type, metadata=metadata)
        return self.repository.append_operation(op)

    def _complete(self, op: ResolverOperation, **changes) -> ResolverOperation:
        return self.repository.update_operation(op.id, OperationStatus.COMPLETED, **changes)

    def _fail(self, op: ResolverOperation, err: Exception, **changes) -> ResolverOperation:
        code = getattr(err, "code", type(err).__name__)
        log.warning(f"Swap {op.swap_id}: {op.operation_type.value} failed [{code}]: {err}")
        return self.repository.update_operation(
            op.id, OperationStatus.FAILED, error=str(err), error_code=code, **changes
        )

    def _live_operation(self, swap_id: str) -> Optional[ResolverOperation]:
        """
        An IN_PROGRESS record left by another instance (or a crash).

        Records older than stale_operation_seconds are marked FAILED and
        ignored. Ambiguous fund records are not returned here.
        """
        now = time.time()
        live = None
        for op in self.repository.find_operations(swap_id, status=OperationStatus.IN_PROGRESS):
            if op.metadata.get("ambiguous"):
                continue
            if now - op.started_at > self.config.stale_operation_seconds:
                log.warning(f"Swap {swap_id}: abandoning stale {op.operation_type.value} record {op.id}")
                self.repository.update_operation(
                    op.id, OperationStatus.FAILED,
                    error="Abandoned IN_PROGRESS record", error_code="STALE_OPERATION",
                )
                continue
            live = op
        return live

    def _with_retries(self, op: ResolverOperation, fn: Callable[[], Any], label: str):
        """
        Run a chain submission, retrying ChainTransientError with exponential
        backoff. AmbiguousSubmission and ChainRejected propagate immediately.
        """
        attempt = 0
        while True:
            try:
                return fn()
            except AmbiguousSubmission:
                raise
            except ChainTransientError as e:
                attempt += 1
                self.repository.update_operation(op.id, OperationStatus.IN_PROGRESS, retry_count=attempt)
                if attempt > self.config.max_retries:
                    raise
                delay = self.config.retry_backoff_seconds * (2 ** (attempt - 1))
                log.warning(f"Swap {op.swap_id}: {label} attempt {attempt} failed ({e}), retrying in {delay:.1f}s")
                if self._stop.wait(delay):
                    raise

    def _source_client(self, swap: SwapRequest) -> HTLCClient:
        client = self.clients.get(swap.source_chain)
        if client is None:
            raise ValidationError(f"No client configured for source chain {swap.source_chain}")
        return client

    def _set_status(self, swap: SwapRequest, prior: SwapStatus, new: SwapStatus, **fields) -> bool:
        if not self.repository.update_status(swap.id, prior, new, **fields):
            return False
        with self._count_lock:
            self.processed_count += 1
        self._emit("swapProcessed", swap.id, new.value)
        if new == SwapStatus.EXPIRED:
            self._emit("swapExpired", swap.id)
        return True

    # =========================================================================
    # PENDING
    # =========================================================================

    def _process_pending(self, swap: SwapRequest):
        fund_ops = self.repository.find_operations(
            swap.id, OperationType.FUND_POOL_HTLC, OperationStatus.IN_PROGRESS
        )
        ambiguous = [op for op in fund_ops if op.metadata.get("ambiguous")]
        if ambiguous:
            self._reconcile_ambiguous_fund(swap, ambiguous[-1])
            return

        live = self._live_operation(swap.id)
        if live:
            log.debug(f"Swap {swap.id}: {live.operation_type.value} in progress elsewhere, skipping")
            return

        # 1. A pool HTLC may already exist (crash after submit, late ambiguous tx).
        # Funds already on chain are tracked whatever the source window is now.
        dest_id = self.client.derive_contract_id(pool_contract_seed(swap.id))
        existing = self._lookup(dest_id)
        if existing is not None:
            self._adopt_existing(swap, dest_id, existing)
            return

        # 2. Validate source HTLC
        src = self._source_client(swap)
        op = self._begin(swap.id, OperationType.VALIDATE_SOURCE_HTLC, contract_id=swap.user_htlc_contract)
        try:
            source, dest_timelock = self.validate_source(swap, src)
        except HTLCNotFound as e:
            age = time.time() - swap.created_at
            self._fail(op, e)
            if age < self.config.source_visibility_grace:
                log.info(f"Swap {swap.id}: source HTLC not visible yet ({age:.0f}s old)")
                return
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason="ValidationError")
            return
        except SourceExpired as e:
            self._fail(op, e)
            self._release_if_reserved(swap)
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.EXPIRED, failure_reason="SourceExpired")
            return
        except ValidationError as e:
            self._fail(op, e)
            self._release_if_reserved(swap)
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason="ValidationError")
            return
        except ChainTransientError as e:
            self._fail(op, e)
            return
        self._complete(op, metadata={
            "source_timelock": source.timelock,
            "destination_timelock": dest_timelock,
        })

        token = token_symbol(swap.target_token)

        # 3. Reserve liquidity
        op = self._begin(swap.id, OperationType.RESERVE_LIQUIDITY, chain=self.chain_name, token=token,
                         amount=str(swap.expected_amount))
        try:
            reservation = self.ledger.reserve(self.chain_name, token, swap.expected_amount, swap.id)
        except InsufficientLiquidity as e:
            self._fail(op, e)
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason="InsufficientLiquidity")
            self._emit("poolLiquidityLow", self.chain_name, token)
            return
        self._complete(op)

        # 4. Fund pool HTLC
        self._fund(swap, reservation, dest_id, dest_timelock)

    def validate_source(self, swap: SwapRequest, src: HTLCClient):
        """
        Check the user's source HTLC and pick the destination timelock.

        Returns:
            (source HTLCDetails, destination timelock on the destination clock)

        Raises:
            HTLCNotFound, SourceExpired, ValidationError, ChainTransientError
        """
        if not swap.user_address:
            raise ValidationError(f"Swap {swap.id} has no destination address")

        details = src.get_details(swap.user_htlc_contract)
        if details.state != HTLCState.OPEN:
            if details.state == HTLCState.REFUNDED:
                raise SourceExpired(f"Source HTLC {details.contract_id} already refunded")
            raise ValidationError(f"Source HTLC {details.contract_id} is {details.state.name}")
        if details.value != swap.source_amount:
            raise ValidationError(
                f"Source HTLC value {details.value} != swap source amount {swap.source_amount}"
            )
        if normalize_hex32(details.hash_lock) != normalize_hex32(swap.hash_lock):
            raise ValidationError("Source HTLC hash lock does not match swap")
        if not src.same_address(details.beneficiary, src.pool_address):
            raise ValidationError(
                f"Source HTLC beneficiary {details.beneficiary} is not the pool ({src.pool_address})"
            )
        expected_token = src.resolve_token(swap.source_token)
        if not src.same_address(details.token, expected_token):
            raise ValidationError(f"Source HTLC token {details.token} != {expected_token}")

        src_now = src.current_time()
        remaining = details.timelock - src_now
        if remaining <= 0:
            raise SourceExpired(f"Source HTLC expired {-remaining}s ago")

        # Map the source expiry onto the destination clock
        dest_now = self.client.current_time()
        dest_timelock = compute_destination_timelock(
            dest_now + remaining,
            dest_now,
            divisor=self.config.timelock_divisor,
            safety_margin=self.config.timelock_safety_margin,
            min_window=self.config.min_destination_window,
        )
        if dest_timelock is None:
            raise ValidationError(
                f"Source HTLC expires in {remaining}s, too soon for a safe destination timelock",
                code="TIMELOCK_TOO_SHORT",
            )
        return details, dest_timelock

    def _lookup(self, contract_id: str) -> Optional[HTLCDetails]:
        try:
            return self.client.get_details(contract_id)
        except HTLCNotFound:
            return None

    def _release_if_reserved(self, swap: SwapRequest):
        reservation = self.ledger.reservation_for(self.chain_name, token_symbol(swap.target_token), swap.id)
        if reservation:
            self.ledger.release(reservation)

    def _matches_swap(self, swap: SwapRequest, details: HTLCDetails) -> bool:
        return (
            normalize_hex32(details.hash_lock) == normalize_hex32(swap.hash_lock)
            and details.value == swap.expected_amount
            and self.client.same_address(details.beneficiary, swap.user_address)
        )

    def _adopt_existing(self, swap: SwapRequest, dest_id: str, details: HTLCDetails):
        """A pool HTLC already sits at the swap's deterministic id."""
        op = self._begin(swap.id, OperationType.FUND_POOL_HTLC, contract_id=dest_id, adopted=True)

        if details.state in (HTLCState.OPEN, HTLCState.CLAIMED) and self._matches_swap(swap, details):
            if not self._still_pending(swap, op):
                return
            self._commit_onchain(swap, details)
            self._complete(op)
            log.info(f"Swap {swap.id}: adopted existing pool HTLC {dest_id} ({details.state.name})")
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.POOL_FULFILLED, pool_htlc_contract=dest_id)
            return

        err = ValidationError(
            f"Pool HTLC {dest_id} exists but is {details.state.name} or does not match the swap",
            code="DESTINATION_CONFLICT",
        )
        log.error(f"Swap {swap.id}: {err}")
        self._fail(op, err)
        self._release_if_reserved(swap)
        self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason="DestinationConflict")

    def _commit_onchain(self, swap: SwapRequest, details: HTLCDetails):
        """
        Take a pool HTLC found on chain out of the ledger.

        Commits the swap's reservation. Without one (released after retries
        or an ambiguous timeout), reserves and commits now; if the pool can
        no longer cover it, debits so the total matches what the pool holds.
        """
        token = token_symbol(swap.target_token)
        reservation = self.ledger.reservation_for(self.chain_name, token, swap.id)
        if reservation is None:
            log.warning(f"Swap {swap.id}: pool HTLC {details.contract_id} on chain without a reservation")
            try:
                reservation = self.ledger.reserve(self.chain_name, token, details.value, swap.id)
            except InsufficientLiquidity:
                self.ledger.debit(self.chain_name, token, details.value,
                                  reason=f"(unreserved pool HTLC of {swap.id})")
                return
        self.ledger.commit(reservation)

    def _still_pending(self, swap: SwapRequest, op: ResolverOperation) -> bool:
        """Re-read status after the fund record exists (cancellation guard)."""
        current = self.repository.get_by_id(swap.id)
        if current.status == SwapStatus.PENDING:
            return True
        self._fail(op, ResolverError(f"Swap is {current.status.value}", code="SWAP_NOT_PENDING"))
        self._release_if_reserved(swap)
        return False

    def _fund(self, swap: SwapRequest, reservation: Reservation, dest_id: str, dest_timelock: int):
        op = self._begin(
            swap.id, OperationType.FUND_POOL_HTLC,
            contract_id=dest_id, destination_timelock=dest_timelock, amount=str(reservation.amount),
        )
        if not self._still_pending(swap, op):
            return

        try:
            receipt = self._with_retries(
                op,
                lambda: self.client.fund(
                    dest_id, swap.target_token, swap.user_address,
                    swap.hash_lock, dest_timelock, reservation.amount,
                ),
                "fund",
            )
        except AmbiguousSubmission as e:
            # Keep the reservation; the next cycles look for the HTLC
            log.warning(f"Swap {swap.id}: pool funding ambiguous (tx {e.tx_hash}): {e}")
            self.repository.update_operation(
                op.id, OperationStatus.IN_PROGRESS, error=str(e), error_code=e.code,
                tx_hash=e.tx_hash, metadata={"ambiguous": True, "cycles": 0},
            )
            return
        except ContractExists as e:
            # An earlier submission of ours landed; reconciled next cycle
            log.warning(f"Swap {swap.id}: pool HTLC {dest_id} already exists: {e}")
            self.repository.update_operation(
                op.id, OperationStatus.IN_PROGRESS, error=str(e), error_code=e.code,
                metadata={"ambiguous": True, "cycles": 0},
            )
            return
        except ChainTransientError as e:
            self.ledger.release(reservation)
            self._fail(op, e)
            return
        except (ChainRejected, ValidationError) as e:
            self.ledger.release(reservation)
            self._fail(op, e)
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason=type(e).__name__)
            return

        self._complete(op, tx_hash=receipt.tx_hash)
        self.ledger.commit(reservation)
        log.info(f"Swap {swap.id}: pool HTLC {dest_id} funded, tx {receipt.tx_hash}")
        self._set_status(swap, SwapStatus.PENDING, SwapStatus.POOL_FULFILLED, pool_htlc_contract=dest_id)

    def _reconcile_ambiguous_fund(self, swap: SwapRequest, op: ResolverOperation):
        """
        Re-check a fund whose outcome was unknown.

        Found on chain: commit and advance. Still missing after
        ambiguous_fund_max_cycles cycles: release the reservation and fail the
        record, leaving the swap PENDING. A later retry reuses the same
        contract id, so the chain refuses a second HTLC if the first one lands.
        """
        dest_id = op.metadata["contract_id"]
        details = self._lookup(dest_id)

        if details is not None and details.state in (HTLCState.OPEN, HTLCState.CLAIMED):
            if not self._matches_swap(swap, details):
                err = ValidationError(f"Pool HTLC {dest_id} does not match swap", code="DESTINATION_CONFLICT")
                log.error(f"Swap {swap.id}: {err}")
                self._fail(op, err, metadata={"ambiguous": False})
                self._release_if_reserved(swap)
                self._set_status(swap, SwapStatus.PENDING, SwapStatus.FAILED, failure_reason="DestinationConflict")
                return
            self._complete(op, metadata={"ambiguous": False, "reconciled": True})
            self._commit_onchain(swap, details)
            log.info(f"Swap {swap.id}: ambiguous funding confirmed on chain at {dest_id}")
            self._set_status(swap, SwapStatus.PENDING, SwapStatus.POOL_FULFILLED, pool_htlc_contract=dest_id)
            return

        cycles = int(op.metadata.get("cycles", 0)) + 1
        if cycles < self.config.ambiguous_fund_max_cycles:
            self.repository.update_operation(op.id, OperationStatus.IN_PROGRESS, metadata={"cycles": cycles})
            log.info(f"Swap {swap.id}: pool HTLC {dest_id} not seen yet (cycle {cycles})")
            return

        self._release_if_reserved(swap)
        self.repository.update_operation(
            op.id, OperationStatus.FAILED,
            error=f"Funding tx not seen after {cycles} cycles",
            error_code="AMBIGUOUS_TIMEOUT",
            metadata={"ambiguous": False, "cycles": cycles},
        )
        log.warning(f"Swap {swap.id}: giving up on ambiguous funding after {cycles} cycles, reservation released")

    # =========================================================================
    # POOL_FULFILLED
    # =========================================================================

    def is_quarantined(self, swap_id: str) -> bool:
        return any(
            op.error_code == PreimageMismatch.code
            for op in self.repository.find_operations(
                swap_id, OperationType.CLAIM_SOURCE_HTLC, OperationStatus.FAILED
            )
        )

    def _process_fulfilled(self, swap: SwapRequest):
        if self.is_quarantined(swap.id):
            log.debug(f"Swap {swap.id}: quarantined after preimage mismatch, skipping")
            return
        claims = self.repository.find_operations(
            swap.id, OperationType.CLAIM_SOURCE_HTLC, OperationStatus.IN_PROGRESS
        )
        ambiguous = [op for op in claims if op.metadata.get("ambiguous")]
        if ambiguous:
            self._reconcile_ambiguous_claim(swap, ambiguous[-1])
            return
        if self._live_operation(swap.id):
            return

        src = self._source_client(swap)
        dest = self.client.get_details(swap.pool_htlc_contract)

        if dest.state == HTLCState.REFUNDED:
            log.warning(f"Swap {swap.id}: pool HTLC refunded before user claimed")
            self._set_status(swap, SwapStatus.POOL_FULFILLED, SwapStatus.EXPIRED, failure_reason="DestinationRefunded",
                             pool_htlc_contract=None)
            return

        if dest.state == HTLCState.OPEN:
            source = src.get_details(swap.user_htlc_contract)
            if source.state == HTLCState.REFUNDED or src.current_time() >= source.timelock:
                log.warning(f"Swap {swap.id}: source HTLC expired before preimage was revealed")
                self._set_status(swap, SwapStatus.POOL_FULFILLED, SwapStatus.EXPIRED, failure_reason="SourceExpired",
                                 pool_htlc_contract=None)
            return

        # Pool HTLC claimed by the user: preimage is public now
        self._claim_source(swap, src)

    def _claim_source(self, swap: SwapRequest, src: HTLCClient):
        op = self._begin(swap.id, OperationType.CLAIM_SOURCE_HTLC, contract_id=swap.user_htlc_contract)
        try:
            source = src.get_details(swap.user_htlc_contract)
            preimage = self._verified_preimage(swap, source)
            if preimage is None:
                self._fail(op, ResolverError("Preimage not found yet", code="PREIMAGE_UNAVAILABLE"))
                return

            if source.state == HTLCState.CLAIMED:
                self._complete(op, metadata={"already_claimed": True})
                self._finish_claim(swap, preimage, source)
                return
            if source.state == HTLCState.REFUNDED or not src.is_claimable(swap.user_htlc_contract):
                err = SourceExpired(f"Source HTLC {swap.user_htlc_contract} no longer claimable")
                self._fail(op, err)
                self._set_status(swap, SwapStatus.POOL_FULFILLED, SwapStatus.EXPIRED, failure_reason="SourceExpired",
                                 pool_htlc_contract=None)
                return

            receipt = self._with_retries(op, lambda: src.claim(swap.user_htlc_contract, preimage), "claim")
        except PreimageMismatch as e:
            log.error(f"Swap {swap.id}: PREIMAGE MISMATCH, claim blocked pending investigation: {e}")
            self._fail(op, e, metadata={"quarantined": True})
            self._emit("error", e, swap.id)
            return
        except AlreadyClaimed as e:
            # Our earlier (ambiguous) claim landed; next cycle sees CLAIMED
            self._fail(op, e)
            return
        except AmbiguousSubmission as e:
            log.warning(f"Swap {swap.id}: source claim ambiguous (tx {e.tx_hash}): {e}")
            self.repository.update_operation(
                op.id, OperationStatus.IN_PROGRESS, error=str(e), error_code=e.code,
                tx_hash=e.tx_hash, metadata={"ambiguous": True, "cycles": 0},
            )
            return
        except (ChainRejected, ChainTransientError) as e:
            self._fail(op, e)
            return

        self._complete(op, tx_hash=receipt.tx_hash)
        log.info(f"Swap {swap.id}: source HTLC claimed, tx {receipt.tx_hash}")
        self._finish_claim(swap, preimage, source)

    def _reconcile_ambiguous_claim(self, swap: SwapRequest, op: ResolverOperation):
        """
        Re-check a source claim whose outcome was unknown.

        While the source HTLC stays OPEN the claim is not resent for
        ambiguous_claim_max_cycles cycles; the first tx may still land.
        """
        src = self._source_client(swap)
        source = src.get_details(swap.user_htlc_contract)

        if source.state == HTLCState.CLAIMED:
            preimage = self._verified_preimage(swap, source)
            if preimage is not None:
                self._complete(op, metadata={"ambiguous": False, "reconciled": True})
                log.info(f"Swap {swap.id}: ambiguous source claim confirmed on chain")
                self._finish_claim(swap, preimage, source)
                return

        cycles = int(op.metadata.get("cycles", 0)) + 1
        if source.state == HTLCState.OPEN and cycles < self.config.ambiguous_claim_max_cycles:
            self.repository.update_operation(op.id, OperationStatus.IN_PROGRESS, metadata={"cycles": cycles})
            log.info(f"Swap {swap.id}: source claim not seen yet (cycle {cycles})")
            return

        # Hand the swap back to the normal claim path
        self.repository.update_operation(
            op.id, OperationStatus.FAILED,
            error=f"Claim not confirmed after {cycles} cycles (source {source.state.name})",
            error_code="AMBIGUOUS_TIMEOUT",
            metadata={"ambiguous": False, "cycles": cycles},
        )

    def _verified_preimage(self, swap: SwapRequest, source: HTLCDetails) -> Optional[str]:
        """
        Preimage from the pool HTLC claim event, or the API-supplied one,
        checked against the swap hash lock and the source HTLC hash lock.

        Raises:
            PreimageMismatch: a candidate exists but none verifies
        """
        candidates = []
        revealed = self.client.get_claim_preimage(swap.pool_htlc_contract)
        if revealed:
            candidates.append(revealed)
        if swap.preimage and swap.preimage not in candidates:
            candidates.append(swap.preimage)
        if not candidates:
            return None

        for candidate in candidates:
            if verify_preimage(candidate, swap.hash_lock) and verify_preimage(candidate, source.hash_lock):
                return normalize_hex32(candidate)
        raise PreimageMismatch(
            f"No revealed preimage hashes to {swap.hash_lock} (source lock {source.hash_lock})",
            context={"swap_id": swap.id, "candidates": len(candidates)},
        )

    def _finish_claim(self, swap: SwapRequest, preimage: str, source: HTLCDetails):
        if self._set_status(
            swap, SwapStatus.POOL_FULFILLED, SwapStatus.USER_CLAIMED,
            preimage=preimage, pool_claimed_at=int(time.time()),
        ):
            self.ledger.credit(swap.source_chain, token_symbol(swap.source_token), source.value,
                               reason=f"(claimed source of {swap.id})")

    # =========================================================================
    # EXPIRED: pool HTLC refund sweep
    # =========================================================================

    def _refund_candidates(self) -> List[SwapRequest]:
        """EXPIRED swaps with a funded pool HTLC that has no final refund record."""
        out = []
        for swap in self.repository.list_by_status(SwapStatus.EXPIRED, target_chain=self.chain_name):
            funded = self.repository.find_operations(
                swap.id, OperationType.FUND_POOL_HTLC, OperationStatus.COMPLETED
            )
            if not funded:
                continue
            refunds = self.repository.find_operations(swap.id, OperationType.REFUND_POOL_HTLC)
            if any(op.status == OperationStatus.COMPLETED or op.metadata.get("final") for op in refunds):
                continue
            out.append(swap)
        return out[:self.config.max_batch_size]

    def _process_refund(self, swap: SwapRequest):
        if self._live_operation(swap.id):
            return
        funded = self.repository.find_operations(
            swap.id, OperationType.FUND_POOL_HTLC, OperationStatus.COMPLETED
        )
        dest_id = funded[-1].metadata.get("contract_id")
        if not dest_id:
            return

        details = self.client.get_details(dest_id)
        token = token_symbol(swap.target_token)

        if details.state == HTLCState.CLAIMED:
            op = self._begin(swap.id, OperationType.REFUND_POOL_HTLC, contract_id=dest_id)
            self._fail(op, AlreadyClaimed(f"Pool HTLC {dest_id} was claimed by the user"),
                       metadata={"final": True})
            return
        if details.state == HTLCState.REFUNDED:
            op = self._begin(swap.id, OperationType.REFUND_POOL_HTLC, contract_id=dest_id)
            self._complete(op, metadata={"external": True})
            self.ledger.credit(self.chain_name, token, details.value, reason=f"(refunded pool HTLC of {swap.id})")
            return
        if not self.client.is_refundable(dest_id):
            return

        op = self._begin(swap.id, OperationType.REFUND_POOL_HTLC, contract_id=dest_id)
        try:
            receipt = self._with_retries(op, lambda: self.client.refund(dest_id), "refund")
        except (ChainRejected, ChainTransientError) as e:
            self._fail(op, e, tx_hash=getattr(e, "tx_hash", None))
            return
        self._complete(op, tx_hash=receipt.tx_hash)
        self.ledger.credit(self.chain_name, token, details.value, reason=f"(refunded pool HTLC of {swap.id})")
        log.info(f"Swap {swap.id}: pool HTLC {dest_id} refunded, tx {receipt.tx_hash}")
