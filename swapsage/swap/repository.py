"""
Swap repository.

Stores swap rows and resolver operation records. Backed by a JSON file
written atomically under a lock (in-memory only when no path is given).
Status transitions are conditional on the expected prior status.
"""

import json
import os
import time
import logging
import threading
from typing import Optional, Dict, Any, List

from ..core import (
    SwapRequest, SwapStatus, ResolverOperation, OperationType, OperationStatus,
    TERMINAL_STATUSES, normalize_hex32,
)
from ..errors import SwapNotFound, SwapConflict, ValidationError

log = logging.getLogger(__name__)

# Fields update_status / update_fields may touch
_MUTABLE_FIELDS = {
    "preimage", "user_htlc_contract", "pool_htlc_contract",
    "failure_reason", "pool_claimed_at",
}


class SwapRepository:
    """Thread-safe swap and operation store."""

    def __init__(self, path: Optional[str] = None):
        self.path = os.path.expanduser(path) if path else None
        self._swaps: Dict[str, SwapRequest] = {}
        self._operations: Dict[str, ResolverOperation] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self):
        """Load swaps and operations from disk on startup."""
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            data = json.load(f)
        for row in data.get("swaps", {}).values():
            swap = SwapRequest.from_dict(row)
            self._swaps[swap.id] = swap
        for row in data.get("operations", {}).values():
            op = ResolverOperation.from_dict(row)
            self._operations[op.id] = op
        log.info(f"Loaded {len(self._swaps)} swaps, {len(self._operations)} operations from {self.path}")

    def _save(self):
        """Persist to disk. Caller must hold _lock."""
        if not self.path:
            return
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        data = {
            "swaps": {sid: s.to_dict() for sid, s in self._swaps.items()},
            "operations": {oid: o.to_dict() for oid, o in self._operations.items()},
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    @staticmethod
    def _copy(swap: SwapRequest) -> SwapRequest:
        return SwapRequest.from_dict(swap.to_dict())

    # =========================================================================
    # Swaps
    # =========================================================================

    def create_swap(self, swap: SwapRequest) -> SwapRequest:
        """Insert a new swap row (API side)."""
        if swap.source_amount <= 0 or swap.expected_amount <= 0:
            raise ValidationError("Swap amounts must be positive")
        swap.hash_lock = normalize_hex32(swap.hash_lock)
        with self._lock:
            if swap.id in self._swaps:
                raise ValidationError(f"Swap {swap.id} already exists")
            self._swaps[swap.id] = self._copy(swap)
            self._save()
        log.info(f"Swap created: {swap.id} {swap.source_chain}->{swap.target_chain}")
        return self._copy(swap)

    def get_by_id(self, swap_id: str) -> SwapRequest:
        with self._lock:
            swap = self._swaps.get(swap_id)
            if swap is None:
                raise SwapNotFound(f"Swap {swap_id} not found")
            return self._copy(swap)

    def list_by_status(self, status: SwapStatus, limit: Optional[int] = None,
                       target_chain: Optional[str] = None) -> List[SwapRequest]:
        """Swaps in status, oldest first."""
        with self._lock:
            rows = [
                s for s in self._swaps.values()
                if s.status == status and (target_chain is None or s.target_chain == target_chain)
            ]
            rows.sort(key=lambda s: (s.created_at, s.id))
            if limit is not None:
                rows = rows[:limit]
            return [self._copy(s) for s in rows]

    def list_pending(self, limit: int, target_chain: Optional[str] = None) -> List[SwapRequest]:
        """PENDING swaps that already reference a source HTLC, oldest first."""
        return [
            s for s in self.list_by_status(SwapStatus.PENDING, target_chain=target_chain)
            if s.user_htlc_contract
        ][:limit]

    def count_by_status(self, target_chain: Optional[str] = None) -> Dict[str, int]:
        counts = {s.value: 0 for s in SwapStatus}
        with self._lock:
            for s in self._swaps.values():
                if target_chain is None or s.target_chain == target_chain:
                    counts[s.status.value] += 1
        return counts

    def update_status(self, swap_id: str, expected_prior: SwapStatus,
                      new_status: SwapStatus, **fields) -> bool:
        """
        Transition swap_id from expected_prior to new_status.

        Returns:
            False if the row is no longer in expected_prior (someone else
            advanced it); the row is left untouched.
        """
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        with self._lock:
            swap = self._swaps.get(swap_id)
            if swap is None:
                raise SwapNotFound(f"Swap {swap_id} not found")
            if swap.status != expected_prior:
                log.warning(
                    f"Swap {swap_id}: transition {expected_prior.value}->{new_status.value} "
                    f"skipped, status is {swap.status.value}"
                )
                return False
            if swap.status in TERMINAL_STATUSES:
                return False
            for key, value in fields.items():
                setattr(swap, key, value)
            swap.status = new_status
            swap.updated_at = int(time.time())
            self._save()

        log.info(f"Swap {swap_id}: {expected_prior.value} -> {new_status.value}")
        return True

    def update_fields(self, swap_id: str, **fields) -> SwapRequest:
        """Update non-status fields (e.g. the revealed preimage)."""
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")
        with self._lock:
            swap = self._swaps.get(swap_id)
            if swap is None:
                raise SwapNotFound(f"Swap {swap_id} not found")
            for key, value in fields.items():
                setattr(swap, key, value)
            swap.updated_at = int(time.time())
            self._save()
            return self._copy(swap)

    def cancel_if_unfunded(self, swap_id: str) -> SwapRequest:
        """
        PENDING -> CANCELLED, only while no pool funding was started.

        The check and the transition happen under one lock; the engine
        appends its FUND_POOL_HTLC record before submitting, so the two can
        never both win.

        Raises:
            SwapNotFound, SwapConflict
        """
        with self._lock:
            swap = self._swaps.get(swap_id)
            if swap is None:
                raise SwapNotFound(f"Swap {swap_id} not found")
            if swap.status != SwapStatus.PENDING:
                raise SwapConflict(f"Swap {swap_id} is {swap.status.value}, only PENDING swaps can be cancelled")
            for op in self._operations.values():
                if (op.swap_id == swap_id and op.operation_type == OperationType.FUND_POOL_HTLC
                        and op.status != OperationStatus.FAILED):
                    raise SwapConflict(f"Swap {swap_id} has pool funding {op.status.value}")
            swap.status = SwapStatus.CANCELLED
            swap.failure_reason = "Cancelled"
            swap.updated_at = int(time.time())
            self._save()
            result = self._copy(swap)
        log.info(f"Swap {swap_id}: PENDING -> CANCELLED")
        return result

    # =========================================================================
    # Operations
    # =========================================================================

    def append_operation(self, op: ResolverOperation) -> ResolverOperation:
        with self._lock:
            self._operations[op.id] = ResolverOperation.from_dict(op.to_dict())
            self._save()
        return op

    def update_operation(self, op_id: str, status: OperationStatus,
                         error: Optional[str] = None, error_code: Optional[str] = None,
                         **changes) -> ResolverOperation:
        """
        Update an operation's status. Terminal statuses set completed_at.

        Extra keyword args: retry_count, tx_hash, metadata (merged).
        """
        with self._lock:
            op = self._operations.get(op_id)
            if op is None:
                raise KeyError(f"Operation {op_id} not found")
            op.status = status
            if status != OperationStatus.IN_PROGRESS:
                op.completed_at = time.time()
            if error is not None:
                op.error_message = error
            if error_code is not None:
                op.error_code = error_code
            if "retry_count" in changes:
                op.retry_count = changes["retry_count"]
            if "tx_hash" in changes:
                op.tx_hash = changes["tx_hash"]
            if "metadata" in changes:
                op.metadata.update(changes["metadata"])
            self._save()
            return ResolverOperation.from_dict(op.to_dict())

    def find_operations(self, swap_id: str,
                        operation_type: Optional[OperationType] = None,
                        status: Optional[OperationStatus] = None) -> List[ResolverOperation]:
        """Operations of a swap, oldest first."""
        with self._lock:
            ops = [
                o for o in self._operations.values()
                if o.swap_id == swap_id
                and (operation_type is None or o.operation_type == operation_type)
                and (status is None or o.status == status)
            ]
            ops.sort(key=lambda o: o.started_at)
            return [ResolverOperation.from_dict(o.to_dict()) for o in ops]
