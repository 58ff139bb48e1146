"""
Pool liquidity ledger.

Tracks total / available / reserved balance per (chain, token) and the
live reservation of every swap. Admission control for pool-funded HTLCs:
the resolver never funds a destination HTLC without a reservation.

Persisted to a JSON file, one row per "chain:token", balances as base-unit
integer strings.
"""

import json
import os
import logging
import threading
from typing import Optional, Dict, Any, List, Callable
from dataclasses import dataclass, field

from ..core import LiquidityHealth
from ..errors import InsufficientLiquidity

log = logging.getLogger(__name__)


@dataclass
class LiquidityEntry:
    chain: str
    token: str
    total_balance: int = 0
    available_balance: int = 0
    reserved_balance: int = 0
    min_threshold: int = 0
    reservations: Dict[str, int] = field(default_factory=dict)   # swap_id -> amount

    @property
    def key(self) -> str:
        return ledger_key(self.chain, self.token)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "token": self.token,
            "total_balance": str(self.total_balance),
            "available_balance": str(self.available_balance),
            "reserved_balance": str(self.reserved_balance),
            "min_threshold": str(self.min_threshold),
            "reservations": {k: str(v) for k, v in self.reservations.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiquidityEntry":
        return cls(
            chain=data["chain"],
            token=data["token"],
            total_balance=int(data.get("total_balance", 0)),
            available_balance=int(data.get("available_balance", 0)),
            reserved_balance=int(data.get("reserved_balance", 0)),
            min_threshold=int(data.get("min_threshold", 0)),
            reservations={k: int(v) for k, v in (data.get("reservations") or {}).items()},
        )


@dataclass(frozen=True)
class Reservation:
    """Proof that amount was moved from available to reserved for swap_id."""
    chain: str
    token: str
    amount: int
    swap_id: str


def ledger_key(chain: str, token: str) -> str:
    return f"{chain}:{token}"


class LiquidityLedger:
    """
    Thread-safe liquidity ledger.

    Every mutation holds the per-(chain, token) lock only for the
    bookkeeping and the file write, never across a chain call.
    Invariant per entry: available + reserved == total.
    """

    def __init__(self, path: Optional[str] = None,
                 on_low: Optional[Callable[[str, str], None]] = None):
        self.path = os.path.expanduser(path) if path else None
        self.on_low = on_low
        self._entries: Dict[str, LiquidityEntry] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()     # guards _entries/_locks dicts
        self._file_lock = threading.Lock()       # guards _rows and the file
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r") as f:
            rows = json.load(f)
        for row in rows.values():
            entry = LiquidityEntry.from_dict(row)
            self._entries[entry.key] = entry
            self._rows[entry.key] = entry.to_dict()
        log.info(f"Loaded {len(self._entries)} liquidity entries from {self.path}")

    def _save(self, entry: LiquidityEntry):
        """
        Store entry's row and rewrite the file atomically (tmp file + rename).

        Called with the entry's lock held; the row copy and the write share
        _file_lock, so a write never drops another key's newer row.
        """
        if not self.path:
            return
        row = entry.to_dict()
        with self._file_lock:
            self._rows[entry.key] = row
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            tmp = self.path + ".tmp"
            with open(tmp, "w") as f:
                json.dump(self._rows, f, indent=2)
            os.replace(tmp, self.path)

    def _lock_for(self, chain: str, token: str) -> threading.Lock:
        key = ledger_key(chain, token)
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def _entry(self, chain: str, token: str) -> LiquidityEntry:
        key = ledger_key(chain, token)
        with self._registry_lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = LiquidityEntry(chain=chain, token=token)
                self._entries[key] = entry
            return entry

    # =========================================================================
    # Operator operations
    # =========================================================================

    def set_balance(self, chain: str, token: str, total: int, min_threshold: Optional[int] = None):
        """
        Set the total pool balance (bootstrap / reconciliation).

        Live reservations are kept; available becomes total - reserved.
        """
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            if total < entry.reserved_balance:
                raise ValueError(
                    f"Total {total} below reserved {entry.reserved_balance} for {entry.key}"
                )
            entry.total_balance = int(total)
            entry.available_balance = entry.total_balance - entry.reserved_balance
            if min_threshold is not None:
                entry.min_threshold = int(min_threshold)
            self._save(entry)
        log.info(f"Liquidity set for {chain}:{token}: total={total}")

    def credit(self, chain: str, token: str, amount: int, reason: str = ""):
        """Add funds to the pool (top-up, refunded pool HTLC, claimed source HTLC)."""
        if amount <= 0:
            raise ValueError(f"Credit amount must be positive, got {amount}")
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            entry.total_balance += amount
            entry.available_balance += amount
            self._save(entry)
        log.info(f"Liquidity credited {chain}:{token} +{amount} {reason}".rstrip())

    def debit(self, chain: str, token: str, amount: int, reason: str = ""):
        """
        Remove funds that left the pool without a reservation.

        Available may drop below zero; reserve() then refuses until the
        pool is topped up.
        """
        if amount <= 0:
            raise ValueError(f"Debit amount must be positive, got {amount}")
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            entry.total_balance -= amount
            entry.available_balance -= amount
            self._save(entry)
            available = entry.available_balance
        if available < 0:
            log.error(f"Liquidity {chain}:{token} overdrawn by {-available} after debit {reason}".rstrip())
        else:
            log.warning(f"Liquidity debited {chain}:{token} -{amount} {reason}".rstrip())
        self.health_status(chain, token)

    # =========================================================================
    # Reservation lifecycle
    # =========================================================================

    def reserve(self, chain: str, token: str, amount: int, swap_id: str) -> Reservation:
        """
        Move amount from available to reserved for swap_id.

        Reserving again for the same swap returns the existing reservation.

        Raises:
            InsufficientLiquidity: available < amount
        """
        if amount <= 0:
            raise ValueError(f"Reservation amount must be positive, got {amount}")

        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            existing = entry.reservations.get(swap_id)
            if existing is not None:
                return Reservation(chain, token, existing, swap_id)

            if entry.available_balance < amount:
                raise InsufficientLiquidity(
                    f"Insufficient liquidity on {entry.key}: available {entry.available_balance} < {amount}",
                    context={
                        "chain": chain,
                        "token": token,
                        "available": str(entry.available_balance),
                        "requested": str(amount),
                    },
                )
            entry.available_balance -= amount
            entry.reserved_balance += amount
            entry.reservations[swap_id] = amount
            self._save(entry)

        log.info(f"Liquidity reserved for {swap_id}: {amount} on {chain}:{token}")
        self.health_status(chain, token)
        return Reservation(chain, token, amount, swap_id)

    def release(self, reservation: Reservation) -> bool:
        """Return a reservation to available. Releasing twice is a no-op."""
        chain, token = reservation.chain, reservation.token
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            amount = entry.reservations.pop(reservation.swap_id, None)
            if amount is None:
                return False
            entry.reserved_balance -= amount
            entry.available_balance += amount
            self._save(entry)
        log.info(f"Liquidity released for {reservation.swap_id}: {amount} on {chain}:{token}")
        return True

    def commit(self, reservation: Reservation) -> bool:
        """Funds left the pool in a confirmed HTLC: drop them from reserved and total."""
        chain, token = reservation.chain, reservation.token
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            amount = entry.reservations.pop(reservation.swap_id, None)
            if amount is None:
                return False
            entry.reserved_balance -= amount
            entry.total_balance -= amount
            self._save(entry)
        log.info(f"Liquidity committed for {reservation.swap_id}: {amount} on {chain}:{token}")
        return True

    def reservation_for(self, chain: str, token: str, swap_id: str) -> Optional[Reservation]:
        with self._lock_for(chain, token):
            amount = self._entry(chain, token).reservations.get(swap_id)
        if amount is None:
            return None
        return Reservation(chain, token, amount, swap_id)

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, chain: str, token: str) -> LiquidityEntry:
        """Copy of the entry for (chain, token)."""
        with self._lock_for(chain, token):
            entry = self._entry(chain, token)
            return LiquidityEntry.from_dict(entry.to_dict())

    def entries(self) -> List[LiquidityEntry]:
        with self._registry_lock:
            keys = [(e.chain, e.token) for e in self._entries.values()]
        return [self.get(chain, token) for chain, token in keys]

    def health_status(self, chain: str, token: str) -> LiquidityHealth:
        entry = self.get(chain, token)
        if entry.available_balance < entry.min_threshold:
            log.warning(
                f"Pool liquidity low on {entry.key}: available={entry.available_balance} "
                f"threshold={entry.min_threshold}"
            )
            if self.on_low:
                self.on_low(chain, token)
            return LiquidityHealth.LOW
        return LiquidityHealth.HEALTHY
