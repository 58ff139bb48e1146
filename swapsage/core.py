"""
Core types for the SwapSage resolver.

All amounts are integers in base units (wei, uatom, ...). Timestamps are
unix seconds. Hash locks and preimages are 32-byte values as 0x-prefixed hex.
"""

import hashlib
import secrets
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


class SwapStatus(Enum):
    """Swap lifecycle states."""
    PENDING = "PENDING"                 # Waiting for the resolver to fund destination
    POOL_FULFILLED = "POOL_FULFILLED"   # Pool HTLC funded on the target chain
    USER_CLAIMED = "USER_CLAIMED"       # Resolver claimed the user's source HTLC
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


TERMINAL_STATUSES = {
    SwapStatus.USER_CLAIMED,
    SwapStatus.EXPIRED,
    SwapStatus.CANCELLED,
    SwapStatus.FAILED,
}


class OperationType(Enum):
    """Audit record kinds written by the resolver."""
    VALIDATE_SOURCE_HTLC = "VALIDATE_SOURCE_HTLC"
    RESERVE_LIQUIDITY = "RESERVE_LIQUIDITY"
    FUND_POOL_HTLC = "FUND_POOL_HTLC"
    CLAIM_SOURCE_HTLC = "CLAIM_SOURCE_HTLC"
    REFUND_POOL_HTLC = "REFUND_POOL_HTLC"
    CANCEL_SWAP = "CANCEL_SWAP"


class OperationStatus(Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LiquidityHealth(Enum):
    HEALTHY = "HEALTHY"
    LOW = "LOW"


# Destination timelock defaults (seconds)
TIMELOCK_DIVISOR = 2
TIMELOCK_SAFETY_MARGIN_SECONDS = 1800
MIN_DESTINATION_WINDOW_SECONDS = 600


@dataclass
class SwapRequest:
    """A cross-chain swap as stored by the API layer and advanced by the resolver."""
    id: str
    source_chain: str
    target_chain: str
    source_token: str
    target_token: str
    source_amount: int
    expected_amount: int
    hash_lock: str
    user_address: str = ""
    preimage: Optional[str] = None
    user_htlc_contract: Optional[str] = None
    pool_htlc_contract: Optional[str] = None
    status: SwapStatus = SwapStatus.PENDING
    failure_reason: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))
    updated_at: int = field(default_factory=lambda: int(time.time()))
    pool_claimed_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        # Amounts are stored as strings so JSON never rounds them
        return {
            "id": self.id,
            "source_chain": self.source_chain,
            "target_chain": self.target_chain,
            "source_token": self.source_token,
            "target_token": self.target_token,
            "source_amount": str(self.source_amount),
            "expected_amount": str(self.expected_amount),
            "hash_lock": self.hash_lock,
            "user_address": self.user_address,
            "preimage": self.preimage,
            "user_htlc_contract": self.user_htlc_contract,
            "pool_htlc_contract": self.pool_htlc_contract,
            "status": self.status.value,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "pool_claimed_at": self.pool_claimed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SwapRequest":
        return cls(
            id=data["id"],
            source_chain=data["source_chain"],
            target_chain=data["target_chain"],
            source_token=data["source_token"],
            target_token=data["target_token"],
            source_amount=int(data["source_amount"]),
            expected_amount=int(data["expected_amount"]),
            hash_lock=normalize_hex32(data["hash_lock"]),
            user_address=data.get("user_address", ""),
            preimage=data.get("preimage"),
            user_htlc_contract=data.get("user_htlc_contract"),
            pool_htlc_contract=data.get("pool_htlc_contract"),
            status=SwapStatus(data.get("status", SwapStatus.PENDING.value)),
            failure_reason=data.get("failure_reason"),
            created_at=int(data.get("created_at") or time.time()),
            updated_at=int(data.get("updated_at") or time.time()),
            pool_claimed_at=data.get("pool_claimed_at"),
        )


@dataclass
class ResolverOperation:
    """Append-only audit record of one resolver action on a swap."""
    swap_id: str
    operation_type: OperationType
    status: OperationStatus = OperationStatus.IN_PROGRESS
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0
    tx_hash: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "swap_id": self.swap_id,
            "operation_type": self.operation_type.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
            "tx_hash": self.tx_hash,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResolverOperation":
        return cls(
            id=data["id"],
            swap_id=data["swap_id"],
            operation_type=OperationType(data["operation_type"]),
            status=OperationStatus(data["status"]),
            started_at=data.get("started_at") or time.time(),
            completed_at=data.get("completed_at"),
            error_message=data.get("error_message"),
            error_code=data.get("error_code"),
            retry_count=data.get("retry_count", 0),
            tx_hash=data.get("tx_hash"),
            metadata=dict(data.get("metadata") or {}),
        )


def token_symbol(token: str) -> str:
    """'sepolia:MONSTER' -> 'MONSTER'; raw addresses and denoms pass through."""
    return token.split(":", 1)[1] if ":" in token else token


# =============================================================================
# Secret / hash helpers
# =============================================================================

def normalize_hex32(value: str) -> str:
    """Return a lowercase 0x-prefixed 64-char hex string."""
    if value is None:
        raise ValueError("Expected 32-byte hex value, got None")
    v = value.lower()
    if v.startswith("0x"):
        v = v[2:]
    if len(v) != 64:
        raise ValueError(f"Expected 32-byte hex value, got {len(v)} hex chars")
    bytes.fromhex(v)
    return "0x" + v


def generate_secret() -> tuple:
    """
    Generate a random preimage and its SHA256 hash lock.

    Returns:
        (preimage_hex, hash_lock_hex), both 0x-prefixed
    """
    preimage = secrets.token_bytes(32)
    hash_lock = hashlib.sha256(preimage).digest()
    return "0x" + preimage.hex(), "0x" + hash_lock.hex()


def hash_preimage(preimage: str) -> str:
    """SHA256 of a 32-byte hex preimage, as 0x-prefixed hex."""
    raw = bytes.fromhex(normalize_hex32(preimage)[2:])
    return "0x" + hashlib.sha256(raw).hexdigest()


def verify_preimage(preimage: str, hash_lock: str) -> bool:
    """Check that sha256(preimage) == hash_lock."""
    try:
        return hash_preimage(preimage) == normalize_hex32(hash_lock)
    except ValueError:
        return False


# =============================================================================
# Timelock policy
# =============================================================================

def compute_destination_timelock(
    source_timelock: int,
    now: int,
    divisor: int = TIMELOCK_DIVISOR,
    safety_margin: int = TIMELOCK_SAFETY_MARGIN_SECONDS,
    min_window: int = MIN_DESTINATION_WINDOW_SECONDS,
) -> Optional[int]:
    """
    Pick the destination HTLC timelock for a source HTLC expiring at
    source_timelock.

    The destination gets 1/divisor of the remaining source window. It must
    leave the user at least min_window seconds to claim, and it must expire
    at least safety_margin seconds before the source so the resolver can
    still claim the source once the preimage is revealed.

    Returns:
        The absolute destination timelock, or None if the source window is
        too short.
    """
    remaining = source_timelock - now
    if remaining <= 0:
        return None
    dest_timelock = now + remaining // divisor
    if dest_timelock - now < min_window:
        return None
    if source_timelock - dest_timelock < safety_margin:
        return None
    return dest_timelock
