"""
Chain-agnostic HTLC client interface.

The resolver engine only talks to HTLCClient; each chain family provides
one implementation.
"""

from abc import ABC, abstractmethod
from enum import IntEnum
from dataclasses import dataclass
from typing import Optional, Dict, Any


class HTLCState(IntEnum):
    """On-chain HTLC state, same numbering as the contract."""
    INVALID = 0
    OPEN = 1
    CLAIMED = 2
    REFUNDED = 3


@dataclass
class HTLCDetails:
    """Snapshot of one HTLC as reported by its chain."""
    contract_id: str
    token: str
    beneficiary: str
    originator: str
    hash_lock: str          # 0x-prefixed hex
    timelock: int           # unix seconds
    value: int              # base units
    state: HTLCState

    def to_dict(self) -> Dict[str, Any]:
        return {
            "contract_id": self.contract_id,
            "token": self.token,
            "beneficiary": self.beneficiary,
            "originator": self.originator,
            "hash_lock": self.hash_lock,
            "timelock": self.timelock,
            "value": str(self.value),
            "state": self.state.name,
        }


@dataclass
class TxReceipt:
    """Confirmed transaction."""
    tx_hash: str
    contract_id: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[int] = None


class HTLCClient(ABC):
    """
    Uniform HTLC capability set.

    State-changing calls submit exactly one HTLC transaction and block until
    it is confirmed or the configured timeout passes. They do not retry;
    retry policy belongs to the caller.

    Raises (from errors.py):
        HTLCNotFound, ChainRejected subclasses, ChainTransientError,
        AmbiguousSubmission
    """

    chain_name: str = ""

    @property
    @abstractmethod
    def pool_address(self) -> str:
        """Address of the pool wallet that signs for this chain."""

    @abstractmethod
    def get_details(self, contract_id: str) -> HTLCDetails:
        """Raises HTLCNotFound if the contract does not exist."""

    @abstractmethod
    def is_claimable(self, contract_id: str) -> bool:
        ...

    @abstractmethod
    def is_refundable(self, contract_id: str) -> bool:
        ...

    @abstractmethod
    def fund(self, contract_id: str, token: str, beneficiary: str,
             hash_lock: str, timelock: int, value: int) -> TxReceipt:
        ...

    @abstractmethod
    def claim(self, contract_id: str, preimage: str) -> TxReceipt:
        ...

    @abstractmethod
    def refund(self, contract_id: str) -> TxReceipt:
        ...

    @abstractmethod
    def current_time(self) -> int:
        """Timestamp of the latest block."""

    @abstractmethod
    def get_claim_preimage(self, contract_id: str) -> Optional[str]:
        """Preimage revealed by the claim of contract_id, if it can be found."""

    @abstractmethod
    def derive_contract_id(self, seed: str) -> str:
        """Deterministic contract id for a seed such as '<swap_id>-pool'."""

    def resolve_token(self, token: str) -> str:
        """Map 'chain:SYMBOL' or 'SYMBOL' to an on-chain address/denom."""
        tokens = getattr(self, "tokens", {}) or {}
        symbol = token.split(":", 1)[1] if ":" in token else token
        if symbol in tokens:
            return tokens[symbol]
        if symbol.upper() in tokens:
            return tokens[symbol.upper()]
        return symbol

    def same_address(self, a: str, b: str) -> bool:
        return (a or "").lower() == (b or "").lower()
