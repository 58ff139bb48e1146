"""
Exception hierarchy for the SwapSage resolver.

Chain clients translate library errors into these classes; the engine
decides retry / fail / quarantine by class.
"""

from typing import Optional, Dict, Any


class ResolverError(Exception):
    """Base error. Carries a stable code and a context dict for the audit log."""

    code = "RESOLVER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        if code:
            self.code = code
        self.context = context or {}


class ConfigError(ResolverError):
    code = "CONFIG_ERROR"


class ValidationError(ResolverError):
    """Source HTLC or swap row does not satisfy the resolver's checks."""
    code = "VALIDATION_ERROR"


class SourceExpired(ValidationError):
    """Source HTLC is past (or too close to) its timelock."""
    code = "SOURCE_EXPIRED"


class InsufficientLiquidity(ResolverError):
    code = "INSUFFICIENT_LIQUIDITY"


class SwapNotFound(ResolverError):
    code = "SWAP_NOT_FOUND"


class SwapConflict(ResolverError):
    """Swap is not in a status that allows the requested action."""
    code = "SWAP_CONFLICT"


class ChainTransientError(ResolverError):
    """RPC timeout, dropped connection, gas spike. Retried with backoff."""
    code = "CHAIN_TRANSIENT"


class AmbiguousSubmission(ChainTransientError):
    """Transaction was broadcast but its outcome is unknown. Never retried blindly."""
    code = "AMBIGUOUS_SUBMISSION"

    def __init__(self, message: str, tx_hash: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.tx_hash = tx_hash


class ChainRejected(ResolverError):
    """The chain refused the call. Not retryable."""
    code = "CHAIN_REJECTED"


class HTLCNotFound(ChainRejected):
    code = "HTLC_NOT_FOUND"


class InsufficientFunds(ChainRejected):
    code = "INSUFFICIENT_FUNDS"


class InvalidTimelock(ChainRejected):
    code = "INVALID_TIMELOCK"


class AlreadyClaimed(ChainRejected):
    code = "ALREADY_CLAIMED"


class AlreadyRefunded(ChainRejected):
    code = "ALREADY_REFUNDED"


class NotYetClaimable(ChainRejected):
    code = "NOT_YET_CLAIMABLE"


class NotYetExpired(ChainRejected):
    code = "NOT_YET_EXPIRED"


class ContractExists(ChainRejected):
    """A contract already exists under the requested id."""
    code = "CONTRACT_EXISTS"


class PreimageMismatch(ResolverError):
    """Revealed preimage does not hash to the expected lock. Quarantines the swap."""
    code = "PREIMAGE_MISMATCH"


# Keyword fragments seen in contract revert reasons, most specific first
_REJECTION_PATTERNS = (
    (("already claimed", "alreadyclaimed"), AlreadyClaimed),
    (("already refunded", "alreadyrefunded"), AlreadyRefunded),
    (("already exists", "contract exists", "exists"), ContractExists),
    (("not refundable", "not expired", "timelock not"), NotYetExpired),
    (("not claimable", "expired", "timelock passed"), NotYetClaimable),
    (("invalid timelock", "timelock"), InvalidTimelock),
    (("preimage", "hashlock", "hash lock"), PreimageMismatch),
    (("insufficient funds", "insufficient balance", "exceeds balance", "allowance"), InsufficientFunds),
    (("not found", "does not exist", "invalid contract"), HTLCNotFound),
)


def classify_rejection(message: str, context: Optional[Dict[str, Any]] = None) -> ResolverError:
    """Map a revert / rejection message to the most specific error class."""
    lowered = (message or "").lower()
    for fragments, cls in _REJECTION_PATTERNS:
        if any(f in lowered for f in fragments):
            return cls(message, context=context)
    return ChainRejected(message, context=context)
