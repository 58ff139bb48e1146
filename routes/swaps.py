"""
Swap inspection and operator endpoints.

  GET  /api/swaps/{id}             - Swap row
  GET  /api/swaps/{id}/operations  - Resolver audit records
  POST /api/swaps/{id}/cancel      - Cancel an unfunded PENDING swap
  POST /api/swaps/{id}/preimage    - Supply a revealed preimage
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from swapsage.core import SwapRequest, ResolverOperation
from swapsage.errors import SwapNotFound, SwapConflict, PreimageMismatch, ChainTransientError

log = logging.getLogger(__name__)

router = APIRouter()

# ---------------------------------------------------------------------------
# Set by server.py at init
# ---------------------------------------------------------------------------

_service = None


def configure(service):
    """Bind the running ResolverService. Called once at startup by server.py."""
    global _service
    _service = service


def _get_service():
    if _service is None:
        raise HTTPException(503, "Resolver service not configured")
    return _service


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class SwapResponse(BaseModel):
    id: str
    source_chain: str
    target_chain: str
    source_token: str
    target_token: str
    source_amount: str
    expected_amount: str
    hash_lock: str
    user_address: str
    user_htlc_contract: Optional[str] = None
    pool_htlc_contract: Optional[str] = None
    status: str
    failure_reason: Optional[str] = None
    preimage_known: bool
    created_at: int
    updated_at: int
    pool_claimed_at: Optional[int] = None


class OperationResponse(BaseModel):
    id: str
    swap_id: str
    operation_type: str
    status: str
    started_at: float
    completed_at: Optional[float] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int
    tx_hash: Optional[str] = None
    metadata: Dict[str, Any]


class PreimageRequest(BaseModel):
    preimage: str


def _swap_response(swap: SwapRequest) -> SwapResponse:
    data = swap.to_dict()
    data.pop("preimage")
    return SwapResponse(preimage_known=swap.preimage is not None, **data)


def _operation_response(op: ResolverOperation) -> OperationResponse:
    return OperationResponse(**op.to_dict())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@router.get("/api/swaps/{swap_id}", response_model=SwapResponse)
async def get_swap(swap_id: str):
    """Get swap status."""
    try:
        return _swap_response(_get_service().repository.get_by_id(swap_id))
    except SwapNotFound:
        raise HTTPException(404, "Swap not found")


@router.get("/api/swaps/{swap_id}/operations", response_model=List[OperationResponse])
async def get_swap_operations(swap_id: str):
    """Resolver operations for a swap, oldest first."""
    try:
        ops = _get_service().operations(swap_id)
    except SwapNotFound:
        raise HTTPException(404, "Swap not found")
    return [_operation_response(op) for op in ops]


@router.post("/api/swaps/{swap_id}/cancel", response_model=SwapResponse)
async def cancel_swap(swap_id: str):
    """Cancel a PENDING swap before any pool HTLC is funded."""
    try:
        swap = _get_service().cancel_swap(swap_id)
    except SwapNotFound:
        raise HTTPException(404, "Swap not found")
    except SwapConflict as e:
        raise HTTPException(409, str(e))
    except ChainTransientError as e:
        raise HTTPException(503, f"Target chain unavailable: {e}")
    log.info(f"Swap {swap_id} cancelled via API")
    return _swap_response(swap)


@router.post("/api/swaps/{swap_id}/preimage", response_model=SwapResponse)
async def submit_preimage(swap_id: str, req: PreimageRequest):
    """Store a revealed preimage so the resolver can claim the source HTLC."""
    try:
        swap = _get_service().submit_preimage(swap_id, req.preimage)
    except SwapNotFound:
        raise HTTPException(404, "Swap not found")
    except SwapConflict as e:
        raise HTTPException(409, str(e))
    except PreimageMismatch:
        raise HTTPException(400, "Preimage does not match swap hash lock")
    return _swap_response(swap)
