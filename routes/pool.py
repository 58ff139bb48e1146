"""
Pool liquidity endpoints.

  GET  /api/pool/liquidity  - Ledger entries with health
  POST /api/pool/liquidity  - Credit funds to a (chain, token) entry
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from swapsage.core import token_symbol

log = logging.getLogger(__name__)

router = APIRouter()

_service = None


def configure(service):
    """Bind the running ResolverService. Called once at startup by server.py."""
    global _service
    _service = service


def _get_service():
    if _service is None:
        raise HTTPException(503, "Resolver service not configured")
    return _service


class LiquidityResponse(BaseModel):
    chain: str
    token: str
    total_balance: str
    available_balance: str
    reserved_balance: str
    min_threshold: str
    active_reservations: int
    health: str


class LiquidityCredit(BaseModel):
    chain: str
    token: str
    amount: str                     # base units, decimal string
    min_threshold: Optional[str] = None


@router.get("/api/pool/liquidity", response_model=List[LiquidityResponse])
async def get_liquidity():
    """All ledger entries."""
    ledger = _get_service().ledger
    out = []
    for entry in ledger.entries():
        row = entry.to_dict()
        row.pop("reservations")
        out.append(LiquidityResponse(
            active_reservations=len(entry.reservations),
            health=ledger.health_status(entry.chain, entry.token).value,
            **row,
        ))
    return out


@router.post("/api/pool/liquidity", response_model=LiquidityResponse)
async def credit_liquidity(req: LiquidityCredit):
    """Operator top-up."""
    service = _get_service()
    if req.chain not in service.clients:
        raise HTTPException(400, f"Unknown chain: {req.chain}")
    try:
        amount = int(req.amount)
    except ValueError:
        raise HTTPException(400, "amount must be an integer in base units")
    if amount <= 0:
        raise HTTPException(400, "amount must be positive")

    token = token_symbol(req.token)
    service.ledger.credit(req.chain, token, amount, reason="(operator top-up)")
    if req.min_threshold is not None:
        entry = service.ledger.get(req.chain, token)
        service.ledger.set_balance(req.chain, token, entry.total_balance, min_threshold=int(req.min_threshold))

    entry = service.ledger.get(req.chain, token)
    row = entry.to_dict()
    row.pop("reservations")
    return LiquidityResponse(
        active_reservations=len(entry.reservations),
        health=service.ledger.health_status(req.chain, token).value,
        **row,
    )
