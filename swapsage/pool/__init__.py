from .ledger import LiquidityLedger, LiquidityEntry, Reservation

__all__ = ["LiquidityLedger", "LiquidityEntry", "Reservation"]
