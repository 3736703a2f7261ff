"""
Settlement Service

Validates orders against a ledger snapshot and applies accepted ones as a
compensated sequence of version-checked writes.
"""

from .coordinator import SettlementCoordinator
from .models import (
    Contended,
    Order,
    PartialFailure,
    Rejected,
    RejectionReason,
    Settled,
    SettlementFailed,
    SettlementOutcome,
)
from .position_ledger import PositionLedger
from .validator import OrderValidator

__all__ = [
    "SettlementCoordinator",
    "OrderValidator",
    "PositionLedger",
    "Order",
    "SettlementOutcome",
    "Settled",
    "Rejected",
    "RejectionReason",
    "Contended",
    "SettlementFailed",
    "PartialFailure",
]
