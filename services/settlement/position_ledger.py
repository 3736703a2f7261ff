from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from core.logging import get_trading_logger_safe
from core.utils.exceptions import InvariantViolation
from services.ledger.interfaces.ledger_store import LedgerStore
from services.ledger.models import Position, TradeSide


@dataclass(frozen=True)
class PositionChange:
    """Planned transition of one (owner, issuer) position."""
    owner_id: str
    issuer_id: str
    previous: Optional[Position]
    quantity: int
    average_cost: Decimal

    @property
    def closes_position(self) -> bool:
        return self.quantity == 0


class PositionLedger:
    """
    Position arithmetic for buys and sells.

    Buys average the cost basis by quantity; sells leave it untouched. A
    position that reaches zero is deleted, so a later buy starts fresh at the
    new price.
    """

    def __init__(self):
        self.logger = get_trading_logger_safe("position_ledger")

    def compute(self, owner_id: str, issuer_id: str, current: Optional[Position],
                side: TradeSide, quantity: int, price: Decimal) -> PositionChange:
        held = current.quantity if current else 0

        if side == TradeSide.BUY:
            new_quantity = held + quantity
            if current is None:
                new_average = Decimal(price)
            else:
                new_average = (current.average_cost * held + Decimal(price) * quantity) / new_quantity
        else:
            new_quantity = held - quantity
            new_average = current.average_cost if current else Decimal("0")

        if new_quantity < 0:
            raise InvariantViolation(
                f"Position {owner_id}/{issuer_id} would go negative: {held} - {quantity}",
                invariant="non_negative_position",
                observed=new_quantity,
            )

        return PositionChange(owner_id=owner_id, issuer_id=issuer_id, previous=current,
                              quantity=new_quantity, average_cost=new_average)

    async def apply(self, store: LedgerStore, change: PositionChange) -> Optional[Position]:
        """Write the change with the version read alongside ``change.previous``."""
        previous = change.previous
        if change.closes_position:
            await store.delete_position(change.owner_id, change.issuer_id, previous.version)
            self.logger.debug("Position closed", owner_id=change.owner_id, issuer_id=change.issuer_id)
            return None

        return await store.upsert_position(
            change.owner_id,
            change.issuer_id,
            change.quantity,
            change.average_cost,
            expected_version=previous.version if previous else None,
        )

    @staticmethod
    def realized_pnl(position: Position, quantity: int, price: Decimal) -> Decimal:
        """Profit of selling ``quantity`` at ``price`` against the position's cost basis."""
        return quantity * (Decimal(price) - position.average_cost)
