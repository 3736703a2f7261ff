"""Order and ledger builders shared by the test suites."""
from decimal import Decimal

from services.ledger.models import TradeSide
from services.settlement.models import Order

ISSUER = "issuer-ada"
ALICE = "alice"
BOB = "bob"


def make_order(side: str, quantity, price, buyer_id: str = ALICE, issuer_id: str = ISSUER) -> Order:
    return Order(
        buyer_id=buyer_id,
        issuer_id=issuer_id,
        side=TradeSide(side),
        quantity=quantity,
        price_per_unit=Decimal(str(price)),
    )
