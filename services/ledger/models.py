import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

MONEY_QUANTUM = Decimal("0.01")

# Column bounds of the SQL ledger: Numeric(14, 2) amounts, Numeric(20, 8) prices
MAX_MONEY_AMOUNT = Decimal("999999999999.99")
PRICE_QUANTUM = Decimal("0.00000001")


def quantize_money(amount: Decimal, quantum: Decimal = MONEY_QUANTUM) -> Decimal:
    """Round a currency amount to the ledger's fixed-point precision."""
    return Decimal(amount).quantize(quantum, rounding=ROUND_HALF_UP)


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class CashAccount(BaseModel):
    """
    A user's cash balance. Mutated only by settlement debits/credits.
    """
    model_config = ConfigDict(frozen=True)

    owner_id: str
    balance: Decimal = Field(ge=0)
    version: int = Field(default=1, ge=1)


class IssuerSupply(BaseModel):
    """
    Share supply counters of one issuer.

    ``available_shares`` is a cached value derived from the transaction log:
    total_shares - sum(buys) + sum(sells).
    """
    model_config = ConfigDict(frozen=True)

    issuer_id: str
    total_shares: int = Field(gt=0)
    available_shares: int = Field(ge=0)
    version: int = Field(default=1, ge=1)

    @model_validator(mode="after")
    def validate_available_within_total(self):
        if self.available_shares > self.total_shares:
            raise ValueError(
                f"available_shares {self.available_shares} exceeds total_shares {self.total_shares}"
            )
        return self

    @property
    def issued_shares(self) -> int:
        return self.total_shares - self.available_shares


class Position(BaseModel):
    """
    Represents a single (owner, issuer) holding. Never stored at zero quantity.
    """
    model_config = ConfigDict(frozen=True)

    owner_id: str
    issuer_id: str
    quantity: int = Field(gt=0)
    average_cost: Decimal = Field(ge=0)
    version: int = Field(default=1, ge=1)

    @property
    def cost_basis(self) -> Decimal:
        return self.average_cost * self.quantity


class TransactionRecord(BaseModel):
    """
    Immutable, append-only log entry written once per settled order.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    buyer_id: str
    issuer_id: str
    side: TradeSide
    quantity: int = Field(gt=0)
    price_per_unit: Decimal = Field(gt=0)
    total_amount: Decimal = Field(gt=0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def signed_quantity(self) -> int:
        """Shares leaving issuer supply (+) or returning to it (-)."""
        return self.quantity if self.side == TradeSide.BUY else -self.quantity


class RecordRef(BaseModel):
    """Identity of a ledger record, used to point operators at inconsistent state."""
    model_config = ConfigDict(frozen=True)

    record_type: str  # cash_account | issuer_supply | position | transaction
    key: str
    detail: Optional[str] = None
