from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from services.ledger.models import (
    CashAccount,
    IssuerSupply,
    Position,
    RecordRef,
    TradeSide,
)


class Order(BaseModel):
    """
    A request to buy shares from, or redeem shares to, an issuer.

    Quantity and price are not constrained here: the OrderValidator owns those
    checks so a bad order becomes a Rejected outcome rather than an exception.
    """
    model_config = ConfigDict(frozen=True)

    buyer_id: str
    issuer_id: str
    side: TradeSide
    quantity: int
    price_per_unit: Decimal = Field(allow_inf_nan=True)


class LedgerSnapshot(BaseModel):
    """Records read together for one validation pass. Any may be absent."""
    model_config = ConfigDict(frozen=True)

    cash_account: Optional[CashAccount] = None
    issuer_supply: Optional[IssuerSupply] = None
    position: Optional[Position] = None


class RejectionReason(str, Enum):
    INVALID_QUANTITY = "invalid_quantity"
    INVALID_PRICE = "invalid_price"
    ACCOUNT_NOT_FOUND = "account_not_found"
    ISSUER_NOT_FOUND = "issuer_not_found"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_SUPPLY = "insufficient_supply"
    INSUFFICIENT_HOLDINGS = "insufficient_holdings"


class FailureReason(str, Enum):
    STORAGE_FAILURE = "storage_failure"
    INVARIANT_VIOLATION = "invariant_violation"


class SettlementStatus(str, Enum):
    SETTLED = "settled"
    REJECTED = "rejected"
    CONTENDED = "contended"
    FAILED = "failed"
    PARTIAL_FAILURE = "partial_failure"


class Accepted(BaseModel):
    """Validator verdict carrying the snapshot whose versions the writes must match."""
    model_config = ConfigDict(frozen=True)

    order: Order
    snapshot: LedgerSnapshot


class SettlementOutcome(BaseModel):
    """Terminal result of one settle() call."""
    model_config = ConfigDict(frozen=True)

    status: SettlementStatus
    reason_code: str
    message: str = ""
    retryable: bool = False

    @property
    def is_settled(self) -> bool:
        return self.status == SettlementStatus.SETTLED

    def to_dict(self) -> dict:
        return self.model_dump(mode="json")


class Settled(SettlementOutcome):
    status: SettlementStatus = SettlementStatus.SETTLED
    reason_code: str = "settled"
    transaction_id: str


class Rejected(SettlementOutcome):
    """Validation failure. Reported to the caller, never retried."""
    status: SettlementStatus = SettlementStatus.REJECTED
    reason: RejectionReason

    @model_validator(mode="before")
    @classmethod
    def fill_reason_code(cls, data):
        if isinstance(data, dict) and "reason_code" not in data and "reason" in data:
            data = {**data, "reason_code": RejectionReason(data["reason"]).value}
        return data


class Contended(SettlementOutcome):
    status: SettlementStatus = SettlementStatus.CONTENDED
    reason_code: str = "contended"
    retryable: bool = True
    attempts: int


class SettlementFailed(SettlementOutcome):
    """The saga aborted and every completed step was compensated."""
    status: SettlementStatus = SettlementStatus.FAILED
    reason_code: FailureReason
    transaction_id: Optional[str] = None


class PartialFailure(SettlementOutcome):
    """A compensating write failed; the listed records need reconciliation."""
    status: SettlementStatus = SettlementStatus.PARTIAL_FAILURE
    reason_code: str = "partial_failure"
    transaction_id: str
    inconsistent_records: List[RecordRef] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
