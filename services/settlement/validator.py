# Order validation against a ledger snapshot
from decimal import Decimal
from typing import Optional, Union

from core.logging import get_trading_logger_safe
from services.ledger.models import (
    MAX_MONEY_AMOUNT,
    MONEY_QUANTUM,
    PRICE_QUANTUM,
    TradeSide,
    quantize_money,
)
from .models import Accepted, LedgerSnapshot, Order, Rejected, RejectionReason


class OrderValidator:
    """
    Pure accept/reject decision for an order.

    Checks run in a fixed order and stop at the first failure:
    quantity, price, account, issuer, then funds and supply for buys or
    holdings for sells. No side effects beyond a debug log line.
    """

    def __init__(self, money_quantum: Decimal = MONEY_QUANTUM):
        self.money_quantum = money_quantum
        self.logger = get_trading_logger_safe("order_validator")
        self.checks = [
            self._check_quantity,
            self._check_price,
            self._check_account_exists,
            self._check_issuer_exists,
            self._check_funds,
            self._check_supply,
            self._check_holdings,
        ]

    def total_amount(self, order: Order) -> Decimal:
        """Cash moved by the order, rounded to the ledger's currency precision."""
        return quantize_money(order.price_per_unit * order.quantity, self.money_quantum)

    def validate(self, order: Order, snapshot: LedgerSnapshot) -> Union[Accepted, Rejected]:
        for check in self.checks:
            rejection = check(order, snapshot)
            if rejection is not None:
                self.logger.debug("Order rejected",
                                  buyer_id=order.buyer_id,
                                  issuer_id=order.issuer_id,
                                  side=order.side.value,
                                  quantity=order.quantity,
                                  reason=rejection.reason.value)
                return rejection
        return Accepted(order=order, snapshot=snapshot)

    def _check_quantity(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        quantity = order.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            return Rejected(reason=RejectionReason.INVALID_QUANTITY,
                            message=f"Quantity must be a positive whole number of shares, got {quantity}")
        return None

    def _check_price(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        price = order.price_per_unit
        if not isinstance(price, Decimal) or not price.is_finite() or price <= 0:
            return Rejected(reason=RejectionReason.INVALID_PRICE,
                            message=f"Price per unit must be a positive finite amount, got {price}")
        # Totals and prices must fit the SQL ledger columns
        if price > MAX_MONEY_AMOUNT or price * order.quantity > MAX_MONEY_AMOUNT:
            return Rejected(reason=RejectionReason.INVALID_PRICE,
                            message=f"Order total at {price} per share exceeds {MAX_MONEY_AMOUNT}")
        if price != price.quantize(PRICE_QUANTUM):
            return Rejected(reason=RejectionReason.INVALID_PRICE,
                            message=f"Price per unit {price} has more than "
                                    f"{-PRICE_QUANTUM.as_tuple().exponent} decimal places")
        if self.total_amount(order) <= 0:
            return Rejected(reason=RejectionReason.INVALID_PRICE,
                            message=f"Order total at {price} per share rounds to zero")
        return None

    def _check_account_exists(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        if snapshot.cash_account is None:
            return Rejected(reason=RejectionReason.ACCOUNT_NOT_FOUND,
                            message=f"No cash account for {order.buyer_id}")
        return None

    def _check_issuer_exists(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        if snapshot.issuer_supply is None:
            return Rejected(reason=RejectionReason.ISSUER_NOT_FOUND,
                            message=f"Issuer {order.issuer_id} has not issued shares")
        return None

    def _check_funds(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        if order.side != TradeSide.BUY:
            return None
        required = self.total_amount(order)
        balance = snapshot.cash_account.balance
        if balance < required:
            return Rejected(reason=RejectionReason.INSUFFICIENT_FUNDS,
                            message=f"Balance {balance} is less than the {required} required")
        return None

    def _check_supply(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        if order.side != TradeSide.BUY:
            return None
        available = snapshot.issuer_supply.available_shares
        if available < order.quantity:
            return Rejected(reason=RejectionReason.INSUFFICIENT_SUPPLY,
                            message=f"Only {available} shares of {order.issuer_id} available, "
                                    f"{order.quantity} requested")
        return None

    def _check_holdings(self, order: Order, snapshot: LedgerSnapshot) -> Optional[Rejected]:
        if order.side != TradeSide.SELL:
            return None
        held = snapshot.position.quantity if snapshot.position else 0
        if held < order.quantity:
            return Rejected(reason=RejectionReason.INSUFFICIENT_HOLDINGS,
                            message=f"Holding {held} shares of {order.issuer_id}, cannot sell {order.quantity}")
        return None
