from decimal import Decimal

import pytest

from services.ledger.models import CashAccount, IssuerSupply, Position
from services.settlement.models import Accepted, LedgerSnapshot, Rejected, RejectionReason
from services.settlement.validator import OrderValidator
from tests.factories import ALICE, ISSUER, make_order


def snapshot(balance="1000.00", available=100, total=100, held=None):
    return LedgerSnapshot(
        cash_account=CashAccount(owner_id=ALICE, balance=Decimal(balance), version=4),
        issuer_supply=IssuerSupply(issuer_id=ISSUER, total_shares=total, available_shares=available, version=7),
        position=(Position(owner_id=ALICE, issuer_id=ISSUER, quantity=held, average_cost=Decimal("10"))
                  if held else None),
    )


@pytest.fixture
def validator():
    return OrderValidator()


def test_accepted_buy_carries_snapshot_versions(validator):
    snap = snapshot()
    verdict = validator.validate(make_order("buy", 10, "10.00"), snap)
    assert isinstance(verdict, Accepted)
    assert verdict.snapshot.cash_account.version == 4
    assert verdict.snapshot.issuer_supply.version == 7


@pytest.mark.parametrize("quantity", [0, -5])
def test_non_positive_quantity_rejected(validator, quantity):
    verdict = validator.validate(make_order("buy", quantity, "10.00"), snapshot())
    assert isinstance(verdict, Rejected)
    assert verdict.reason is RejectionReason.INVALID_QUANTITY
    assert verdict.reason_code == "invalid_quantity"
    assert verdict.retryable is False


@pytest.mark.parametrize("price", ["0", "-1.00", "NaN", "Infinity", "0.001"])
def test_bad_price_rejected(validator, price):
    verdict = validator.validate(make_order("buy", 1, price), snapshot())
    assert isinstance(verdict, Rejected)
    assert verdict.reason is RejectionReason.INVALID_PRICE


def test_quantity_checked_before_price(validator):
    verdict = validator.validate(make_order("buy", 0, "-1"), snapshot())
    assert verdict.reason is RejectionReason.INVALID_QUANTITY


def test_missing_account_and_issuer(validator):
    order = make_order("buy", 1, "1.00")
    assert validator.validate(order, LedgerSnapshot()).reason is RejectionReason.ACCOUNT_NOT_FOUND

    no_issuer = LedgerSnapshot(cash_account=CashAccount(owner_id=ALICE, balance=Decimal("5")))
    assert validator.validate(order, no_issuer).reason is RejectionReason.ISSUER_NOT_FOUND


def test_insufficient_funds_checked_before_supply(validator):
    # Both funds and supply are short; funds is reported
    verdict = validator.validate(make_order("buy", 200, "10.00"), snapshot(balance="100.00", available=50))
    assert verdict.reason is RejectionReason.INSUFFICIENT_FUNDS


def test_exact_balance_is_enough(validator):
    verdict = validator.validate(make_order("buy", 100, "10.00"), snapshot(balance="1000.00"))
    assert isinstance(verdict, Accepted)


def test_insufficient_supply(validator):
    verdict = validator.validate(make_order("buy", 51, "1.00"), snapshot(available=50))
    assert verdict.reason is RejectionReason.INSUFFICIENT_SUPPLY


def test_sell_requires_holdings(validator):
    assert validator.validate(make_order("sell", 1, "1.00"), snapshot()).reason \
        is RejectionReason.INSUFFICIENT_HOLDINGS
    assert validator.validate(make_order("sell", 6, "1.00"), snapshot(held=5)).reason \
        is RejectionReason.INSUFFICIENT_HOLDINGS
    assert isinstance(validator.validate(make_order("sell", 5, "1.00"), snapshot(held=5)), Accepted)


def test_sell_ignores_cash_and_supply(validator):
    verdict = validator.validate(make_order("sell", 5, "1000.00"),
                                 snapshot(balance="0", available=0, held=5))
    assert isinstance(verdict, Accepted)


def test_total_amount_rounds_half_up(validator):
    assert validator.total_amount(make_order("buy", 3, "0.335")) == Decimal("1.01")
    assert validator.total_amount(make_order("buy", 1, "0.005")) == Decimal("0.01")


@pytest.mark.parametrize("quantity, price", [
    (10**27, "10.00"),
    (1, "1E+30"),
    (1_000_000_000, "1000.00"),
])
def test_total_beyond_ledger_range_rejected(validator, quantity, price):
    verdict = validator.validate(make_order("buy", quantity, price), snapshot())
    assert isinstance(verdict, Rejected)
    assert verdict.reason is RejectionReason.INVALID_PRICE
    assert "exceeds" in verdict.message


def test_largest_storable_total_still_validates(validator):
    verdict = validator.validate(make_order("buy", 1, "999999999999.99"),
                                 snapshot(balance="999999999999.99"))
    assert isinstance(verdict, Accepted)


def test_price_finer_than_stored_precision_rejected(validator):
    # Total is a full cent, but the price itself cannot be stored to 8 places
    verdict = validator.validate(make_order("buy", 10_000_000, "0.000000001"),
                                 snapshot(available=10**8, total=10**8))
    assert verdict.reason is RejectionReason.INVALID_PRICE
    assert "decimal places" in verdict.message

    trailing_zeros = validator.validate(make_order("buy", 1, "1.0000000000"), snapshot())
    assert isinstance(trailing_zeros, Accepted)
