"""Unit tests for the domain value types."""

import pytest

from orders.domain import CompensationRecord, Order, OrderLine, OrderStatus, PaymentOutcome, StockRecord
from orders.errors import InsufficientStock, PaymentFailed


def test_order_total_is_sum_of_line_subtotals():
    order = Order(
        id=None,
        customer_id="c1",
        lines=[OrderLine("P1", "Mug", 2, 1000), OrderLine("P2", "Pot", 1, 4000)],
    )
    assert order.total_cents == 6000
    assert order.status == OrderStatus.PENDING
    assert isinstance(order.lines, tuple)
    assert order.created_at.tzinfo is not None


@pytest.mark.parametrize("qty,price", [(0, 100), (-1, 100), (1, -1)])
def test_order_line_rejects_invalid_values(qty, price):
    with pytest.raises(ValueError):
        OrderLine("P1", "Mug", qty, price)


def test_order_line_is_immutable():
    line = OrderLine("P1", "Mug", 1, 100)
    with pytest.raises(Exception):
        line.quantity = 5


def test_stock_record_never_negative():
    with pytest.raises(ValueError):
        StockRecord("P1", -1)


def test_payment_outcome_invariants():
    ok = PaymentOutcome.approved("tx-1")
    assert ok.success and ok.transaction_ref == "tx-1" and ok.failure_reason is None
    no = PaymentOutcome.declined("CARD_DECLINED")
    assert not no.success and no.transaction_ref is None

    with pytest.raises(ValueError):
        PaymentOutcome(success=True)
    with pytest.raises(ValueError):
        PaymentOutcome(success=False, transaction_ref="tx", failure_reason="x")


def test_errors_stringify_to_codes():
    assert str(InsufficientStock("P1", 3, 1)) == "INSUFFICIENT_STOCK"
    err = PaymentFailed("TIMEOUT", timed_out=True)
    assert str(err) == "PAYMENT_FAILED" and err.timed_out
    assert isinstance(err, ValueError)


def test_compensation_record_defaults():
    rec = CompensationRecord(id="c", transaction_ref="tx", reason="db down")
    assert rec.resolved is False
