"""Tests for payload validation at the service boundary."""

import pytest
from pydantic import ValidationError

from orders.domain import OrderStatus
from orders.errors import InvalidOrder
from orders.schemas import PlaceOrderDTO
from orders.service import OrderService

PAYLOAD = {
    "customer_id": "cust-1",
    "payment_token": "tok_visa",
    "lines": [
        {"product_id": "p1", "product_name": "Mug", "quantity": 2, "unit_price_cents": 1000},
        {"product_id": "P2", "product_name": "Teapot", "quantity": 1, "unit_price_cents": 4000},
    ],
}


def test_dto_normalizes_product_ids():
    dto = PlaceOrderDTO.model_validate(PAYLOAD)
    lines = dto.to_lines()
    assert [l.product_id for l in lines] == ["P1", "P2"]
    assert sum(l.subtotal_cents for l in lines) == 6000


@pytest.mark.parametrize(
    "line",
    [
        {"product_id": "bad id!", "product_name": "x", "quantity": 1, "unit_price_cents": 1},
        {"product_id": "P1", "product_name": "x", "quantity": 0, "unit_price_cents": 1},
        {"product_id": "P1", "product_name": "x", "quantity": 1, "unit_price_cents": -1},
    ],
)
def test_dto_rejects_bad_lines(line):
    with pytest.raises(ValidationError):
        PlaceOrderDTO.model_validate({**PAYLOAD, "lines": [line]})


def test_dto_requires_lines():
    with pytest.raises(ValidationError):
        PlaceOrderDTO.model_validate({**PAYLOAD, "lines": []})


def test_place_order_from_payload(ledger, store, payments):
    service = OrderService(ledger, payments, store)
    out = service.place_order_from_payload(PAYLOAD)
    assert out.status == OrderStatus.CONFIRMED
    assert out.total_cents == 6000


def test_place_order_from_invalid_payload(ledger, store, payments):
    service = OrderService(ledger, payments, store)
    with pytest.raises(InvalidOrder) as e:
        service.place_order_from_payload({"customer_id": "c"})
    assert str(e.value) == "INVALID_PAYLOAD"
    assert payments.charges == []
