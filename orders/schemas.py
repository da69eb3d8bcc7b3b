"""Pydantic schemas for order placement requests.

This module exposes lightweight request/validation schemas used at the
boundary of the service layer, for callers that receive untrusted
payloads (HTTP handlers, queue consumers).
"""

import re

from pydantic import BaseModel, Field, field_validator

from .domain import OrderLine

PRODUCT_ID_RE = re.compile(r"^[A-Z0-9_-]{1,64}$")


class OrderLineIn(BaseModel):
    """Input schema for a single order line.

    Attributes:
        product_id: Product identifier. Normalized to uppercase and
            validated against a regex (uppercase letters, digits, '_' and '-').
        product_name: Display name shown on receipts.
        quantity: Positive integer indicating units requested.
        unit_price_cents: Non-negative unit price in integer cents.
    """

    product_id: str = Field(min_length=1, max_length=64)
    product_name: str = Field(min_length=1, max_length=255)
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        """Validate and normalize the product id to uppercase.

        Raises:
            ValueError: When the id does not match the expected pattern.
        """
        v2 = v.strip().upper()
        if not PRODUCT_ID_RE.match(v2):
            raise ValueError("Invalid product id format")
        return v2

    def to_domain(self) -> OrderLine:
        return OrderLine(self.product_id, self.product_name, self.quantity, self.unit_price_cents)


class PlaceOrderDTO(BaseModel):
    """Schema for placing an order.

    Attributes:
        customer_id: Identifier of the ordering customer.
        payment_token: Customer payment method token.
        lines: At least one ``OrderLineIn``.
    """

    customer_id: str = Field(min_length=1, max_length=64)
    payment_token: str = Field(min_length=1)
    lines: list[OrderLineIn] = Field(min_length=1)

    def to_lines(self) -> list[OrderLine]:
        return [line.to_domain() for line in self.lines]
