"""Domain models and ports for order placement.

This module contains the dataclasses that flow through the placement
workflow (orders, lines, stock records, payment outcomes, reservation
tokens and compensation records) and the protocol definitions (ports) for
the collaborators the orchestrator depends on: the stock ledger, the
payment processor, the order store and the notifier.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol, Sequence


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle status of an order as seen by customers."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderLine:
    """A single line item in an order.

    Attributes:
        product_id: Identifier of the product in the stock ledger.
        product_name: Display name, denormalized for receipts and emails.
        quantity: Number of units requested (must be > 0).
        unit_price_cents: Unit price in integer cents (must be >= 0).

    The dataclass is frozen because lines are immutable once attached to
    an order.
    """

    product_id: str
    product_name: str
    quantity: int
    unit_price_cents: int

    def __post_init__(self):
        if not self.product_id:
            raise ValueError("product_id must not be empty")
        if self.quantity <= 0:
            raise ValueError("quantity must be > 0")
        if self.unit_price_cents < 0:
            raise ValueError("unit_price_cents must be >= 0")

    @property
    def subtotal_cents(self) -> int:
        return self.quantity * self.unit_price_cents


@dataclass
class Order:
    """Container for order data.

    Attributes:
        id: Identifier assigned by the order store, or None if not yet saved.
        customer_id: Identifier of the ordering customer.
        lines: Order lines, in the order the customer submitted them.
        status: Current OrderStatus.
        currency: ISO currency code (e.g. 'EUR').
        created_at: UTC timestamp of the placement attempt.
        transaction_ref: Payment transaction reference once charged.

    ``total_cents`` is derived from the lines and cannot drift from them.
    """

    id: Optional[str]
    customer_id: str
    lines: tuple[OrderLine, ...]
    status: OrderStatus = OrderStatus.PENDING
    currency: str = "EUR"
    created_at: datetime = field(default_factory=utcnow)
    transaction_ref: Optional[str] = None

    def __post_init__(self):
        self.lines = tuple(self.lines)

    @property
    def total_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.lines)


@dataclass
class StockRecord:
    product_id: str
    available: int

    def __post_init__(self):
        if self.available < 0:
            raise ValueError("available must be >= 0")


@dataclass(frozen=True)
class PaymentOutcome:
    """Result of a single charge attempt.

    ``transaction_ref`` is present iff the charge succeeded and
    ``failure_reason`` is present iff it did not. Use ``approved`` and
    ``declined`` to build instances.
    """

    success: bool
    transaction_ref: Optional[str] = None
    failure_reason: Optional[str] = None

    def __post_init__(self):
        if self.success and (not self.transaction_ref or self.failure_reason):
            raise ValueError("a successful outcome needs a transaction_ref and no failure_reason")
        if not self.success and (self.transaction_ref or not self.failure_reason):
            raise ValueError("a failed outcome needs a failure_reason and no transaction_ref")

    @classmethod
    def approved(cls, transaction_ref) -> "PaymentOutcome":
        return cls(success=True, transaction_ref=str(transaction_ref))

    @classmethod
    def declined(cls, reason: str) -> "PaymentOutcome":
        return cls(success=False, failure_reason=reason)


@dataclass(frozen=True)
class ReservationToken:
    """Handle to an in-flight stock hold.

    Attributes:
        token_id: Unique identifier of the hold.
        product_id: Product the hold is placed against.
        quantity: Units held.
        expires_at: Ledger clock value after which the hold may be swept.
    """

    token_id: str
    product_id: str
    quantity: int
    expires_at: float

    @classmethod
    def new(cls, product_id: str, quantity: int, expires_at: float) -> "ReservationToken":
        return cls(uuid.uuid4().hex, product_id, quantity, expires_at)


@dataclass
class CompensationRecord:
    """Durable note that a payment succeeded without a stored order."""

    id: str
    transaction_ref: str
    reason: str
    customer_id: Optional[str] = None
    amount_cents: int = 0
    currency: str = "EUR"
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False


# ---- Ports (DIP) ----
class StockLedgerPort(Protocol):
    """Port describing the stock operations used by the orchestrator."""

    def check_availability(self, product_id: str, quantity: int) -> bool:
        """Return whether ``quantity`` units are available.

        Raises:
            ProductNotFound: If the product has no stock record.
        """
        ...

    def reserve(self, product_id: str, quantity: int) -> ReservationToken:
        """Place an expiring hold on ``quantity`` units.

        Raises:
            InsufficientStock: If held plus requested exceeds availability.
            ProductNotFound: If the product has no stock record.
        """
        ...

    def commit(self, token: ReservationToken) -> None:
        """Turn a hold into a permanent decrement. Idempotent."""
        ...

    def release(self, token: ReservationToken) -> None:
        """Drop a hold without touching the stock record."""
        ...


class PaymentsPort(Protocol):
    """Port describing payment operations used by the domain.

    Implementers must treat ``idempotency_key`` as the deduplication key
    for the charge: two calls with the same key never charge twice.
    """

    def charge(
        self, amount_cents: int, currency: str, payment_token: str, idempotency_key: str
    ) -> PaymentOutcome:
        """Charge ``amount_cents`` in ``currency`` against ``payment_token``."""
        ...


class OrderStorePort(Protocol):
    """Port describing durable order storage."""

    def save(self, order: Order, lines: Sequence[OrderLine]) -> str:
        """Atomically persist the order header and all its lines.

        Returns:
            The identifier assigned to the stored order.

        Raises:
            PersistenceFailed: If nothing could be stored.
        """
        ...

    def record_compensation(
        self,
        transaction_ref: str,
        reason: str,
        *,
        customer_id: Optional[str] = None,
        amount_cents: int = 0,
        currency: str = "EUR",
    ) -> CompensationRecord:
        """Persist a reconciliation entry for a charge without an order."""
        ...


class NotifierPort(Protocol):
    def notify(self, customer_id: str, order: Order) -> None:
        ...
