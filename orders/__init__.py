"""Order placement core: stock ledger, payments, order store, orchestrator."""

from .domain import CompensationRecord, Order, OrderLine, OrderStatus, PaymentOutcome, ReservationToken, StockRecord
from .errors import (
    IdempotencyConflict,
    IdempotencyInProgress,
    InsufficientStock,
    InvalidOrder,
    OrderError,
    OrderNotFound,
    PaidButUnpersisted,
    PaymentFailed,
    PersistenceFailed,
    ProductNotFound,
    ReservationInvalid,
    StockCommitFailed,
)
from .service import OrderService, Placement, PlacementState

__all__ = [
    "CompensationRecord",
    "IdempotencyConflict",
    "IdempotencyInProgress",
    "InsufficientStock",
    "InvalidOrder",
    "Order",
    "OrderError",
    "OrderLine",
    "OrderNotFound",
    "OrderService",
    "OrderStatus",
    "PaidButUnpersisted",
    "PaymentFailed",
    "PaymentOutcome",
    "PersistenceFailed",
    "Placement",
    "PlacementState",
    "ProductNotFound",
    "ReservationInvalid",
    "ReservationToken",
    "StockCommitFailed",
    "StockRecord",
]
