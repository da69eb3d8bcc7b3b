"""Error taxonomy for order placement.

Every error is a ``ValueError`` whose string form is a short, upper-case
code (e.g. ``"PAYMENT_FAILED"``) so callers can map it to a response
without parsing messages. Structured details travel as attributes.
"""

from typing import Optional


class OrderError(ValueError):
    """Base class for all order placement failures.

    Attributes:
        code: Short error code, also returned by ``str(err)``.
        detail: Optional human readable explanation.
        placement: The placement the orchestrator ended in, attached by
            ``OrderService`` before the error is raised to the caller.
    """

    code = "ORDER_ERROR"

    def __init__(self, detail: Optional[str] = None, *, code: Optional[str] = None):
        if code is not None:
            self.code = code
        super().__init__(self.code)
        self.detail = detail
        self.placement = None

    def __str__(self) -> str:
        return self.code


class InvalidOrder(OrderError):
    """The order request itself is unusable (empty or malformed)."""

    code = "INVALID_ORDER"


class ProductNotFound(OrderError):
    code = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        super().__init__(f"no stock record for product {product_id!r}")
        self.product_id = product_id


class InsufficientStock(OrderError):
    """Requested quantity exceeds what the ledger can hand out."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: Optional[int] = None):
        msg = f"product {product_id!r}: requested {requested}"
        if available is not None:
            msg += f", available {available}"
        super().__init__(msg)
        self.product_id = product_id
        self.requested = requested
        self.available = available


class PaymentFailed(OrderError):
    """The processor declined, errored or did not answer in time.

    Attributes:
        reason: Failure reason reported by the processor or the client.
        timed_out: True when the charge exceeded the payment timeout.
    """

    code = "PAYMENT_FAILED"

    def __init__(self, reason: str, timed_out: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.timed_out = timed_out


class PersistenceFailed(OrderError):
    code = "PERSISTENCE_FAILED"


class PaidButUnpersisted(OrderError):
    """Payment was captured but the order could not be stored.

    This is never a plain failure: the customer was charged. The calling
    layer is expected to alert an operator, who resolves the attached
    compensation record.
    """

    code = "PAID_BUT_UNPERSISTED"

    def __init__(self, transaction_ref: str, compensation=None, reason: Optional[str] = None):
        super().__init__(reason)
        self.transaction_ref = transaction_ref
        self.compensation = compensation


class StockCommitFailed(OrderError):
    """Stock could not be decremented for an order that is already stored.

    The order stays confirmed; ``order`` carries it so the caller can still
    report success to the customer while alerting operators.
    """

    code = "STOCK_COMMIT_FAILED"

    def __init__(self, order, product_ids: list[str]):
        super().__init__(f"commit failed for products {', '.join(product_ids)}")
        self.order = order
        self.product_ids = product_ids


class ReservationInvalid(OrderError):
    code = "RESERVATION_INVALID"


class OrderNotFound(OrderError):
    code = "ORDER_NOT_FOUND"


class IdempotencyConflict(OrderError):
    """The idempotency key was already used with a different payload."""

    code = "IDEMPOTENCY_CONFLICT"


class IdempotencyInProgress(OrderError):
    code = "IDEMPOTENCY_IN_PROGRESS"
