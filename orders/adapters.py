"""In-process stub adapters for the orders domain ports.

These stubs implement ``PaymentsPort`` and ``NotifierPort`` without any
network calls. They are intended for unit tests and local development
where deterministic behavior is useful and external services are not
required.
"""

import logging
import threading
import uuid

from .domain import Order, PaymentOutcome

logger = logging.getLogger(__name__)

DECLINED_TOKEN = "tok_declined"


class PaymentsStub:
    """Stub implementation of ``PaymentsPort``.

    Approves any non-negative amount and returns a generated UUID as the
    transaction reference. The payment token ``tok_declined`` is always
    declined. Charges are deduplicated by idempotency key, so a repeated
    key returns the first outcome without charging again.

    Attributes:
        charges: List of ``(amount_cents, currency, payment_token,
            idempotency_key)`` tuples for every charge actually performed.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: dict[str, PaymentOutcome] = {}
        self.charges: list[tuple[int, str, str, str]] = []

    def charge(
        self, amount_cents: int, currency: str, payment_token: str, idempotency_key: str
    ) -> PaymentOutcome:
        """Charge a mock payment.

        Args:
            amount_cents: Amount to charge in minor units (cents).
            currency: Three-letter ISO currency code (e.g., EUR, USD).
            payment_token: Customer payment method token.
            idempotency_key: Deduplication key for this charge.

        Returns:
            PaymentOutcome: approved with a random UUID reference, or
            declined for negative amounts and the declined test token.
        """
        with self._lock:
            if idempotency_key in self._by_key:
                return self._by_key[idempotency_key]
            if amount_cents < 0:
                outcome = PaymentOutcome.declined("INVALID_AMOUNT")
            elif payment_token == DECLINED_TOKEN:
                outcome = PaymentOutcome.declined("CARD_DECLINED")
            else:
                outcome = PaymentOutcome.approved(uuid.uuid4())
                self.charges.append((amount_cents, currency, payment_token, idempotency_key))
            self._by_key[idempotency_key] = outcome
            return outcome


class LoggingNotifier:
    """Notifier that logs instead of sending anything.

    Attributes:
        sent: ``(customer_id, order_id)`` pairs in the order they were sent.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[tuple[str, str]] = []

    def notify(self, customer_id: str, order: Order) -> None:
        with self._lock:
            self.sent.append((customer_id, order.id))
        logger.info(
            "order confirmation",
            extra={"customer_id": customer_id, "order_id": order.id, "total_cents": order.total_cents},
        )
