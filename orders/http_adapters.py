"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the payment and
notification ports using ``httpx``. It adds:

- Attempt correlation: propagates ``X-Attempt-ID`` from the ContextVar set
    by ``OrderService`` for the duration of a placement.
- Circuit breaker per downstream service (payments, notifications) to avoid
    hammering unhealthy dependencies, with a single HALF_OPEN trial call after
    a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
- Payments idempotency: every charge carries an ``Idempotency-Key`` header,
    and retries reuse it, so the processor never charges twice for one
    placement attempt.
"""

import logging
import threading
import time
from typing import Optional

import httpx

from .config import OrdersSettings, get_settings
from .context import ATTEMPT_ID_CTX
from .domain import Order, PaymentOutcome

logger = logging.getLogger(__name__)

# ---------------- Circuit Breaker ---------------- #

class CircuitOpen(RuntimeError):
    pass


CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-downstream breaker guarding ``_ResilientPoster`` calls.

    ``fail_threshold`` consecutive failed calls trip the breaker. While it
    is open every call fails fast with ``CircuitOpen``. Once
    ``reset_timeout`` seconds have passed a single trial call is let
    through: success closes the breaker, failure trips it again at once.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float, clock=time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CLOSED
        self._failures = 0
        self._tripped_at = 0.0
        self._trial_running = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and self._clock() - self._tripped_at >= self.reset_timeout:
                self._state = HALF_OPEN
                self._trial_running = False
            return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def before_call(self) -> str:
        """Admit a call or raise ``CircuitOpen``; returns the state at admission."""
        with self._lock:
            state = self.state
            if state == OPEN:
                raise CircuitOpen(f"{self.name}: CIRCUIT_OPEN")
            if state == HALF_OPEN:
                if self._trial_running:
                    raise CircuitOpen(f"{self.name}: CIRCUIT_HALF_OPEN_BUSY")
                self._trial_running = True
            return state

    def on_success(self) -> None:
        with self._lock:
            self._state = CLOSED
            self._failures = 0
            self._trial_running = False

    def on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == HALF_OPEN:
                self._trip()
            elif self._state == CLOSED and self._failures >= self.fail_threshold:
                self._trip()

    def on_finish(self) -> None:
        # a trial that ended without a verdict frees the slot
        with self._lock:
            if self._state == HALF_OPEN:
                self._trial_running = False

    def _trip(self) -> None:
        self._state = OPEN
        self._tripped_at = self._clock()
        self._trial_running = False
        logger.warning("circuit %s opened after %s failures", self.name, self._failures)


def breaker_for(name: str, settings: OrdersSettings | None = None) -> CircuitBreaker:
    settings = settings or get_settings()
    return CircuitBreaker(name, settings.http_circuit_fail_threshold, settings.http_circuit_reset_timeout)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Attempt-ID and any extras.

    Args:
        extra: Optional dict of additional headers to include.

    Returns:
        dict: Final headers dictionary for the outgoing request.
    """
    headers: dict[str, str] = {}
    aid = ATTEMPT_ID_CTX.get()
    if aid and aid != "-":
        headers["X-Attempt-ID"] = aid
    if extra:
        headers.update(extra)
    return headers


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


class _ResilientPoster:
    """POST with circuit breaker precheck and exponential backoff retries.

    ``business`` maps a response to a final result, or returns None when the
    response is not final (then the retry policy decides).
    """

    def __init__(self, base_url: str, timeout: float, breaker: CircuitBreaker, settings: OrdersSettings):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker
        self.max_retries = max(1, settings.http_retry_max)
        self.backoff = settings.http_retry_backoff_base
        self.max_sleep = settings.http_retry_max_sleep

    def post(self, path: str, payload: dict, extra_headers: dict, business):
        tries = 0
        state = self.breaker.before_call()
        headers = _request_headers({**extra_headers, "X-Circuit-State": state, "X-Retry-Count": "0"})
        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.post(f"{self.base_url}{path}", json=payload, headers=headers)
                        result = business(resp)
                        if result is not None:
                            self.breaker.on_success()
                            return result
                        if not _should_retry(resp, None):
                            # 4xx outside the business mapping: caller error, not an outage
                            self.breaker.on_success()
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= self.max_retries:
                        self.breaker.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = self.backoff * (2 ** (tries - 1))  # exponential backoff
                    if sleep_s > 0:
                        time.sleep(min(sleep_s, self.max_sleep))
        finally:
            self.breaker.on_finish()


# ---------------- Payments Adapter ---------------- #

_payments_cb = breaker_for("payments")
_notify_cb = breaker_for("notifications")


class HttpPaymentsClient:
    """HTTP client for the payments service with retry and circuit breaker.

    Business mappings:
    - 200 → approved, with the ``transaction_id`` returned by the service
    - 402 or 409 → declined with the service's ``detail`` (not a circuit failure)

    Transport errors and 5xx are retried with the same ``Idempotency-Key``.
    When retries are exhausted, or the circuit is open, the error is
    raised; the orchestrator turns it into a payment failure.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        settings: OrdersSettings | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        settings = settings or get_settings()
        self._poster = _ResilientPoster(
            base_url or settings.payments_base_url,
            timeout or settings.http_timeout_secs,
            breaker or _payments_cb,
            settings,
        )

    @property
    def base_url(self) -> str:
        return self._poster.base_url

    def charge(
        self, amount_cents: int, currency: str, payment_token: str, idempotency_key: str
    ) -> PaymentOutcome:
        """Attempt to charge a payment.

        Args:
            amount_cents: Payment amount in minor units (cents).
            currency: Three-letter ISO currency code (e.g., EUR, USD).
            payment_token: Customer payment method token.
            idempotency_key: Sent as ``Idempotency-Key`` on every try.

        Returns:
            PaymentOutcome: approved or declined.

        Raises:
            httpx.RequestError: For network/transport errors after retries.
            httpx.HTTPStatusError: For non-retriable non-2xx responses.
            CircuitOpen: When the payments circuit is open.
        """
        payload = {"amount_cents": amount_cents, "currency": currency, "payment_token": payment_token}
        return self._poster.post(
            "/charge", payload, {"Idempotency-Key": idempotency_key}, self._map_charge
        )

    @staticmethod
    def _map_charge(resp) -> Optional[PaymentOutcome]:
        if resp.status_code == 200:
            data = resp.json()
            tx = data.get("transaction_id")
            if data.get("paid", True) and tx:
                return PaymentOutcome.approved(tx)
            return PaymentOutcome.declined(data.get("detail") or "NOT_PAID")
        if resp.status_code in (402, 409):
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = None
            return PaymentOutcome.declined(str(detail or "PAYMENT_DECLINED"))
        return None


# ---------------- Notification Adapter ---------------- #

def order_summary(order: Order) -> dict:
    return {
        "id": order.id,
        "customer_id": order.customer_id,
        "status": order.status.value,
        "total_cents": order.total_cents,
        "currency": order.currency,
        "transaction_ref": order.transaction_ref,
        "created_at": order.created_at.isoformat(),
        "lines": [
            {
                "product_id": l.product_id,
                "product_name": l.product_name,
                "quantity": l.quantity,
                "unit_price_cents": l.unit_price_cents,
            }
            for l in order.lines
        ],
    }


class HttpWebhookNotifier:
    """Post an ``order.confirmed`` event to a webhook URL."""

    def __init__(
        self,
        url: str,
        timeout: float | None = None,
        settings: OrdersSettings | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        settings = settings or get_settings()
        self._poster = _ResilientPoster(url, timeout or settings.http_timeout_secs, breaker or _notify_cb, settings)

    def notify(self, customer_id: str, order: Order) -> None:
        payload = {"event": "order.confirmed", "customer_id": customer_id, "order": order_summary(order)}
        self._poster.post(
            "", payload, {}, lambda resp: True if 200 <= resp.status_code < 300 else None
        )
