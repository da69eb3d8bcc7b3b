"""Order placement orchestrator.

``OrderService`` sequences the stock ledger, the payment processor and the
order store, and compensates explicitly when a step fails:

    VALIDATING -> STOCK_RESERVED -> PAID -> PERSISTED -> STOCK_COMMITTED -> COMPLETED

``FAILED`` is reachable from every non-terminal state and always leaves no
side effects behind (holds released, nothing charged or nothing stored).
``PAID_BUT_UNPERSISTED`` is reachable only from ``PAID``: the customer was
charged but the order could not be stored, so a compensation record is
written and the caller gets a distinct error. A charge that outlives the
payment timeout and is approved later also gets a compensation record.

The service keeps no state between calls; every collaborator is injected.
"""

import concurrent.futures
import contextvars
import copy
import dataclasses
import functools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional

import httpx
from pydantic import ValidationError

from .context import attempt_scope, new_attempt_id
from .domain import (
    Order,
    OrderLine,
    OrderStatus,
    OrderStorePort,
    PaymentOutcome,
    PaymentsPort,
    ReservationToken,
    StockLedgerPort,
    utcnow,
)
from .errors import (
    InsufficientStock,
    InvalidOrder,
    OrderError,
    PaidButUnpersisted,
    PaymentFailed,
    StockCommitFailed,
)
from .idempotency import IdempotencyRegistry
from .notifications import NotificationDispatcher
from .schemas import PlaceOrderDTO

logger = logging.getLogger(__name__)


class PlacementState(str, Enum):
    VALIDATING = "validating"
    STOCK_RESERVED = "stock_reserved"
    PAID = "paid"
    PERSISTED = "persisted"
    STOCK_COMMITTED = "stock_committed"
    COMPLETED = "completed"
    FAILED = "failed"
    PAID_BUT_UNPERSISTED = "paid_but_unpersisted"


_TRANSITIONS = {
    PlacementState.VALIDATING: {PlacementState.STOCK_RESERVED, PlacementState.FAILED},
    PlacementState.STOCK_RESERVED: {PlacementState.PAID, PlacementState.FAILED},
    PlacementState.PAID: {
        PlacementState.PERSISTED,
        PlacementState.PAID_BUT_UNPERSISTED,
        PlacementState.FAILED,
    },
    PlacementState.PERSISTED: {PlacementState.STOCK_COMMITTED, PlacementState.FAILED},
    PlacementState.STOCK_COMMITTED: {PlacementState.COMPLETED, PlacementState.FAILED},
}


class IllegalTransition(RuntimeError):
    pass


@dataclass
class Placement:
    """State of one ``place_order`` attempt.

    Attributes:
        attempt_id: Correlation id, also bound to the logging context.
        state: Current PlacementState.
        history: Every state entered, with the time it was entered.
    """

    attempt_id: str
    state: PlacementState = PlacementState.VALIDATING
    history: list[tuple[PlacementState, datetime]] = field(default_factory=list)

    def __post_init__(self):
        self.history.append((self.state, utcnow()))

    @property
    def states(self) -> list[PlacementState]:
        return [s for s, _ in self.history]

    def advance(self, to: PlacementState) -> None:
        if to not in _TRANSITIONS.get(self.state, ()):
            raise IllegalTransition(f"{self.state.value} -> {to.value}")
        self.state = to
        self.history.append((to, utcnow()))
        logger.info("placement %s -> %s", self.attempt_id, to.value)


# ---- Domain service ----
class OrderService:
    """Domain service responsible for placing orders.

    Args:
        ledger: Stock ledger used to check, reserve and commit stock.
        payments: Payment processor client.
        store: Durable order store.
        dispatcher: Optional notification dispatcher; notifications are
            skipped when None.
        currency: Currency of every order placed through this service.
        payment_timeout: Seconds to wait for ``charge``; None waits forever.
        idempotency: Registry deduplicating calls that pass an
            ``idempotency_key``.
    """

    def __init__(
        self,
        ledger: StockLedgerPort,
        payments: PaymentsPort,
        store: OrderStorePort,
        dispatcher: Optional[NotificationDispatcher] = None,
        *,
        currency: str = "EUR",
        payment_timeout: Optional[float] = None,
        idempotency: Optional[IdempotencyRegistry] = None,
        payment_workers: int = 8,
    ):
        self.ledger = ledger
        self.payments = payments
        self.store = store
        self.dispatcher = dispatcher
        self.currency = currency
        self.payment_timeout = payment_timeout
        self.idempotency = idempotency if idempotency is not None else IdempotencyRegistry()
        self._payment_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=payment_workers, thread_name_prefix="charge"
        )

    def close(self, wait: bool = False) -> None:
        """Release the payment worker threads.

        Charges still running are abandoned unless ``wait`` is true; an
        abandoned charge that is approved later is still reconciled.
        """
        self._payment_pool.shutdown(wait=wait)

    # ---- entry points ----
    def place_order(
        self,
        customer_id: str,
        payment_token: str,
        lines: Iterable[OrderLine],
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """Place an order: validate, reserve, charge, persist, commit, notify.

        When ``idempotency_key`` is given, a retry with the same key and the
        same request replays the first result (the same order, or the same
        error) without reserving or charging again. The key is also sent to
        the payment processor as the charge idempotency key.

        Returns:
            The persisted order, with status ``confirmed``.

        Raises:
            InvalidOrder: ``EMPTY_ORDER`` when there are no lines.
            ProductNotFound: A line refers to an unknown product.
            InsufficientStock: Not enough stock for some product.
            PaymentFailed: Declined, processor error or timeout.
            PaidButUnpersisted: Charged, but the order could not be stored.
            StockCommitFailed: Stored and confirmed, but stock was not
                decremented; ``err.order`` carries the order.
            IdempotencyConflict: The key was used for a different request.
            IdempotencyInProgress: The first attempt with the key is running.
        """
        lines = tuple(lines)
        rec = None
        if idempotency_key:
            fingerprint = self._fingerprint(customer_id, payment_token, lines)
            existing, rec = self.idempotency.begin(idempotency_key, fingerprint)
            if existing:
                logger.info("replaying placement for idempotency key %s", idempotency_key)
                return copy.copy(rec.replay())

        try:
            order = self._place(customer_id, payment_token, lines, idempotency_key or uuid.uuid4().hex)
        except OrderError as err:
            if rec is not None:
                self.idempotency.finalize(rec, error=err)
            raise
        except BaseException:
            if rec is not None:
                self.idempotency.forget(rec)
            raise
        if rec is not None:
            self.idempotency.finalize(rec, order=copy.copy(order))
        return order

    def place_order_from_payload(self, payload: dict, idempotency_key: Optional[str] = None) -> Order:
        """Validate an untrusted payload with ``PlaceOrderDTO`` and place it.

        Raises:
            InvalidOrder: ``INVALID_PAYLOAD`` when validation fails.
        """
        try:
            dto = PlaceOrderDTO.model_validate(payload)
        except ValidationError as e:
            raise InvalidOrder(str(e), code="INVALID_PAYLOAD") from e
        return self.place_order(dto.customer_id, dto.payment_token, dto.to_lines(), idempotency_key)

    # ---- workflow ----
    def _place(self, customer_id, payment_token, lines, charge_key) -> Order:
        attempt_id = new_attempt_id()
        with attempt_scope(attempt_id):
            placement = Placement(attempt_id)
            order = Order(id=None, customer_id=customer_id, lines=lines, currency=self.currency)
            logger.info(
                "placing order",
                extra={"customer_id": customer_id, "lines": len(lines), "total_cents": order.total_cents},
            )
            try:
                return self._run(placement, order, payment_token, charge_key)
            except OrderError as err:
                err.placement = placement
                raise

    def _run(self, placement: Placement, order: Order, payment_token: str, charge_key: str) -> Order:
        # 1) Validate
        try:
            self._validate(order)
        except Exception as exc:
            self._fail(placement, order, exc)
            raise

        # 2) Reserve stock
        tokens = self._reserve_all(placement, order)
        placement.advance(PlacementState.STOCK_RESERVED)

        # 3) Charge payment
        outcome = self._charge(placement, order, payment_token, charge_key, tokens)
        order.transaction_ref = outcome.transaction_ref
        placement.advance(PlacementState.PAID)

        # 4) Persist
        self._persist(placement, order, tokens)
        placement.advance(PlacementState.PERSISTED)

        # 5) Commit stock
        failed = self._commit_all(tokens)
        if failed:
            logger.critical(
                "order %s stored but stock commit failed for %s", order.id, ", ".join(failed),
                extra={"order_id": order.id},
            )
            self._notify(order)
            raise StockCommitFailed(copy.copy(order), failed)
        placement.advance(PlacementState.STOCK_COMMITTED)

        # 6) Complete
        placement.advance(PlacementState.COMPLETED)
        self._notify(order)
        return order

    def _validate(self, order: Order) -> None:
        if not order.lines:
            raise InvalidOrder("order has no lines", code="EMPTY_ORDER")
        requested: dict[str, int] = {}
        for line in order.lines:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
        for product_id, quantity in requested.items():
            if not self.ledger.check_availability(product_id, quantity):
                raise InsufficientStock(product_id, quantity)

    def _reserve_all(self, placement: Placement, order: Order) -> list[ReservationToken]:
        tokens: list[ReservationToken] = []
        try:
            for line in order.lines:
                tokens.append(self.ledger.reserve(line.product_id, line.quantity))
        except Exception as exc:
            self._release_all(tokens)
            self._fail(placement, order, exc)
            raise
        return tokens

    def _charge(self, placement, order, payment_token, charge_key, tokens) -> PaymentOutcome:
        try:
            outcome = self._call_processor(order, payment_token, charge_key)
        except PaymentFailed as failure:
            self._abort_payment(placement, order, tokens, failure)
            raise
        except Exception as exc:
            timed_out = isinstance(exc, (TimeoutError, httpx.TimeoutException))
            failure = PaymentFailed("TIMEOUT" if timed_out else f"PROCESSOR_ERROR: {exc!r}", timed_out=timed_out)
            self._abort_payment(placement, order, tokens, failure)
            raise failure from exc
        if not outcome.success:
            failure = PaymentFailed(outcome.failure_reason)
            self._abort_payment(placement, order, tokens, failure)
            raise failure
        return outcome

    def _call_processor(self, order: Order, payment_token: str, charge_key: str) -> PaymentOutcome:
        args = (order.total_cents, order.currency, payment_token, charge_key)
        if self.payment_timeout is None:
            return self.payments.charge(*args)
        ctx = contextvars.copy_context()
        fut = self._payment_pool.submit(ctx.run, self.payments.charge, *args)
        try:
            return fut.result(timeout=self.payment_timeout)
        except concurrent.futures.TimeoutError:
            if not fut.cancel():
                # already running: the processor may still approve it
                fut.add_done_callback(
                    functools.partial(self._reconcile_late_charge, copy.copy(order), charge_key)
                )
            logger.warning(
                "charge timed out after %ss (idempotency key %s)", self.payment_timeout, charge_key
            )
            raise PaymentFailed("TIMEOUT", timed_out=True)

    def _reconcile_late_charge(self, order: Order, charge_key: str, fut: concurrent.futures.Future) -> None:
        """Record a compensation for a timed-out charge that was approved after all."""
        try:
            outcome = fut.result()
        except Exception:
            logger.warning("abandoned charge %s failed after the timeout", charge_key, exc_info=True)
            return
        if not outcome.success:
            return
        logger.critical(
            "payment %s captured after the charge timed out; no order was stored", outcome.transaction_ref,
            extra={"transaction_ref": outcome.transaction_ref, "amount_cents": order.total_cents},
        )
        try:
            self.store.record_compensation(
                outcome.transaction_ref,
                "charge completed after timeout",
                customer_id=order.customer_id,
                amount_cents=order.total_cents,
                currency=order.currency,
            )
        except Exception:
            logger.critical(
                "could not record compensation for transaction %s", outcome.transaction_ref,
                exc_info=True,
            )

    def _abort_payment(self, placement, order, tokens, failure: PaymentFailed) -> None:
        self._release_all(tokens)
        self._fail(placement, order, failure)

    def _persist(self, placement: Placement, order: Order, tokens: list[ReservationToken]) -> None:
        confirmed = dataclasses.replace(order, status=OrderStatus.CONFIRMED)
        try:
            order_id = self.store.save(confirmed, confirmed.lines)
        except Exception as exc:
            self._release_all(tokens)
            reason = f"order persistence failed: {exc!r}"
            compensation = None
            try:
                compensation = self.store.record_compensation(
                    order.transaction_ref,
                    reason,
                    customer_id=order.customer_id,
                    amount_cents=order.total_cents,
                    currency=order.currency,
                )
            except Exception:
                logger.critical(
                    "could not record compensation for transaction %s", order.transaction_ref,
                    exc_info=True,
                )
            placement.advance(PlacementState.PAID_BUT_UNPERSISTED)
            logger.critical(
                "payment %s captured but order not stored", order.transaction_ref,
                extra={"transaction_ref": order.transaction_ref, "amount_cents": order.total_cents},
            )
            raise PaidButUnpersisted(order.transaction_ref, compensation, reason) from exc
        order.id = order_id
        order.status = OrderStatus.CONFIRMED

    def _commit_all(self, tokens: list[ReservationToken]) -> list[str]:
        failed = []
        for t in tokens:
            try:
                self.ledger.commit(t)
            except Exception:
                logger.exception("commit of reservation %s for %s failed", t.token_id, t.product_id)
                failed.append(t.product_id)
        return failed

    def _release_all(self, tokens: list[ReservationToken]) -> None:
        for t in reversed(tokens):
            try:
                self.ledger.release(t)
            except Exception:
                # the hold expires and is swept
                logger.exception("release of reservation %s for %s failed", t.token_id, t.product_id)

    def _fail(self, placement: Placement, order: Order, exc: BaseException) -> None:
        order.status = OrderStatus.FAILED
        placement.advance(PlacementState.FAILED)
        logger.warning("placement failed: %s", exc, extra={"detail": getattr(exc, "detail", None)})

    def _notify(self, order: Order) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(order.customer_id, copy.copy(order))

    @staticmethod
    def _fingerprint(customer_id: str, payment_token: str, lines: tuple[OrderLine, ...]) -> dict:
        return {
            "customer_id": customer_id,
            "payment_token": payment_token,
            "lines": [[l.product_id, l.product_name, l.quantity, l.unit_price_cents] for l in lines],
        }
