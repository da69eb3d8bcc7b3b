"""Service provider helpers for wiring OrderService with its ports.

``open_order_service`` is the lifecycle-scoped entry point: it builds the
ledger, store, payment client and notification dispatcher from settings,
starts the reservation scavenger, yields a configured ``OrderService`` and
tears everything down on exit. When ``settings.use_http_adapters`` is
false the service is wired with in-process stubs suitable for tests and
local development.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, Optional

from sqlalchemy import Engine

from .adapters import LoggingNotifier, PaymentsStub
from .config import OrdersSettings, get_settings
from .db import init_db, make_engine
from .http_adapters import HttpPaymentsClient, HttpWebhookNotifier
from .idempotency import IdempotencyRegistry
from .ledger import InMemoryStockLedger, ReservationScavenger, SqlStockLedger
from .notifications import NotificationDispatcher
from .repository import InMemoryOrderStore, SqlOrderStore
from .service import OrderService

logger = logging.getLogger(__name__)


@dataclass
class OrderRuntime:
    """Everything ``open_order_service`` acquired, for callers that need
    direct access to the ledger or store (seeding stock, reconciliation)."""

    service: OrderService
    ledger: Any
    store: Any
    scavenger: ReservationScavenger
    dispatcher: NotificationDispatcher
    engine: Optional[Engine] = None


def build_order_service(settings: OrdersSettings | None = None, engine: Engine | None = None) -> OrderRuntime:
    """Return a configured, not yet started runtime.

    Args:
        settings: Settings to use; defaults to ``get_settings()``.
        engine: Engine for SQL storage; created from
            ``settings.database_url`` when storage is ``sql`` and none is given.
    """
    settings = settings or get_settings()

    if settings.storage == "sql":
        engine = engine or make_engine(settings)
        init_db(engine)
        ledger = SqlStockLedger(engine, reservation_ttl=settings.reservation_ttl_secs)
        store = SqlOrderStore(engine)
    else:
        ledger = InMemoryStockLedger(reservation_ttl=settings.reservation_ttl_secs)
        store = InMemoryOrderStore()

    if settings.use_http_adapters:
        payments = HttpPaymentsClient(settings=settings)
    else:
        payments = PaymentsStub()

    if settings.use_http_adapters and settings.notify_webhook_url:
        notifier = HttpWebhookNotifier(settings.notify_webhook_url, settings=settings)
    else:
        notifier = LoggingNotifier()

    dispatcher = NotificationDispatcher(notifier, max_workers=settings.notify_workers)
    service = OrderService(
        ledger,
        payments,
        store,
        dispatcher,
        currency=settings.currency,
        payment_timeout=settings.payment_timeout_secs,
        idempotency=IdempotencyRegistry(ttl=settings.idempotency_ttl_secs),
    )
    scavenger = ReservationScavenger(ledger, interval=settings.sweep_interval_secs)
    return OrderRuntime(service, ledger, store, scavenger, dispatcher, engine)


@contextmanager
def open_order_service(settings: OrdersSettings | None = None, engine: Engine | None = None) -> Iterator[OrderRuntime]:
    """Acquire a runtime, start its scavenger, and release it on exit.

    Pending notifications are drained before the context exits. An engine
    created here is disposed; an engine passed in is left to its owner.
    """
    owns_engine = engine is None
    runtime = build_order_service(settings, engine)
    runtime.scavenger.start()
    logger.info("order runtime started")
    try:
        yield runtime
    finally:
        runtime.scavenger.stop()
        runtime.dispatcher.shutdown(wait=True)
        runtime.service.close()
        if owns_engine and runtime.engine is not None:
            runtime.engine.dispose()
        logger.info("order runtime stopped")
