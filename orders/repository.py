"""Order stores: atomic order persistence and compensation records.

``InMemoryOrderStore`` is the reference implementation used by tests and
local runs. ``SqlOrderStore`` persists through SQLAlchemy; the order header
and all of its lines are written in a single transaction.

Both stores expose a thin interface that returns domain objects so the
orchestrator is not coupled to ORM types.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .domain import CompensationRecord, Order, OrderLine, OrderStatus, utcnow
from .errors import OrderNotFound, PersistenceFailed
from .models import CompensationRow, OrderLineRow, OrderRow

logger = logging.getLogger(__name__)

SAVE_ATTEMPTS = 3


def _check_lines(order: Order, lines: Sequence[OrderLine]) -> tuple[OrderLine, ...]:
    lines = tuple(lines)
    if lines != order.lines:
        raise PersistenceFailed("lines do not match the order being saved")
    return lines


def _next_internal_id(session: Session) -> int:
    """Compute the next ``internal_id`` while holding a lock on the current max.

    ``SELECT ... FOR UPDATE`` on the highest row makes concurrent writers on
    PostgreSQL queue behind each other. SQLite ignores the lock clause, so
    ``SqlOrderStore.save`` also retries on the unique constraint.
    """
    last = session.execute(
        select(OrderRow.internal_id)
        .where(OrderRow.internal_id.is_not(None))
        .order_by(OrderRow.internal_id.desc())
        .with_for_update()
        .limit(1)
    ).scalar()
    return 1 if last is None else last + 1


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for DateTime(timezone=True)
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class InMemoryOrderStore:
    """Thread-safe in-memory order store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict[str, Order] = {}
        self._compensations: dict[str, CompensationRecord] = {}

    def save(self, order: Order, lines: Sequence[OrderLine]) -> str:
        lines = _check_lines(order, lines)
        order_id = str(uuid.uuid4())
        stored = copy.copy(order)
        stored.id = order_id
        stored.lines = lines
        with self._lock:
            self._orders[order_id] = stored
        return order_id

    def get(self, order_id: str) -> Order:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"order {order_id} does not exist")
        return copy.copy(order)

    def count(self) -> int:
        with self._lock:
            return len(self._orders)

    def record_compensation(
        self,
        transaction_ref: str,
        reason: str,
        *,
        customer_id: Optional[str] = None,
        amount_cents: int = 0,
        currency: str = "EUR",
    ) -> CompensationRecord:
        rec = CompensationRecord(
            id=str(uuid.uuid4()),
            transaction_ref=transaction_ref,
            reason=reason,
            customer_id=customer_id,
            amount_cents=amount_cents,
            currency=currency,
        )
        with self._lock:
            self._compensations[rec.id] = rec
        return copy.copy(rec)

    def list_compensations(self, unresolved_only: bool = False) -> list[CompensationRecord]:
        with self._lock:
            recs = [copy.copy(r) for r in self._compensations.values()]
        return [r for r in recs if not (unresolved_only and r.resolved)]

    def resolve_compensation(self, compensation_id: str) -> None:
        with self._lock:
            rec = self._compensations.get(compensation_id)
            if rec is None:
                raise OrderNotFound(f"compensation {compensation_id} does not exist")
            rec.resolved = True


class SqlOrderStore:
    """Order store backed by SQLAlchemy.

    Library errors are translated to ``PersistenceFailed`` at this
    boundary so the orchestrator only deals with domain errors.
    """

    def __init__(self, engine: Engine, save_attempts: int = SAVE_ATTEMPTS):
        self.engine = engine
        self.save_attempts = max(1, save_attempts)

    def save(self, order: Order, lines: Sequence[OrderLine]) -> str:
        """Persist the order header and every line in one transaction.

        Also assigns a monotonically increasing ``internal_id`` used for
        ordering. Two writers can still pick the same id (empty table, or
        a backend without row locks); the loser hits the unique constraint
        and the whole transaction is retried with a fresh id.

        Returns:
            The UUID string of the stored order.

        Raises:
            PersistenceFailed: If the transaction could not be committed;
                nothing is stored in that case.
        """
        lines = _check_lines(order, lines)
        for attempt in range(1, self.save_attempts + 1):
            try:
                return self._insert(order, lines)
            except IntegrityError as exc:
                if attempt == self.save_attempts:
                    logger.error("order save failed after %s attempts: %s", attempt, exc)
                    raise PersistenceFailed(str(exc)) from exc
                logger.warning("internal_id collision on attempt %s, retrying", attempt)
            except SQLAlchemyError as exc:
                logger.error("order save failed: %s", exc)
                raise PersistenceFailed(str(exc)) from exc

    def _insert(self, order: Order, lines: tuple[OrderLine, ...]) -> str:
        status = order.status.value if isinstance(order.status, OrderStatus) else order.status
        with Session(self.engine) as s, s.begin():
            row = OrderRow(
                id=str(uuid.uuid4()),
                internal_id=_next_internal_id(s),
                customer_id=order.customer_id,
                status=status,
                total_cents=order.total_cents,
                currency=order.currency,
                transaction_ref=order.transaction_ref,
                created_at=order.created_at,
            )
            row.lines = [
                OrderLineRow(
                    position=pos,
                    product_id=line.product_id,
                    product_name=line.product_name,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                )
                for pos, line in enumerate(lines)
            ]
            s.add(row)
            order_id = row.id
        return order_id

    def get(self, order_id: str) -> Order:
        with Session(self.engine) as s:
            row = s.execute(
                select(OrderRow).options(selectinload(OrderRow.lines)).where(OrderRow.id == order_id)
            ).scalar_one_or_none()
            if row is None:
                raise OrderNotFound(f"order {order_id} does not exist")
            return Order(
                id=row.id,
                customer_id=row.customer_id,
                lines=tuple(
                    OrderLine(l.product_id, l.product_name, l.quantity, l.unit_price_cents)
                    for l in row.lines
                ),
                status=OrderStatus(row.status),
                currency=row.currency,
                created_at=_as_utc(row.created_at),
                transaction_ref=row.transaction_ref,
            )

    def count(self) -> int:
        with Session(self.engine) as s:
            return s.scalar(select(func.count()).select_from(OrderRow))

    def record_compensation(
        self,
        transaction_ref: str,
        reason: str,
        *,
        customer_id: Optional[str] = None,
        amount_cents: int = 0,
        currency: str = "EUR",
    ) -> CompensationRecord:
        rec = CompensationRecord(
            id=str(uuid.uuid4()),
            transaction_ref=transaction_ref,
            reason=reason,
            customer_id=customer_id,
            amount_cents=amount_cents,
            currency=currency,
            created_at=utcnow(),
        )
        try:
            with Session(self.engine) as s, s.begin():
                s.add(CompensationRow(
                    id=rec.id,
                    transaction_ref=rec.transaction_ref,
                    reason=rec.reason,
                    customer_id=rec.customer_id,
                    amount_cents=rec.amount_cents,
                    currency=rec.currency,
                    created_at=rec.created_at,
                    resolved=False,
                ))
        except SQLAlchemyError as exc:
            raise PersistenceFailed(str(exc)) from exc
        return rec

    def list_compensations(self, unresolved_only: bool = False) -> list[CompensationRecord]:
        stmt = select(CompensationRow).order_by(CompensationRow.created_at)
        if unresolved_only:
            stmt = stmt.where(CompensationRow.resolved.is_(False))
        with Session(self.engine) as s:
            return [
                CompensationRecord(
                    id=r.id,
                    transaction_ref=r.transaction_ref,
                    reason=r.reason,
                    customer_id=r.customer_id,
                    amount_cents=r.amount_cents,
                    currency=r.currency,
                    created_at=_as_utc(r.created_at),
                    resolved=r.resolved,
                )
                for r in s.scalars(stmt)
            ]

    def resolve_compensation(self, compensation_id: str) -> None:
        with Session(self.engine) as s, s.begin():
            row = s.get(CompensationRow, compensation_id)
            if row is None:
                raise OrderNotFound(f"compensation {compensation_id} does not exist")
            row.resolved = True
