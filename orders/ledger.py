"""Stock ledgers: availability checks, expiring reservations, commits.

Two implementations of ``StockLedgerPort`` live here:

- ``InMemoryStockLedger`` keeps stock records and the reservation table in
  process memory. Suitable for tests, local development and single-process
  deployments.
- ``SqlStockLedger`` keeps both in SQL tables (``stock`` and
  ``stock_reservations``) and takes a row lock on the stock row while it
  mutates holds, so several processes can share one database.

Both serialize reserve/commit/release per product id. A hold counts
against availability from ``reserve`` until it is committed, released or
swept after ``reservation_ttl`` seconds. ``ReservationScavenger`` runs the
sweep on a background thread so a crashed placement cannot leak a hold.

The sweep also forgets settled (committed or released) reservations once
they are older than ``reservation_ttl``. Until then a repeated commit of a
committed token is a no-op; afterwards the token is unknown and commit
raises ``ReservationInvalid``.
"""

import logging
import threading
import time
from typing import Callable

from sqlalchemy import Engine, delete, func, select, update
from sqlalchemy.orm import Session

from .domain import ReservationToken, StockRecord
from .errors import InsufficientStock, ProductNotFound, ReservationInvalid
from .models import ReservationRow, StockRow

logger = logging.getLogger(__name__)

HELD = "HELD"
COMMITTED = "COMMITTED"
RELEASED = "RELEASED"


class KeyedLocks:
    """One ``threading.Lock`` per key, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __call__(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError("quantity must be > 0")


# ---------------- In-memory ledger ---------------- #

class InMemoryStockLedger:
    """Thread-safe in-memory stock ledger.

    Args:
        reservation_ttl: Seconds a hold stays valid before it may be swept.
        clock: Monotonic time source; injectable for tests.
    """

    def __init__(self, reservation_ttl: float = 900.0, clock: Callable[[], float] = time.monotonic):
        self.reservation_ttl = reservation_ttl
        self._clock = clock
        self._lock_for = KeyedLocks()
        self._records: dict[str, StockRecord] = {}
        # product_id -> token_id -> token, for HELD tokens only
        self._active: dict[str, dict[str, ReservationToken]] = {}
        # product_id -> token_id -> (COMMITTED | RELEASED, settled at)
        self._settled: dict[str, dict[str, tuple[str, float]]] = {}

    # -- administration --
    def set_stock(self, product_id: str, available: int) -> None:
        """Set the available quantity, creating the record if needed."""
        with self._lock_for(product_id):
            self._records[product_id] = StockRecord(product_id, available)
            self._active.setdefault(product_id, {})
            self._settled.setdefault(product_id, {})

    def get(self, product_id: str) -> StockRecord:
        with self._lock_for(product_id):
            record = self._record(product_id)
            return StockRecord(record.product_id, record.available)

    def held(self, product_id: str) -> int:
        with self._lock_for(product_id):
            return self._held(product_id)

    # -- StockLedgerPort --
    def check_availability(self, product_id: str, quantity: int) -> bool:
        with self._lock_for(product_id):
            return self._record(product_id).available >= quantity

    def reserve(self, product_id: str, quantity: int) -> ReservationToken:
        _check_quantity(quantity)
        with self._lock_for(product_id):
            record = self._record(product_id)
            now = self._clock()
            self._expire(product_id, now)
            held = self._held(product_id)
            if held + quantity > record.available:
                raise InsufficientStock(product_id, quantity, record.available - held)
            token = ReservationToken.new(product_id, quantity, now + self.reservation_ttl)
            self._active[product_id][token.token_id] = token
        logger.debug("reserved %s x %s (token %s)", quantity, product_id, token.token_id)
        return token

    def commit(self, token: ReservationToken) -> None:
        with self._lock_for(token.product_id):
            state = self._state(token)
            if state == COMMITTED:
                return
            if state != HELD:
                raise ReservationInvalid(f"token {token.token_id} is {(state or 'unknown').lower()}")
            record = self._record(token.product_id)
            if record.available < token.quantity:
                raise ReservationInvalid(f"commit would drive {token.product_id} below zero")
            record.available -= token.quantity
            self._settle(token, COMMITTED, self._clock())

    def release(self, token: ReservationToken) -> None:
        with self._lock_for(token.product_id):
            if self._state(token) != HELD:
                return
            self._settle(token, RELEASED, self._clock())

    def sweep(self, now: float | None = None) -> int:
        """Release every expired hold and return how many were released.

        Settled reservations older than ``reservation_ttl`` are forgotten.
        """
        now = self._clock() if now is None else now
        released = 0
        for product_id in list(self._active):
            with self._lock_for(product_id):
                released += self._expire(product_id, now)
                self._forget_settled(product_id, now)
        return released

    def tracked(self) -> int:
        """Number of reservations the ledger still remembers, in any state."""
        return sum(len(t) for t in list(self._active.values())) + sum(
            len(t) for t in list(self._settled.values())
        )

    # -- helpers (caller holds the product lock) --
    def _record(self, product_id: str) -> StockRecord:
        record = self._records.get(product_id)
        if record is None:
            raise ProductNotFound(product_id)
        return record

    def _held(self, product_id: str) -> int:
        return sum(t.quantity for t in self._active.get(product_id, {}).values())

    def _state(self, token: ReservationToken) -> str | None:
        if token.token_id in self._active.get(token.product_id, {}):
            return HELD
        settled = self._settled.get(token.product_id, {}).get(token.token_id)
        return settled[0] if settled else None

    def _settle(self, token: ReservationToken, state: str, now: float) -> None:
        del self._active[token.product_id][token.token_id]
        self._settled[token.product_id][token.token_id] = (state, now)

    def _expire(self, product_id: str, now: float) -> int:
        active = self._active.get(product_id, {})
        expired = [t for t in active.values() if t.expires_at <= now]
        for t in expired:
            self._settle(t, RELEASED, now)
            logger.info("reservation %s for %s expired", t.token_id, product_id)
        return len(expired)

    def _forget_settled(self, product_id: str, now: float) -> None:
        settled = self._settled.get(product_id, {})
        cutoff = now - self.reservation_ttl
        for token_id in [k for k, (_, at) in settled.items() if at <= cutoff]:
            del settled[token_id]


# ---------------- SQL ledger ---------------- #

class SqlStockLedger:
    """Stock ledger persisted with SQLAlchemy.

    Uses ``SELECT ... FOR UPDATE`` on the stock row to serialize concurrent
    writers across processes, plus an in-process per-product lock for
    backends (SQLite) that ignore row locks.

    Args:
        engine: SQLAlchemy engine with the ``orders.models`` tables created.
        reservation_ttl: Seconds a hold stays valid before it may be swept.
        clock: Wall-clock time source shared by all processes.
    """

    def __init__(self, engine: Engine, reservation_ttl: float = 900.0, clock: Callable[[], float] = time.time):
        self.engine = engine
        self.reservation_ttl = reservation_ttl
        self._clock = clock
        self._lock_for = KeyedLocks()

    def set_stock(self, product_id: str, available: int) -> None:
        StockRecord(product_id, available)  # validates
        with self._lock_for(product_id), Session(self.engine) as s, s.begin():
            row = s.get(StockRow, product_id, with_for_update=True)
            if row is None:
                s.add(StockRow(product_id=product_id, available=available))
            else:
                row.available = available

    def get(self, product_id: str) -> StockRecord:
        with Session(self.engine) as s:
            row = s.get(StockRow, product_id)
            if row is None:
                raise ProductNotFound(product_id)
            return StockRecord(row.product_id, row.available)

    def held(self, product_id: str) -> int:
        with Session(self.engine) as s:
            return self._held(s, product_id)

    def check_availability(self, product_id: str, quantity: int) -> bool:
        return self.get(product_id).available >= quantity

    def reserve(self, product_id: str, quantity: int) -> ReservationToken:
        _check_quantity(quantity)
        with self._lock_for(product_id), Session(self.engine) as s, s.begin():
            row = self._locked_row(s, product_id)
            now = self._clock()
            self._expire(s, now, product_id)
            held = self._held(s, product_id)
            if held + quantity > row.available:
                raise InsufficientStock(product_id, quantity, row.available - held)
            token = ReservationToken.new(product_id, quantity, now + self.reservation_ttl)
            s.add(ReservationRow(
                token_id=token.token_id,
                product_id=product_id,
                quantity=quantity,
                expires_at=token.expires_at,
                state=HELD,
            ))
        return token

    def commit(self, token: ReservationToken) -> None:
        with self._lock_for(token.product_id), Session(self.engine) as s, s.begin():
            row = self._locked_row(s, token.product_id)
            hold = s.get(ReservationRow, token.token_id)
            if hold is not None and hold.state == COMMITTED:
                return
            if hold is None or hold.state != HELD:
                state = hold.state.lower() if hold is not None else "unknown"
                raise ReservationInvalid(f"token {token.token_id} is {state}")
            if row.available < hold.quantity:
                raise ReservationInvalid(f"commit would drive {token.product_id} below zero")
            row.available -= hold.quantity
            hold.state = COMMITTED

    def release(self, token: ReservationToken) -> None:
        with self._lock_for(token.product_id), Session(self.engine) as s, s.begin():
            s.execute(
                update(ReservationRow)
                .where(ReservationRow.token_id == token.token_id, ReservationRow.state == HELD)
                .values(state=RELEASED)
            )

    def sweep(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        with Session(self.engine) as s, s.begin():
            released = self._expire(s, now)
            # a settled row is kept one ttl past its hold expiry
            purged = s.execute(
                delete(ReservationRow).where(
                    ReservationRow.state != HELD,
                    ReservationRow.expires_at <= now - self.reservation_ttl,
                )
            ).rowcount or 0
        if released or purged:
            logger.info("swept %s expired reservations, purged %s settled", released, purged)
        return released

    def tracked(self) -> int:
        with Session(self.engine) as s:
            return s.scalar(select(func.count()).select_from(ReservationRow))

    # -- helpers --
    def _locked_row(self, s: Session, product_id: str) -> StockRow:
        row = s.execute(
            select(StockRow).where(StockRow.product_id == product_id).with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise ProductNotFound(product_id)
        return row

    @staticmethod
    def _held(s: Session, product_id: str) -> int:
        return s.scalar(
            select(func.coalesce(func.sum(ReservationRow.quantity), 0)).where(
                ReservationRow.product_id == product_id, ReservationRow.state == HELD
            )
        )

    @staticmethod
    def _expire(s: Session, now: float, product_id: str | None = None) -> int:
        stmt = update(ReservationRow).where(
            ReservationRow.state == HELD, ReservationRow.expires_at <= now
        )
        if product_id is not None:
            stmt = stmt.where(ReservationRow.product_id == product_id)
        return s.execute(stmt.values(state=RELEASED)).rowcount or 0


# ---------------- Scavenger ---------------- #

class ReservationScavenger:
    """Background thread that periodically sweeps expired holds.

    Usable as a context manager::

        with ReservationScavenger(ledger, interval=30):
            ...
    """

    def __init__(self, ledger, interval: float = 30.0):
        self.ledger = ledger
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "ReservationScavenger":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="reservation-scavenger", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.ledger.sweep()
            except Exception:
                # keep sweeping; a transient store error must not stop expiry
                logger.exception("reservation sweep failed")

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()
