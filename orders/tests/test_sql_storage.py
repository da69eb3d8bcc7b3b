"""Tests for the SQLAlchemy-backed ledger and order store (SQLite)."""

import threading

import pytest
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from orders import repository
from orders.adapters import PaymentsStub
from orders.domain import Order, OrderLine, OrderStatus
from orders.errors import (
    InsufficientStock,
    OrderNotFound,
    PaidButUnpersisted,
    PersistenceFailed,
    ProductNotFound,
    ReservationInvalid,
)
from orders.ledger import SqlStockLedger
from orders.models import OrderRow, ReservationRow
from orders.repository import SqlOrderStore
from orders.service import OrderService, PlacementState as S


@pytest.fixture
def sql_ledger(engine, clock):
    lg = SqlStockLedger(engine, reservation_ttl=60.0, clock=clock)
    lg.set_stock("P1", 2)
    return lg


def _order():
    return Order(
        id=None,
        customer_id="c1",
        lines=[OrderLine("P1", "Mug", 2, 1000), OrderLine("P2", "Pot", 1, 4000)],
        status=OrderStatus.CONFIRMED,
        transaction_ref="tx-1",
    )


def test_sql_ledger_reserve_commit_release(sql_ledger):
    assert sql_ledger.check_availability("P1", 2)
    t1 = sql_ledger.reserve("P1", 1)
    t2 = sql_ledger.reserve("P1", 1)
    with pytest.raises(InsufficientStock):
        sql_ledger.reserve("P1", 1)

    sql_ledger.commit(t1)
    sql_ledger.commit(t1)
    sql_ledger.release(t2)
    assert sql_ledger.get("P1").available == 1
    assert sql_ledger.held("P1") == 0
    with pytest.raises(ReservationInvalid):
        sql_ledger.commit(t2)


def test_sql_ledger_unknown_product(sql_ledger):
    with pytest.raises(ProductNotFound):
        sql_ledger.reserve("NOPE", 1)
    with pytest.raises(ProductNotFound):
        sql_ledger.check_availability("NOPE", 1)


def test_sql_ledger_sweep(sql_ledger, clock):
    sql_ledger.reserve("P1", 2)
    clock.advance(61)
    assert sql_ledger.sweep() == 1
    assert sql_ledger.held("P1") == 0


def test_sql_store_saves_header_and_lines(engine):
    store = SqlOrderStore(engine)
    order = _order()
    oid = store.save(order, order.lines)

    loaded = store.get(oid)
    assert loaded.id == oid
    assert loaded.status == OrderStatus.CONFIRMED
    assert loaded.total_cents == 6000
    assert [l.product_id for l in loaded.lines] == ["P1", "P2"]
    assert loaded.transaction_ref == "tx-1"
    assert store.count() == 1

    with Session(engine) as s:
        assert s.scalar(select(OrderRow.internal_id).where(OrderRow.id == oid)) == 1


def test_sql_store_save_is_atomic(engine):
    store = SqlOrderStore(engine)
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE order_lines"))

    order = _order()
    with pytest.raises(PersistenceFailed):
        store.save(order, order.lines)
    assert store.count() == 0


def test_sql_store_get_missing(engine):
    with pytest.raises(OrderNotFound):
        SqlOrderStore(engine).get("missing")


def test_sql_store_compensations(engine):
    store = SqlOrderStore(engine)
    rec = store.record_compensation("tx-9", "db down", customer_id="c1", amount_cents=500)
    assert [r.transaction_ref for r in store.list_compensations(unresolved_only=True)] == ["tx-9"]
    store.resolve_compensation(rec.id)
    assert store.list_compensations(unresolved_only=True) == []
    assert store.list_compensations()[0].resolved is True


def test_sql_store_round_trips_aware_timestamps(engine):
    store = SqlOrderStore(engine)
    order = _order()
    loaded = store.get(store.save(order, order.lines))
    assert loaded.created_at.tzinfo is not None
    assert loaded.created_at == order.created_at

    store.record_compensation("tx-2", "x" * 800)
    rec = store.list_compensations()[0]
    assert rec.created_at.tzinfo is not None
    assert rec.reason == "x" * 800


def test_concurrent_stores_get_distinct_internal_ids(engine, monkeypatch):
    """Two stores on one database read the same max id; both orders still land."""
    real_next = repository._next_internal_id
    barrier = threading.Barrier(2, timeout=5)
    reads = {"n": 0}
    lock = threading.Lock()

    def next_id_after_both_read(session):
        nid = real_next(session)
        with lock:
            reads["n"] += 1
            first_round = reads["n"] <= 2
        if first_round:
            barrier.wait()
        return nid

    monkeypatch.setattr(repository, "_next_internal_id", next_id_after_both_read)
    ids, errors = [], []

    def save(store):
        order = _order()
        try:
            oid = store.save(order, order.lines)
            with lock:
                ids.append(oid)
        except Exception as exc:
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=save, args=(SqlOrderStore(engine),)) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(ids) == 2
    with Session(engine) as s:
        assert sorted(s.scalars(select(OrderRow.internal_id))) == [1, 2]


def test_sql_store_gives_up_after_repeated_collisions(engine, monkeypatch):
    store = SqlOrderStore(engine, save_attempts=2)
    order = _order()
    store.save(order, order.lines)
    monkeypatch.setattr(repository, "_next_internal_id", lambda session: 1)
    with pytest.raises(PersistenceFailed):
        store.save(order, order.lines)
    assert store.count() == 1


def test_sql_ledger_concurrent_reservations_never_overcommit(engine):
    """Stock of N, two holds of N each: exactly one is granted."""
    ledger = SqlStockLedger(engine, reservation_ttl=60.0)
    ledger.set_stock("HOT", 3)
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            ledger.reserve("HOT", 3)
            res = "ok"
        except InsufficientStock:
            res = "fail"
        with lock:
            results.append(res)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == ["fail", "ok"]
    assert ledger.held("HOT") == 3
    assert ledger.get("HOT").available == 3


def test_sql_ledger_sweep_purges_settled_rows(sql_ledger, clock):
    committed = sql_ledger.reserve("P1", 1)
    sql_ledger.commit(committed)
    sql_ledger.release(sql_ledger.reserve("P1", 1))
    assert sql_ledger.tracked() == 2

    clock.advance(61)
    sql_ledger.sweep()
    assert sql_ledger.tracked() == 2
    sql_ledger.commit(committed)

    clock.advance(60)
    sql_ledger.sweep()
    assert sql_ledger.tracked() == 0
    with pytest.raises(ReservationInvalid):
        sql_ledger.commit(committed)
    assert sql_ledger.get("P1").available == 1


# ---- OrderService over the SQL backends ----

@pytest.fixture
def sql_backends(engine, clock):
    ledger = SqlStockLedger(engine, reservation_ttl=60.0, clock=clock)
    ledger.set_stock("P1", 2)
    ledger.set_stock("P2", 5)
    return ledger, SqlOrderStore(engine)


def _lines():
    return [OrderLine("P1", "Mug", 2, 1000), OrderLine("P2", "Teapot", 1, 4000)]


def test_place_order_on_sql_backends(engine, sql_backends):
    ledger, store = sql_backends
    service = OrderService(ledger, PaymentsStub(), store)

    out = service.place_order("cust-1", "tok_visa", _lines())

    assert out.status == OrderStatus.CONFIRMED
    stored = store.get(out.id)
    assert stored.total_cents == 6000
    assert stored.transaction_ref == out.transaction_ref
    assert ledger.get("P1").available == 0
    assert ledger.get("P2").available == 4
    assert ledger.held("P1") == ledger.held("P2") == 0
    with Session(engine) as s:
        assert set(s.scalars(select(ReservationRow.state))) == {"COMMITTED"}
    service.close()


def test_persistence_failure_on_sql_backends(engine, sql_backends):
    ledger, store = sql_backends
    payments = PaymentsStub()
    service = OrderService(ledger, payments, store)
    with engine.begin() as conn:
        conn.execute(text("DROP TABLE order_lines"))

    with pytest.raises(PaidButUnpersisted) as e:
        service.place_order("cust-1", "tok_visa", _lines())

    assert e.value.placement.state == S.PAID_BUT_UNPERSISTED
    assert store.count() == 0
    comps = store.list_compensations(unresolved_only=True)
    assert [c.transaction_ref for c in comps] == [e.value.transaction_ref]
    assert comps[0].amount_cents == 6000
    assert len(payments.charges) == 1
    assert ledger.held("P1") == ledger.held("P2") == 0
    assert ledger.get("P1").available == 2
    service.close()


def test_concurrent_placements_on_sql_backends(sql_backends):
    ledger, store = sql_backends
    service = OrderService(ledger, PaymentsStub(), store)
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def place():
        barrier.wait()
        try:
            res = service.place_order("cust", "tok_visa", [OrderLine("P1", "Mug", 2, 1000)]).status
        except InsufficientStock as exc:
            res = exc
        with lock:
            results.append(res)

    threads = [threading.Thread(target=place) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(1 for r in results if r == OrderStatus.CONFIRMED) == 1
    assert sum(1 for r in results if isinstance(r, InsufficientStock)) == 1
    assert ledger.get("P1").available == 0
    assert store.count() == 1
    service.close()
