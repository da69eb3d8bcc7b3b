"""Unit tests for the in-memory stock ledger and the scavenger."""

import threading
import time

import pytest

from orders.errors import InsufficientStock, ProductNotFound, ReservationInvalid
from orders.ledger import InMemoryStockLedger, ReservationScavenger


def test_check_availability_is_non_mutating(ledger):
    assert ledger.check_availability("P1", 2) is True
    assert ledger.check_availability("P1", 3) is False
    assert ledger.get("P1").available == 2
    assert ledger.held("P1") == 0


def test_unknown_product_raises(ledger):
    with pytest.raises(ProductNotFound) as e:
        ledger.check_availability("NOPE", 1)
    assert e.value.product_id == "NOPE"
    with pytest.raises(ProductNotFound):
        ledger.reserve("NOPE", 1)


def test_reserve_holds_without_decrementing(ledger):
    token = ledger.reserve("P1", 2)
    assert token.product_id == "P1" and token.quantity == 2
    assert ledger.get("P1").available == 2
    assert ledger.held("P1") == 2
    with pytest.raises(InsufficientStock) as e:
        ledger.reserve("P1", 1)
    assert e.value.available == 0


def test_commit_decrements_and_is_idempotent(ledger):
    token = ledger.reserve("P1", 2)
    ledger.commit(token)
    ledger.commit(token)
    assert ledger.get("P1").available == 0
    assert ledger.held("P1") == 0


def test_release_frees_hold_and_keeps_record(ledger):
    token = ledger.reserve("P2", 4)
    ledger.release(token)
    ledger.release(token)
    assert ledger.held("P2") == 0
    assert ledger.get("P2").available == 5
    with pytest.raises(ReservationInvalid):
        ledger.commit(token)


def test_release_after_commit_does_not_restore_stock(ledger):
    token = ledger.reserve("P2", 1)
    ledger.commit(token)
    ledger.release(token)
    assert ledger.get("P2").available == 4


def test_reserve_rejects_non_positive_quantity(ledger):
    with pytest.raises(ValueError):
        ledger.reserve("P1", 0)


def test_sweep_releases_expired_holds(ledger, clock):
    expired = ledger.reserve("P1", 1)
    clock.advance(30)
    fresh = ledger.reserve("P1", 1)
    clock.advance(31)

    assert ledger.sweep() == 1
    assert ledger.held("P1") == 1
    with pytest.raises(ReservationInvalid):
        ledger.commit(expired)
    ledger.commit(fresh)
    assert ledger.get("P1").available == 1


def test_reserve_reclaims_expired_holds_before_sweep(ledger, clock):
    ledger.reserve("P1", 2)
    clock.advance(61)
    token = ledger.reserve("P1", 2)
    assert ledger.held("P1") == 2
    ledger.commit(token)
    assert ledger.get("P1").available == 0


def test_concurrent_reservations_never_overbook():
    ledger = InMemoryStockLedger()
    ledger.set_stock("HOT", 10)
    results = {"ok": 0, "fail": 0}
    lock = threading.Lock()
    start = threading.Barrier(20)

    def worker():
        start.wait()
        try:
            ledger.reserve("HOT", 1)
            key = "ok"
        except InsufficientStock:
            key = "fail"
        with lock:
            results[key] += 1

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results == {"ok": 10, "fail": 10}
    assert ledger.held("HOT") == 10


def test_scavenger_sweeps_in_background(ledger, clock):
    ledger.reserve("P1", 2)
    clock.advance(120)
    with ReservationScavenger(ledger, interval=0.01) as scavenger:
        assert scavenger.running
        deadline = time.monotonic() + 2
        while ledger.held("P1") and time.monotonic() < deadline:
            time.sleep(0.01)
    assert ledger.held("P1") == 0
    assert not scavenger.running


def test_scavenger_survives_sweep_errors():
    calls = {"n": 0}

    class FlakyLedger:
        def sweep(self):
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("boom")
            return 0

    scavenger = ReservationScavenger(FlakyLedger(), interval=0.01).start()
    deadline = time.monotonic() + 2
    while calls["n"] < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    scavenger.stop()
    assert calls["n"] >= 2


def test_sweep_forgets_settled_reservations(ledger, clock):
    for _ in range(5):
        ledger.commit(ledger.reserve("P2", 1))
    for _ in range(50):
        ledger.release(ledger.reserve("P1", 1))
    assert ledger.tracked() == 55

    ledger.sweep()
    assert ledger.tracked() == 55

    clock.advance(61)
    ledger.sweep()
    assert ledger.tracked() == 0
    assert ledger.get("P2").available == 0


def test_committed_token_is_idempotent_until_forgotten(ledger, clock):
    token = ledger.reserve("P1", 1)
    ledger.commit(token)
    clock.advance(30)
    ledger.sweep()
    ledger.commit(token)
    assert ledger.get("P1").available == 1

    clock.advance(31)
    ledger.sweep()
    with pytest.raises(ReservationInvalid):
        ledger.commit(token)
    assert ledger.get("P1").available == 1
