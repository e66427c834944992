import pytest

from conftest import SHOP, line
from groupbuy.errors import Reason, StorageError
from groupbuy.order_store import InMemoryOrderStore
from groupbuy.order_validator import OrderValidator
from groupbuy.order_writer import OrderWriter
from groupbuy.schemas import Failed, Order


@pytest.fixture
def make_order(customer):
    def _make(order_id, items):
        return Order(order_id=order_id, shop_id=SHOP, customer=customer, items=items, total_amount=0)
    return _make


def stock_of(ledger):
    return {pid: ledger.get_snapshot(pid).model_dump() for pid in ("P", "Q")}


def test_commit_reserves_and_stores(ledger, order_store, make_order):
    items = [line("P", 2), line("Q", 1, "Blue")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    order_id = OrderWriter(ledger, order_store).commit(make_order("20261019-1000", items), plan)

    assert order_id == "20261019-1000"
    stored = order_store.get(order_id)
    assert stored.status == "pending_payment"
    assert stored.total_amount == 590
    assert ledger.get_snapshot("P").total_stock == 3
    assert ledger.get_snapshot("Q").find_variant("Blue").stock == 2
    assert ledger.open_reservations() == 0


def test_stock_drained_after_validation_rolls_back(ledger, order_store, make_order):
    items = [line("P", 2), line("Q", 2, "Red")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    # another buyer takes a Red between validation and commit
    ledger.confirm(ledger.try_reserve("Q", "Red", 1).reservation)
    before = stock_of(ledger)

    outcome = OrderWriter(ledger, order_store).commit(make_order("20261019-1001", items), plan)

    assert isinstance(outcome, Failed)
    assert outcome.reason == Reason.INSUFFICIENT_STOCK
    assert outcome.line_index == 1
    assert "Tote Bag (Red)" in outcome.message
    assert stock_of(ledger) == before
    assert order_store.count() == 0
    assert ledger.open_reservations() == 0


def test_persistence_failure_releases_everything(ledger, make_order):
    store = InMemoryOrderStore(drop_rate=100)
    items = [line("P", 5), line("Q", 2, "Red"), line("Q", 3, "Blue")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    before = stock_of(ledger)

    outcome = OrderWriter(ledger, store).commit(make_order("20261019-1002", items), plan)

    assert outcome.reason == Reason.PERSISTENCE_ERROR
    assert stock_of(ledger) == before
    assert store.count() == 0
    assert ledger.open_reservations() == 0


def test_reservation_timeout_rolls_back_earlier_lines(ledger, order_store, make_order):
    items = [line("P", 1), line("Q", 1, "Red")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    before = stock_of(ledger)
    ledger.timeout = 0.05
    lock = ledger._lock_for("Q")
    lock.acquire()
    try:
        outcome = OrderWriter(ledger, order_store).commit(make_order("20261019-1003", items), plan)
    finally:
        lock.release()

    assert outcome.reason == Reason.PERSISTENCE_ERROR
    assert outcome.line_index == 1
    assert stock_of(ledger) == before
    assert order_store.count() == 0


def test_duplicate_order_id_is_a_persistence_failure(ledger, order_store, make_order):
    validator = OrderValidator(ledger)
    writer = OrderWriter(ledger, order_store)
    first = [line("P", 1)]
    assert writer.commit(make_order("20261019-1004", first), validator.validate(SHOP, first)) == "20261019-1004"

    second = [line("P", 2)]
    outcome = writer.commit(make_order("20261019-1004", second), validator.validate(SHOP, second))
    assert outcome.reason == Reason.PERSISTENCE_ERROR
    assert ledger.get_snapshot("P").total_stock == 4
    assert order_store.get("20261019-1004").items[0].qty == 1


def test_release_is_retried_after_a_storage_fault(ledger, make_order, monkeypatch):
    real = ledger._restock
    failures = iter([True, False, False])

    def restock(reservation):
        if next(failures):
            raise StorageError("ledger unavailable")
        return real(reservation)

    monkeypatch.setattr(ledger, "_restock", restock)
    items = [line("P", 1), line("Q", 1, "Blue")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    before = stock_of(ledger)

    writer = OrderWriter(ledger, InMemoryOrderStore(drop_rate=100), backoff=0)
    outcome = writer.commit(make_order("20261019-1005", items), plan)

    assert outcome.reason == Reason.PERSISTENCE_ERROR
    assert outcome.rollback_complete is True
    assert stock_of(ledger) == before
    assert ledger.open_reservations() == 0


def test_release_that_keeps_failing_is_reported(ledger, order_store, make_order, monkeypatch):
    items = [line("P", 1), line("Q", 2, "Red")]
    plan = OrderValidator(ledger).validate(SHOP, items)
    ledger.confirm(ledger.try_reserve("Q", "Red", 1).reservation)

    def restock(reservation):
        raise StorageError("ledger unavailable")

    monkeypatch.setattr(ledger, "_restock", restock)
    writer = OrderWriter(ledger, order_store, release_attempts=2, backoff=0)
    outcome = writer.commit(make_order("20261019-1006", items), plan)

    # the stock failure is reported as a storage fault so nobody retries on top of held stock
    assert outcome.reason == Reason.PERSISTENCE_ERROR
    assert outcome.rollback_complete is False
    assert outcome.line_index == 1
    assert ledger.open_reservations() == 1
    assert order_store.count() == 0
