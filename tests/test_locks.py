"""Tests for per-key locking."""
import threading
import time

from cart import CartStore
from inventory import InventoryLedger
from locks import KeyedLocks


def test_entries_are_dropped_once_released():
    locks = KeyedLocks()

    for n in range(5):
        with locks.hold(("order", n)):
            assert len(locks) == 1

    assert len(locks) == 0


def test_hold_is_reentrant():
    locks = KeyedLocks()

    with locks.hold(("cart", "alice")):
        with locks.hold(("cart", "alice")):
            assert len(locks) == 1

    assert len(locks) == 0


def test_hold_many_releases_every_key():
    locks = KeyedLocks()

    with locks.hold_many([("product", 2), ("product", 1), ("product", 2)]):
        assert len(locks) == 2

    assert len(locks) == 0


def test_same_key_excludes_and_entry_survives_waiters():
    """A waiter keeps the entry alive, so both threads share one lock."""
    locks = KeyedLocks()
    inside = []
    overlaps = []
    entered = threading.Event()

    def worker(name):
        with locks.hold(("order", "o-1")):
            inside.append(name)
            entered.set()
            time.sleep(0.05)
            if inside != [name]:
                overlaps.append(list(inside))
            inside.remove(name)

    first = threading.Thread(target=worker, args=("a",))
    first.start()
    entered.wait()
    second = threading.Thread(target=worker, args=("b",))
    second.start()
    first.join()
    second.join()

    assert overlaps == []
    assert inside == []
    assert len(locks) == 0


def test_an_empty_lock_map_is_still_shared(engine, settings):
    locks = KeyedLocks()
    ledger = InventoryLedger(engine, settings, locks=locks)

    assert ledger.locks is locks
    assert CartStore(engine, ledger).locks is locks
