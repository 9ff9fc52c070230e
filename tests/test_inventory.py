"""Tests for the inventory ledger: holds, commits, expiry and locking."""
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlmodel import select

from database import DBSession
from errors import InsufficientStock, InvalidQuantity, ProductNotFound, TokenExpired, ValidationFailed
from models import Product, ReservationStatus, UTCDateTime
from repositories import ReservationRepository


def _stock(engine, product_id) -> int:
    with DBSession(engine) as s:
        return s.get(Product, product_id).available


def _status(engine, token) -> str:
    with DBSession(engine) as s:
        return ReservationRepository(s).find(token.token).status


def test_reserve_whole_stock_then_one_more_fails(ledger, widget):
    """Reserving 5 of 5 leaves nothing for a further unit."""
    ledger.reserve(widget.id, 5)

    with pytest.raises(InsufficientStock) as exc:
        ledger.reserve(widget.id, 1)

    assert exc.value.available == 0
    assert exc.value.status_code == 409


def test_reserve_does_not_touch_on_hand_stock(ledger, engine, widget):
    token = ledger.reserve(widget.id, 3, cart_id="alice")

    assert _stock(engine, widget.id) == 5
    assert ledger.availability(widget.id) == 2
    assert token.cart_id == "alice"
    assert token.quantity == 3


def test_reservation_expiry_uses_configured_ttl(ledger, clock, widget):
    token = ledger.reserve(widget.id, 1)

    assert (token.expires_at - clock()).total_seconds() == 15 * 60


def test_reserve_rejects_bad_input(ledger, widget):
    with pytest.raises(InvalidQuantity):
        ledger.reserve(widget.id, 0)
    with pytest.raises(ProductNotFound):
        ledger.reserve(9999, 1)


def test_release_is_idempotent(ledger, widget):
    token = ledger.reserve(widget.id, 4)

    assert ledger.release(token) is True
    assert ledger.release(token) is False
    assert ledger.availability(widget.id) == 5


def test_release_unknown_token_is_noop(ledger):
    assert ledger.release("no-such-token") is False


def test_expired_holds_do_not_count_against_availability(ledger, clock, widget):
    ledger.reserve(widget.id, 5)
    clock.advance(minutes=15)

    assert ledger.availability(widget.id) == 5
    ledger.reserve(widget.id, 5)


def test_release_after_expiry_is_noop(ledger, engine, clock, widget):
    token = ledger.reserve(widget.id, 2)
    clock.advance(minutes=16)

    assert ledger.release(token) is False
    assert _status(engine, token) == ReservationStatus.EXPIRED.value


def test_commit_decrements_available(ledger, engine, widget):
    token = ledger.reserve(widget.id, 2)

    ledger.commit(token)

    assert _stock(engine, widget.id) == 3
    assert ledger.availability(widget.id) == 3
    assert _status(engine, token) == ReservationStatus.COMMITTED.value


def test_commit_twice_decrements_once(ledger, engine, widget):
    token = ledger.reserve(widget.id, 2)

    ledger.commit(token)
    ledger.commit(token.token)

    assert _stock(engine, widget.id) == 3


def test_commit_strictly_before_expiry_wins(ledger, engine, clock, widget):
    token = ledger.reserve(widget.id, 1)
    clock.advance(minutes=14, seconds=59)

    ledger.commit(token)

    assert _stock(engine, widget.id) == 4


def test_commit_at_expiry_instant_loses(ledger, engine, clock, widget):
    token = ledger.reserve(widget.id, 1)
    clock.advance(minutes=15)

    with pytest.raises(TokenExpired):
        ledger.commit(token)

    assert _stock(engine, widget.id) == 5
    assert _status(engine, token) == ReservationStatus.EXPIRED.value


def test_commit_after_release_fails(ledger, widget):
    token = ledger.reserve(widget.id, 1)
    ledger.release(token)

    with pytest.raises(TokenExpired):
        ledger.commit(token)


def test_is_live(ledger, clock, widget):
    token = ledger.reserve(widget.id, 1)
    assert ledger.is_live(token)

    clock.advance(minutes=15)
    assert not ledger.is_live(token)


def test_sweep_marks_lapsed_holds(ledger, engine, clock, widget, gadget):
    old = ledger.reserve(widget.id, 2)
    clock.advance(minutes=10)
    fresh = ledger.reserve(gadget.id, 1)
    clock.advance(minutes=6)

    actions = ledger.sweep_expired()

    assert [a['token'] for a in actions] == [old.token]
    assert actions[0]['action'] == 'expired'
    assert _status(engine, old) == ReservationStatus.EXPIRED.value
    assert _status(engine, fresh) == ReservationStatus.ACTIVE.value
    assert ledger.sweep_expired() == []


def test_ledger_invariants_hold_over_mixed_sequence(ledger, engine, clock, widget):
    """available - committed never drops below zero and live holds never exceed available."""
    tokens = []
    for step in range(12):
        try:
            tokens.append(ledger.reserve(widget.id, 1 + step % 2))
        except InsufficientStock:
            pass
        if step % 3 == 0 and tokens:
            try:
                ledger.commit(tokens.pop(0))
            except TokenExpired:
                pass
        if step % 4 == 1 and tokens:
            ledger.release(tokens.pop())
        if step % 5 == 2:
            clock.advance(minutes=8)

        available = _stock(engine, widget.id)
        with DBSession(engine) as s:
            held = ReservationRepository(s).held_quantity(widget.id, clock())
        assert available >= 0
        assert held <= available


def test_concurrent_reserves_never_oversell(ledger, widget):
    results = []
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        try:
            ledger.reserve(widget.id, 1)
            results.append("ok")
        except InsufficientStock:
            results.append("refused")

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 5
    assert results.count("refused") == 5
    assert ledger.availability(widget.id) == 0


def test_restock(ledger, widget):
    ledger.reserve(widget.id, 5)

    product = ledger.restock(widget.id, 3)

    assert product.available == 8
    assert ledger.availability(widget.id) == 3
    with pytest.raises(InvalidQuantity):
        ledger.restock(widget.id, 0)


def test_add_product_validates_discount(ledger):
    with pytest.raises(ValidationFailed) as exc:
        ledger.add_product("Broken", Decimal("10.00"), discounted_price=Decimal("12.00"))

    assert "discounted_price" in exc.value.errors


def test_unit_price_prefers_discount(gadget, widget):
    assert gadget.unit_price == Decimal("20.00")
    assert widget.unit_price == Decimal("10.00")


@pytest.mark.parametrize("actual, discount, field", [
    (Decimal("10.00"), Decimal("9.999"), "discounted_price"),
    (Decimal("0.004"), None, "actual_price"),
])
def test_add_product_does_not_round_past_the_price_rules(ledger, engine, actual, discount, field):
    with pytest.raises(ValidationFailed) as exc:
        ledger.add_product("Rounded", actual, available=1, discounted_price=discount)

    assert field in exc.value.errors
    with DBSession(engine) as s:
        assert s.exec(select(Product)).all() == []


def test_stored_timestamps_come_back_in_utc(ledger, engine, clock, widget):
    token = ledger.reserve(widget.id, 1)

    with DBSession(engine) as s:
        stored = ReservationRepository(s).find(token.token)

    assert stored.expires_at == clock() + timedelta(minutes=15)
    assert stored.expires_at.tzinfo == timezone.utc
    assert stored.created_at.tzinfo == timezone.utc


def test_naive_timestamps_are_refused():
    with pytest.raises(ValueError):
        UTCDateTime().process_bind_param(datetime(2024, 1, 1, 12, 0, 0), None)
    plus_three = timezone(timedelta(hours=3))
    assert UTCDateTime().process_bind_param(datetime(2024, 1, 1, 15, 0, 0, tzinfo=plus_three), None) == \
        datetime(2024, 1, 1, 12, 0, 0)
