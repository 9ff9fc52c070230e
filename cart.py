"""Cart store: one cart per principal, each line backed by inventory holds.

Adding a line reserves stock first and only then records the line, so a cart
never shows units the ledger refused. Re-adding a product merges into the
existing line and reserves the extra units as a further hold.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Tuple
from database import DBSession
from errors import InvalidQuantity, ProductNotFound
from inventory import InventoryLedger
from locks import KeyedLocks
from logging_config import get_logger
from models import CartLine, Principal, Reservation, utcnow
from repositories import CartRepository, ProductRepository, ReservationRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class CartLineView:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    live_quantity: int
    tokens: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def stale(self) -> bool:
        return self.live_quantity < self.quantity

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


def cart_id_for(principal: Principal) -> str:
    return principal.subject


def live_holds(holds: List[Reservation], now: datetime) -> List[Reservation]:
    return [r for r in holds if now < r.expires_at]


class CartStore:
    """Per-principal mutable collection of (product, quantity) lines."""

    def __init__(self, engine, ledger: InventoryLedger, clock: Optional[Callable[[], datetime]] = None,
                 locks: Optional[KeyedLocks] = None):
        self.engine = engine
        self.ledger = ledger
        self.clock = clock or ledger.clock or utcnow
        self.locks = locks if locks is not None else ledger.locks

    def add_line(self, principal: Principal, product_id: int, quantity: int) -> CartLineView:
        if quantity <= 0:
            raise InvalidQuantity("Quantity must be > 0")
        cart_id = cart_id_for(principal)
        with self.locks.hold(("cart", cart_id)):
            token = self.ledger.reserve(product_id, quantity, cart_id=cart_id)
            try:
                with DBSession(self.engine) as s:
                    carts = CartRepository(s)
                    line = carts.find_line(cart_id, product_id)
                    if line is None:
                        line = CartLine(cart_id=cart_id, product_id=product_id, quantity=0)
                    line.quantity += quantity
                    line.updated_at = self.clock()
                    carts.save(line)
                    s.commit()
            except Exception:
                self.ledger.release(token)
                raise
        logger.info("Cart line added", cart_id=cart_id, product_id=product_id, quantity=quantity,
                    line_quantity=line.quantity)
        return self._view(cart_id, product_id)

    def remove_line(self, principal: Principal, product_id: int) -> bool:
        """Delete a line and release every hold the cart owns for it."""
        cart_id = cart_id_for(principal)
        with self.locks.hold(("cart", cart_id)):
            with DBSession(self.engine) as s:
                line = CartRepository(s).find_line(cart_id, product_id)
                holds = ReservationRepository(s).for_cart(cart_id, product_id)
            for hold in holds:
                self.ledger.release(hold.to_token())
            if line is None:
                return False
            with DBSession(self.engine) as s:
                carts = CartRepository(s)
                line = carts.find_line(cart_id, product_id)
                if line is not None:
                    carts.delete(line)
                s.commit()
        logger.info("Cart line removed", cart_id=cart_id, product_id=product_id, released=len(holds))
        return True

    def clear(self, principal: Principal) -> int:
        removed = 0
        for line in self.lines(principal):
            if self.remove_line(principal, line.product_id):
                removed += 1
        return removed

    def renew(self, principal: Principal) -> List[CartLineView]:
        """Re-reserve the units of every line whose holds have lapsed.

        Raises InsufficientStock if the stock is no longer there; lines
        renewed before the failure keep their new holds.
        """
        cart_id = cart_id_for(principal)
        with self.locks.hold(("cart", cart_id)):
            for view in self._views(cart_id):
                missing = view.quantity - view.live_quantity
                if missing > 0:
                    self.ledger.reserve(view.product_id, missing, cart_id=cart_id)
                    logger.info("Cart line renewed", cart_id=cart_id, product_id=view.product_id,
                                quantity=missing)
            return self._views(cart_id)

    def lines(self, principal: Principal) -> List[CartLineView]:
        return self._views(cart_id_for(principal))

    def total(self, principal: Principal) -> Decimal:
        return sum((line.line_total for line in self.lines(principal)), Decimal('0.00'))

    def _view(self, cart_id: str, product_id: int) -> CartLineView:
        for view in self._views(cart_id):
            if view.product_id == product_id:
                return view
        raise ProductNotFound(f"Product {product_id} is not in cart {cart_id}")

    def _views(self, cart_id: str) -> List[CartLineView]:
        now = self.clock()
        with DBSession(self.engine) as s:
            lines = CartRepository(s).find_lines(cart_id)
            products = {p.id: p for p in ProductRepository(s).find_many([l.product_id for l in lines])}
            reservations = ReservationRepository(s)
            views = []
            for line in lines:
                live = live_holds(reservations.for_cart(cart_id, line.product_id), now)
                product = products.get(line.product_id)
                views.append(CartLineView(
                    product_id=line.product_id,
                    product_name=product.name if product else '',
                    quantity=line.quantity,
                    unit_price=product.unit_price if product else Decimal('0.00'),
                    live_quantity=sum(r.quantity for r in live),
                    tokens=tuple(r.token for r in live),
                ))
            return views
