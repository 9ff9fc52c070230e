"""Inventory ledger: on-hand stock per product plus time-bounded reservations.

Every reserve / release / commit for a product runs under that product's lock
and inside one database transaction, so the availability check and the write
that depends on it cannot interleave with another request for the same
product. Expired holds never count against availability; they are reclaimed
lazily and by ``sweep_expired``.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Union
from config import Settings
from database import DBSession
from errors import InsufficientStock, InvalidQuantity, ProductNotFound, TokenExpired
from locks import KeyedLocks
from logging_config import get_logger
from models import Product, Reservation, ReservationStatus, ReservationToken, utcnow
from repositories import ProductRepository, ReservationRepository
from validation import validate_product

logger = get_logger(__name__)

TokenRef = Union[ReservationToken, str]


def _token_id(token: TokenRef) -> str:
    return token.token if isinstance(token, ReservationToken) else token


class InventoryLedger:
    """Tracks available quantity per product and the holds placed against it."""

    def __init__(self, engine, settings: Settings, clock: Callable[[], datetime] = utcnow,
                 locks: Optional[KeyedLocks] = None):
        self.engine = engine
        self.settings = settings
        self.clock = clock
        self.locks = locks if locks is not None else KeyedLocks()

    # ------------------------- Products -------------------------

    def add_product(self, name: str, actual_price: Decimal, available: int = 0,
                    discounted_price: Optional[Decimal] = None, description: str = '') -> Product:
        validate_product(name, description, actual_price, discounted_price, available)
        quantum = self.settings.money_quantum
        product = Product(
            name=name.strip(),
            description=description or '',
            actual_price=Decimal(actual_price).quantize(quantum),
            discounted_price=Decimal(discounted_price).quantize(quantum) if discounted_price else None,
            available=available,
        )
        with DBSession(self.engine) as s:
            ProductRepository(s).save(product)
            s.commit()
        logger.info("Product created", product_id=product.id, available=available)
        return product

    def get_product(self, product_id: int) -> Product:
        with DBSession(self.engine) as s:
            product = ProductRepository(s).find(product_id)
            if product is None:
                raise ProductNotFound(f"Product {product_id} not found")
            return product

    def restock(self, product_id: int, quantity: int) -> Product:
        if quantity <= 0:
            raise InvalidQuantity("Restock quantity must be > 0")
        with self.locks.hold(("product", product_id)):
            with DBSession(self.engine) as s:
                products = ProductRepository(s)
                product = products.find(product_id)
                if product is None:
                    raise ProductNotFound(f"Product {product_id} not found")
                product.available += quantity
                product.updated_at = self.clock()
                products.save(product)
                s.commit()
        logger.info("Product restocked", product_id=product_id, quantity=quantity, available=product.available)
        return product

    # availability: Units that can still be reserved right now.
    def availability(self, product_id: int) -> int:
        with DBSession(self.engine) as s:
            product = ProductRepository(s).find(product_id)
            if product is None:
                raise ProductNotFound(f"Product {product_id} not found")
            return product.available - ReservationRepository(s).held_quantity(product_id, self.clock())

    # ----------------------- Reservations -----------------------

    def reserve(self, product_id: int, quantity: int, cart_id: Optional[str] = None) -> ReservationToken:
        """Place a hold of ``quantity`` units, or raise InsufficientStock."""
        if quantity <= 0:
            raise InvalidQuantity("Quantity must be > 0")
        with self.locks.hold(("product", product_id)):
            with DBSession(self.engine) as s:
                product = ProductRepository(s).find(product_id)
                if product is None:
                    raise ProductNotFound(f"Product {product_id} not found")
                reservations = ReservationRepository(s)
                now = self.clock()
                free = product.available - reservations.held_quantity(product_id, now)
                if free < quantity:
                    logger.info("Reservation refused", product_id=product_id, requested=quantity, available=free)
                    raise InsufficientStock(product_id, quantity, free)
                row = Reservation(
                    token=uuid.uuid4().hex,
                    cart_id=cart_id,
                    product_id=product_id,
                    quantity=quantity,
                    expires_at=now + timedelta(minutes=self.settings.reservation_ttl_minutes),
                    created_at=now,
                    updated_at=now,
                )
                reservations.save(row)
                s.commit()
        logger.info("Inventory reserved", product_id=product_id, quantity=quantity,
                    token=row.token, cart_id=cart_id, expires_at=row.expires_at.isoformat())
        return row.to_token()

    def release(self, token: TokenRef) -> bool:
        """Drop a hold. Idempotent: returns False when nothing live was held."""
        token_id = _token_id(token)
        product_id = self._product_for(token)
        if product_id is None:
            return False
        with self.locks.hold(("product", product_id)):
            with DBSession(self.engine) as s:
                reservations = ReservationRepository(s)
                row = reservations.find(token_id)
                if row is None or row.status != ReservationStatus.ACTIVE.value:
                    return False
                now = self.clock()
                if now >= row.expires_at:
                    row.status = ReservationStatus.EXPIRED.value
                    released = False
                else:
                    row.status = ReservationStatus.RELEASED.value
                    released = True
                row.updated_at = now
                reservations.save(row)
                s.commit()
        if released:
            logger.info("Inventory released", product_id=product_id, quantity=row.quantity, token=token_id)
        return released

    def commit(self, token: TokenRef) -> ReservationToken:
        """Turn a live hold into a permanent decrement of ``available``.

        Succeeds only if it runs strictly before the hold's expiry. Committing
        an already committed token changes nothing.
        """
        token_id = _token_id(token)
        product_id = self._product_for(token)
        if product_id is None:
            raise TokenExpired(token_id)
        with self.locks.hold(("product", product_id)):
            with DBSession(self.engine) as s:
                reservations = ReservationRepository(s)
                row = reservations.find(token_id)
                if row is None:
                    raise TokenExpired(token_id)
                if row.status == ReservationStatus.COMMITTED.value:
                    return row.to_token()
                now = self.clock()
                if row.status != ReservationStatus.ACTIVE.value or now >= row.expires_at:
                    if row.status == ReservationStatus.ACTIVE.value:
                        row.status = ReservationStatus.EXPIRED.value
                        row.updated_at = now
                        reservations.save(row)
                        s.commit()
                    logger.warning("Commit on stale reservation", token=token_id, product_id=product_id,
                                   status=row.status)
                    raise TokenExpired(token_id)
                products = ProductRepository(s)
                product = products.find(product_id)
                if product is None:
                    raise ProductNotFound(f"Product {product_id} not found")
                if product.available < row.quantity:
                    raise InsufficientStock(product_id, row.quantity, product.available)
                product.available -= row.quantity
                product.updated_at = now
                row.status = ReservationStatus.COMMITTED.value
                row.updated_at = now
                products.save(product)
                reservations.save(row)
                s.commit()
        logger.info("Inventory committed", product_id=product_id, quantity=row.quantity,
                    token=token_id, available=product.available)
        return row.to_token()

    def is_live(self, token: TokenRef) -> bool:
        with DBSession(self.engine) as s:
            row = ReservationRepository(s).find(_token_id(token))
            return (
                row is not None
                and row.status == ReservationStatus.ACTIVE.value
                and self.clock() < row.expires_at
            )

    def sweep_expired(self) -> List[Dict[str, object]]:
        """Mark every lapsed active hold as expired and report what was done."""
        now = self.clock()
        with DBSession(self.engine) as s:
            product_ids = {r.product_id for r in ReservationRepository(s).lapsed(now)}
        if not product_ids:
            return []
        actions = []
        with self.locks.hold_many(("product", pid) for pid in product_ids):
            with DBSession(self.engine) as s:
                reservations = ReservationRepository(s)
                for row in reservations.lapsed(now):
                    row.status = ReservationStatus.EXPIRED.value
                    row.updated_at = now
                    reservations.save(row)
                    actions.append({
                        'token': row.token,
                        'product_id': row.product_id,
                        'quantity': row.quantity,
                        'order_id': row.order_id,
                        'action': 'expired',
                    })
                s.commit()
        logger.info("Expired reservations swept", count=len(actions))
        return actions

    def _product_for(self, token: TokenRef) -> Optional[int]:
        if isinstance(token, ReservationToken):
            return token.product_id
        with DBSession(self.engine) as s:
            row = ReservationRepository(s).find(token)
            return row.product_id if row else None
