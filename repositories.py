"""Repositories: one per stored entity, with explicit find/save/delete methods.

Each repository works on a session opened by the caller so that several
reads and writes can share one transaction.
"""

from datetime import datetime
from typing import List, Optional, Tuple
from sqlalchemy import func, or_
from sqlmodel import Session, select
from models import (
    CartLine,
    Order,
    OrderLine,
    PaymentRecord,
    Product,
    Reservation,
    ReservationStatus,
    User,
)


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    def delete(self, obj) -> None:
        self.session.delete(obj)
        self.session.flush()


class UserRepository(_Repository):
    def find(self, username: str) -> Optional[User]:
        return self.session.exec(select(User).where(User.username == username)).first()


class ProductRepository(_Repository):
    def find(self, product_id: int) -> Optional[Product]:
        return self.session.get(Product, product_id)

    def find_many(self, product_ids: List[int]) -> List[Product]:
        if not product_ids:
            return []
        return list(self.session.exec(select(Product).where(Product.id.in_(product_ids))).all())


class ReservationRepository(_Repository):
    def find(self, token: str) -> Optional[Reservation]:
        return self.session.exec(select(Reservation).where(Reservation.token == token)).first()

    # held_quantity: Units of a product under live (active, unexpired) holds.
    def held_quantity(self, product_id: int, now: datetime) -> int:
        statement = select(Reservation).where(
            Reservation.product_id == product_id,
            Reservation.status == ReservationStatus.ACTIVE.value,
            Reservation.expires_at > now,
        )
        return sum(r.quantity for r in self.session.exec(statement).all())

    def for_cart(self, cart_id: str, product_id: Optional[int] = None) -> List[Reservation]:
        """Active holds still owned by a cart (not yet bound to an order)."""
        statement = select(Reservation).where(
            Reservation.cart_id == cart_id,
            Reservation.order_id.is_(None),
            Reservation.status == ReservationStatus.ACTIVE.value,
        )
        if product_id is not None:
            statement = statement.where(Reservation.product_id == product_id)
        return list(self.session.exec(statement).all())

    def lapsed(self, now: datetime) -> List[Reservation]:
        statement = select(Reservation).where(
            Reservation.status == ReservationStatus.ACTIVE.value,
            Reservation.expires_at <= now,
        )
        return list(self.session.exec(statement).all())


class CartRepository(_Repository):
    def find_lines(self, cart_id: str) -> List[CartLine]:
        statement = select(CartLine).where(CartLine.cart_id == cart_id).order_by(CartLine.product_id)
        return list(self.session.exec(statement).all())

    def find_line(self, cart_id: str, product_id: int) -> Optional[CartLine]:
        statement = select(CartLine).where(CartLine.cart_id == cart_id, CartLine.product_id == product_id)
        return self.session.exec(statement).first()

    def delete_lines(self, cart_id: str) -> int:
        lines = self.find_lines(cart_id)
        for line in lines:
            self.session.delete(line)
        self.session.flush()
        return len(lines)


class OrderRepository(_Repository):
    def find(self, order_id: str) -> Optional[Order]:
        return self.session.get(Order, order_id)

    def find_lines(self, order_id: str) -> List[OrderLine]:
        statement = select(OrderLine).where(OrderLine.order_id == order_id).order_by(OrderLine.id)
        return list(self.session.exec(statement).all())

    def for_principal(self, principal: str, limit: int = 50) -> List[Order]:
        statement = (
            select(Order)
            .where(Order.principal == principal)
            .order_by(Order.created_at.desc())
            .limit(limit)
        )
        return list(self.session.exec(statement).all())

    def needing_reconciliation(self) -> List[Order]:
        statement = select(Order).where(Order.reconciliation_required == True)  # noqa: E712
        return list(self.session.exec(statement.order_by(Order.updated_at)).all())

    def search(self, status: Optional[str] = None, search: Optional[str] = None,
               page: int = 0, size: int = 20) -> Tuple[List[Order], int]:
        """One page of all orders, by delivery name, optionally filtered by status and a name fragment."""
        conditions = []
        if status:
            conditions.append(Order.status == status)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(Order.full_name.ilike(pattern), Order.principal.ilike(pattern)))
        counting = select(func.count()).select_from(Order)
        statement = select(Order)
        if conditions:
            counting = counting.where(*conditions)
            statement = statement.where(*conditions)
        total = self.session.exec(counting).one()
        statement = statement.order_by(Order.full_name, Order.created_at).offset(page * size).limit(size)
        return list(self.session.exec(statement).all()), total


class PaymentRepository(_Repository):
    def find_for_order(self, order_id: str) -> Optional[PaymentRecord]:
        return self.session.exec(select(PaymentRecord).where(PaymentRecord.order_id == order_id)).first()

    def find_by_external_id(self, external_id: str) -> Optional[PaymentRecord]:
        statement = select(PaymentRecord).where(PaymentRecord.external_id == external_id)
        return self.session.exec(statement).first()
