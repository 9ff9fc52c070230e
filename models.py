"""Persistent data models.

Includes users, products, inventory reservations, cart lines, orders with
their line snapshots, and payment records. Everything an in-flight checkout
needs is stored here so a restart does not lose pending state.
"""

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, List, Optional
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import SQLModel, Field


# utcnow: Timezone-aware UTC timestamp used everywhere in the service.
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Aware UTC datetimes in Python, UTC wall-clock values in the column.

    SQLite keeps no offset, so values are normalised to UTC on the way in
    and tagged as UTC again on the way out.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError(f"Naive datetime {value!r}; use utcnow()")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class ReservationStatus(str, Enum):
    ACTIVE = "active"
    RELEASED = "released"
    COMMITTED = "committed"
    EXPIRED = "expired"


class OrderStatus(str, Enum):
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    FULFILLING = "fulfilling"
    COMPLETED = "completed"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    DECLINED = "declined"
    ERRORED = "errored"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, resolved from a credential for one request."""
    subject: str
    roles: FrozenSet[str] = frozenset()

    def has_role(self, role: str) -> bool:
        return role in self.roles


@dataclass(frozen=True)
class ReservationToken:
    """Soft hold on inventory handed to the cart and later to the order."""
    token: str
    cart_id: Optional[str]
    product_id: int
    quantity: int
    expires_at: datetime

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at


class User(SQLModel, table=True):
    """Authenticable user.

    Fields:
      username: Unique name, used as the credential subject and cart id.
      password_hash: bcrypt hash.
      roles: Comma separated role names (user, admin).
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    roles: str = Field(default='user')

    def role_set(self) -> FrozenSet[str]:
        return frozenset(r for r in self.roles.split(',') if r)


class Product(SQLModel, table=True):
    """Sellable product and its on-hand stock.

    ``available`` only decreases through a committed reservation and only
    increases through an explicit restock.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str = ''
    actual_price: Decimal = Field(max_digits=12, decimal_places=2)
    discounted_price: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    available: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def unit_price(self) -> Decimal:
        if self.discounted_price is not None and self.discounted_price > 0:
            return self.discounted_price
        return self.actual_price


class Reservation(SQLModel, table=True):
    """Stored form of a ReservationToken.

    order_id is set once checkout binds the hold to an order; from then on the
    cart no longer owns it.
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    token: str = Field(index=True, unique=True)
    cart_id: Optional[str] = Field(default=None, index=True)
    product_id: int = Field(index=True)
    quantity: int
    expires_at: datetime = Field(index=True, sa_type=UTCDateTime)
    status: str = Field(default=ReservationStatus.ACTIVE.value, index=True)
    order_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    def to_token(self) -> ReservationToken:
        return ReservationToken(
            token=self.token,
            cart_id=self.cart_id,
            product_id=self.product_id,
            quantity=self.quantity,
            expires_at=self.expires_at,
        )


class CartLine(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cart_id: str = Field(index=True)
    product_id: int = Field(index=True)
    quantity: int
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Order(SQLModel, table=True):
    """Order header. Lines and total are fixed at checkout; status moves forward only."""
    __tablename__ = "orders"

    id: str = Field(primary_key=True)
    principal: str = Field(index=True)
    total: Decimal = Field(max_digits=14, decimal_places=2)
    currency: str = 'USD'
    status: str = Field(default=OrderStatus.DRAFT.value, index=True)
    reconciliation_required: bool = Field(default=False, index=True)
    failure_reason: Optional[str] = None
    # Delivery details captured at checkout
    full_name: Optional[str] = Field(default=None, index=True)
    full_address: Optional[str] = None
    contact_number: Optional[str] = None
    alternate_contact_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class OrderLine(SQLModel, table=True):
    """Snapshot of one cart line at checkout, with the price charged."""
    __tablename__ = "order_lines"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(index=True)
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal = Field(max_digits=12, decimal_places=2)
    reservation_tokens: str = '[]'  # JSON list of reservation tokens

    def tokens(self) -> List[str]:
        return json.loads(self.reservation_tokens)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class PaymentRecord(SQLModel, table=True):
    """Payment attempt for one order.

    ``pending`` while the buyer has not yet approved it at the provider;
    ``external_id`` is then the provider order awaiting approval.
    """
    __tablename__ = "payments"

    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(index=True, unique=True)
    external_id: Optional[str] = Field(default=None, index=True)
    approve_url: Optional[str] = None
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    status: str
    attempts: int = 1
    detail: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
