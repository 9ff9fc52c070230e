"""Order coordinator: the order state machine.

    draft -> pending_payment -> paid -> fulfilling -> completed
    pending_payment -> payment_failed
    draft | pending_payment -> cancelled

Every transition for an order runs under that order's lock and is looked up
in ``TRANSITIONS``; anything not listed raises InvalidTransition, so orders
never move backward. The only state kept outside the order rows is the
ledger's reservation table.
"""

import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple
from config import Settings
from database import DBSession
from errors import (
    EmptyCart,
    Forbidden,
    InsufficientStock,
    InvalidTransition,
    OrderNotFound,
    PaymentApprovalRequired,
    PaymentDeclined,
    PaymentErrored,
    PaymentNotFound,
    ProductNotFound,
    ReconciliationRequired,
    ReservationStale,
    TokenExpired,
    ValidationFailed,
)
from cart import cart_id_for, live_holds
from inventory import InventoryLedger
from locks import KeyedLocks
from logging_config import get_alert_logger, get_logger
from models import Order, OrderLine, OrderStatus, PaymentRecord, PaymentStatus, Principal, utcnow
from payments import PaymentApproval, PaymentGateway, PaymentOutcome, PaymentResult, capture_with_retry
from repositories import (
    CartRepository,
    OrderRepository,
    PaymentRepository,
    ProductRepository,
    ReservationRepository,
)

logger = get_logger(__name__)
alerts = get_alert_logger()

ADMIN_ROLE = "admin"

TRANSITIONS: Dict[Tuple[OrderStatus, str], OrderStatus] = {
    (OrderStatus.DRAFT, "submit"): OrderStatus.PENDING_PAYMENT,
    (OrderStatus.DRAFT, "cancel"): OrderStatus.CANCELLED,
    (OrderStatus.PENDING_PAYMENT, "payment_succeeded"): OrderStatus.PAID,
    (OrderStatus.PENDING_PAYMENT, "payment_failed"): OrderStatus.PAYMENT_FAILED,
    (OrderStatus.PENDING_PAYMENT, "cancel"): OrderStatus.CANCELLED,
    (OrderStatus.PAID, "fulfill"): OrderStatus.FULFILLING,
    (OrderStatus.FULFILLING, "fulfilled"): OrderStatus.COMPLETED,
}

_PAYMENT_STATUS = {
    PaymentOutcome.SUCCESS: PaymentStatus.CAPTURED,
    PaymentOutcome.DECLINED: PaymentStatus.DECLINED,
    PaymentOutcome.ERRORED: PaymentStatus.ERRORED,
}


# next_state: Pure function of (current state, event).
def next_state(order_id: str, state: OrderStatus, event: str) -> OrderStatus:
    target = TRANSITIONS.get((state, event))
    if target is None:
        raise InvalidTransition(order_id, state.value, event)
    return target


@dataclass(frozen=True)
class DeliveryDetails:
    full_name: str
    full_address: str
    contact_number: str
    alternate_contact_number: Optional[str] = None


@dataclass(frozen=True)
class OrderLineView:
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    tokens: Tuple[str, ...]

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class OrderView:
    id: str
    principal: str
    status: OrderStatus
    total: Decimal
    currency: str
    lines: Tuple[OrderLineView, ...]
    reconciliation_required: bool
    failure_reason: Optional[str]
    created_at: datetime
    updated_at: datetime
    delivery: Optional[DeliveryDetails] = None

    @property
    def tokens(self) -> List[str]:
        return [t for line in self.lines for t in line.tokens]

    @classmethod
    def build(cls, order: Order, lines: List[OrderLine]) -> "OrderView":
        return cls(
            id=order.id,
            principal=order.principal,
            status=OrderStatus(order.status),
            total=order.total,
            currency=order.currency,
            lines=tuple(
                OrderLineView(
                    product_id=l.product_id,
                    product_name=l.product_name,
                    quantity=l.quantity,
                    unit_price=l.unit_price,
                    tokens=tuple(l.tokens()),
                )
                for l in lines
            ),
            reconciliation_required=order.reconciliation_required,
            failure_reason=order.failure_reason,
            created_at=order.created_at,
            updated_at=order.updated_at,
            delivery=DeliveryDetails(
                full_name=order.full_name,
                full_address=order.full_address or "",
                contact_number=order.contact_number or "",
                alternate_contact_number=order.alternate_contact_number,
            ) if order.full_name else None,
        )


class FulfillmentService(ABC):
    """External collaborator that ships a paid order.

    ``dispatch`` returns True once fulfillment is confirmed; False means the
    confirmation will arrive later through ``OrderCoordinator.mark_fulfilled``.
    """

    @abstractmethod
    def dispatch(self, order: OrderView) -> bool: ...


class DeferredFulfillment(FulfillmentService):
    def dispatch(self, order: OrderView) -> bool:
        logger.info("Order handed to fulfillment", order_id=order.id)
        return False


class OrderCoordinator:
    """Turns a validated cart into an order and drives it through payment and fulfillment."""

    def __init__(self, engine, settings: Settings, ledger: InventoryLedger, gateway: PaymentGateway,
                 fulfillment: Optional[FulfillmentService] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 locks: Optional[KeyedLocks] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.engine = engine
        self.settings = settings
        self.ledger = ledger
        self.gateway = gateway
        self.fulfillment = fulfillment or DeferredFulfillment()
        self.clock = clock or ledger.clock or utcnow
        self.locks = locks if locks is not None else ledger.locks
        self.sleep = sleep

    # --------------------------- Checkout ---------------------------

    def checkout(self, principal: Principal, delivery: Optional[DeliveryDetails] = None) -> OrderView:
        """Snapshot the principal's cart into a pending_payment order.

        All or nothing: if any line is not exactly covered by live holds the
        whole checkout is rejected with ReservationStale and nothing changes.
        """
        cart_id = cart_id_for(principal)
        with self.locks.hold(("cart", cart_id)):
            now = self.clock()
            with DBSession(self.engine) as s:
                lines = CartRepository(s).find_lines(cart_id)
                if not lines:
                    raise EmptyCart(f"Cart {cart_id} is empty")
                reservations = ReservationRepository(s)
                holds = {}
                stale = []
                for line in lines:
                    live = live_holds(reservations.for_cart(cart_id, line.product_id), now)
                    if sum(r.quantity for r in live) != line.quantity:
                        stale.append(line.product_id)
                    holds[line.product_id] = live
                if stale:
                    logger.info("Checkout rejected", cart_id=cart_id, stale_products=stale)
                    raise ReservationStale(stale)

                products = {p.id: p for p in ProductRepository(s).find_many(list(holds))}
                missing = [pid for pid in holds if pid not in products]
                if missing:
                    raise ProductNotFound(f"Products {missing} no longer exist")

                order_id = uuid.uuid4().hex
                quantum = self.settings.money_quantum
                order_lines = [
                    OrderLine(
                        order_id=order_id,
                        product_id=line.product_id,
                        product_name=products[line.product_id].name,
                        quantity=line.quantity,
                        unit_price=products[line.product_id].unit_price,
                        reservation_tokens=json.dumps([r.token for r in holds[line.product_id]]),
                    )
                    for line in lines
                ]
                total = sum((l.line_total for l in order_lines), Decimal('0')).quantize(quantum)
                order = Order(
                    id=order_id,
                    principal=principal.subject,
                    total=total,
                    currency=self.settings.currency,
                    status=OrderStatus.DRAFT.value,
                    created_at=now,
                    updated_at=now,
                )
                if delivery is not None:
                    order.full_name = delivery.full_name
                    order.full_address = delivery.full_address
                    order.contact_number = delivery.contact_number
                    order.alternate_contact_number = delivery.alternate_contact_number
                order.status = next_state(order_id, OrderStatus.DRAFT, "submit").value

                orders = OrderRepository(s)
                orders.save(order)
                for order_line in order_lines:
                    orders.save(order_line)
                for live in holds.values():
                    for hold in live:
                        hold.order_id = order_id
                        hold.updated_at = now
                        reservations.save(hold)
                CartRepository(s).delete_lines(cart_id)
                s.commit()
        logger.info("Order created", order_id=order_id, principal=principal.subject,
                    total=str(total), lines=len(order_lines))
        return OrderView.build(order, order_lines)

    # --------------------------- Payment ----------------------------

    def start_payment(self, order_id: str, principal: Principal) -> PaymentApproval:
        """Open a provider payment the buyer has to approve.

        Asking again for the same order returns the approval already opened.
        The order stays pending_payment; its holds keep running meanwhile.
        """
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            self._authorize(view, principal)
            if view.status != OrderStatus.PENDING_PAYMENT:
                raise InvalidTransition(order_id, view.status.value, "start_payment")
            record = self.payment_for(order_id)
            if record is not None and record.status == PaymentStatus.PENDING.value and record.approve_url:
                return PaymentApproval(reference=record.external_id, approve_url=record.approve_url)
            approval = self.gateway.begin(order_id, view.total, principal)
            with DBSession(self.engine) as s:
                payments = PaymentRepository(s)
                record = payments.find_for_order(order_id)
                if record is None:
                    record = PaymentRecord(order_id=order_id, amount=view.total, status=PaymentStatus.PENDING.value)
                record.status = PaymentStatus.PENDING.value
                record.external_id = approval.reference
                record.approve_url = approval.approve_url
                record.attempts = 0
                payments.save(record)
                s.commit()
        logger.info("Payment awaiting approval", order_id=order_id, reference=approval.reference)
        return approval

    def pay(self, order_id: str, principal: Principal, reference: Optional[str] = None) -> OrderView:
        """Capture the order total through the gateway and apply the outcome.

        ``errored`` captures are retried up to ``payment_max_attempts``. The
        order stays pending_payment, and locked, while the gateway is called.
        Gateways that need buyer approval capture the reference opened by
        ``start_payment``.
        """
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            self._authorize(view, principal)
            if view.status != OrderStatus.PENDING_PAYMENT:
                raise InvalidTransition(order_id, view.status.value, "pay")
            if self.gateway.requires_approval:
                reference = self._approved_reference(order_id, reference)
            result = capture_with_retry(
                self.gateway, order_id, view.total, principal,
                max_attempts=self.settings.payment_max_attempts,
                backoff_seconds=self.settings.payment_backoff_seconds,
                sleep=self.sleep,
                reference=reference,
            )
            view = self.confirm_payment(order_id, result)
        if result.outcome == PaymentOutcome.DECLINED:
            raise PaymentDeclined(result.detail or "Payment declined")
        if result.outcome == PaymentOutcome.ERRORED:
            raise PaymentErrored(result.detail or "Payment provider unavailable")
        return view

    def complete_payment(self, reference: str) -> OrderView:
        """Buyer came back from the provider: capture the approved payment."""
        order_id = self._order_for_reference(reference)
        view = self._load(order_id)
        return self.pay(order_id, Principal(subject=view.principal), reference=reference)

    def abandon_payment(self, reference: str) -> OrderView:
        """Buyer cancelled at the provider. The order stays payable until its holds lapse."""
        order_id = self._order_for_reference(reference)
        logger.info("Payment approval cancelled by buyer", order_id=order_id, reference=reference)
        return self._load(order_id)

    def confirm_payment(self, order_id: str, result: PaymentResult) -> OrderView:
        """Apply a capture outcome to a pending_payment order.

        Success commits every hold; if any commit fails the order ends in
        payment_failed with the reconciliation flag set, committed lines stay
        committed and ReconciliationRequired is raised. Declined or errored
        releases every hold.
        """
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            if view.status != OrderStatus.PENDING_PAYMENT:
                raise InvalidTransition(order_id, view.status.value, "confirm_payment")
            self._record_payment(view, result)

            if not result.succeeded:
                for token in view.tokens:
                    self.ledger.release(token)
                reason = f"payment {result.outcome.value}: {result.detail or ''}".strip()
                view = self._apply(order_id, "payment_failed", failure_reason=reason)
                logger.info("Payment failed", order_id=order_id, outcome=result.outcome.value)
                return view

            committed, failed = [], []
            for token in view.tokens:
                try:
                    self.ledger.commit(token)
                    committed.append(token)
                except (TokenExpired, InsufficientStock, ProductNotFound) as e:
                    failed.append(token)
                    logger.warning("Commit failed after capture", order_id=order_id, token=token, error=str(e))

            if failed:
                view = self._apply(
                    order_id, "payment_failed",
                    reconciliation_required=True,
                    failure_reason=f"reconciliation required: {len(failed)} reservation(s) lapsed after capture",
                )
                alerts.error(
                    "Payment captured but inventory not committed",
                    order_id=order_id,
                    external_id=result.external_id,
                    amount=str(view.total),
                    committed=committed,
                    failed=failed,
                )
                raise ReconciliationRequired(order_id, committed, failed)

            view = self._apply(order_id, "payment_succeeded")
            logger.info("Order paid", order_id=order_id, external_id=result.external_id)
            return view

    # ------------------------- Fulfillment --------------------------

    def fulfill(self, order_id: str) -> OrderView:
        """Hand a paid order to fulfillment exactly once.

        An order already fulfilling or completed is returned unchanged; its
        completion then arrives through ``mark_fulfilled``.
        """
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            if view.status in (OrderStatus.FULFILLING, OrderStatus.COMPLETED):
                logger.info("Duplicate fulfillment signal ignored", order_id=order_id, status=view.status.value)
                return view
            view = self._apply(order_id, "fulfill")
            if self.fulfillment.dispatch(view):
                view = self._apply(order_id, "fulfilled")
                logger.info("Order completed", order_id=order_id)
            return view

    def mark_fulfilled(self, order_id: str) -> OrderView:
        """Confirmation signal from the fulfillment side; repeated signals are no-ops."""
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            if view.status == OrderStatus.COMPLETED:
                return view
            view = self._apply(order_id, "fulfilled")
            logger.info("Order completed", order_id=order_id)
            return view

    # ------------------------- Cancellation -------------------------

    def cancel(self, order_id: str, principal: Optional[Principal] = None) -> OrderView:
        with self.locks.hold(("order", order_id)):
            view = self._load(order_id)
            if principal is not None:
                self._authorize(view, principal)
            next_state(order_id, view.status, "cancel")
            for token in view.tokens:
                self.ledger.release(token)
            view = self._apply(order_id, "cancel")
            logger.info("Order cancelled", order_id=order_id)
            return view

    # -------------------------- Queries -----------------------------

    def get_order(self, order_id: str, principal: Optional[Principal] = None) -> OrderView:
        view = self._load(order_id)
        if principal is not None:
            self._authorize(view, principal)
        return view

    def list_orders(self, principal: Principal, limit: int = 50) -> List[OrderView]:
        with DBSession(self.engine) as s:
            orders = OrderRepository(s)
            return [OrderView.build(o, orders.find_lines(o.id)) for o in orders.for_principal(principal.subject, limit)]

    def search_orders(self, principal: Principal, status: Optional[str] = None, search: Optional[str] = None,
                      page: int = 0, size: int = 20) -> Tuple[List[OrderView], int]:
        """Operator view over every order: one page plus the total match count.

        ``status`` of None or "all" means any status; ``search`` matches the
        delivery name or the owner, case-insensitively.
        """
        if not principal.has_role(ADMIN_ROLE):
            raise Forbidden("Only operators can list every order")
        if status in (None, "", "all"):
            status = None
        elif status not in {s.value for s in OrderStatus}:
            raise ValidationFailed({"status": f"Unknown order status '{status}'"})
        if page < 0 or not 1 <= size <= 100:
            raise ValidationFailed({"page": "page must be >= 0 and size between 1 and 100"})
        with DBSession(self.engine) as s:
            orders = OrderRepository(s)
            rows, total = orders.search(status=status, search=search or None, page=page, size=size)
            return [OrderView.build(o, orders.find_lines(o.id)) for o in rows], total

    def payment_for(self, order_id: str) -> Optional[PaymentRecord]:
        with DBSession(self.engine) as s:
            return PaymentRepository(s).find_for_order(order_id)

    def list_reconciliation_cases(self) -> List[OrderView]:
        with DBSession(self.engine) as s:
            orders = OrderRepository(s)
            return [OrderView.build(o, orders.find_lines(o.id)) for o in orders.needing_reconciliation()]

    def resolve_reconciliation(self, order_id: str, note: str, principal: Principal) -> OrderView:
        """Clear the reconciliation flag after an operator settled the case by hand."""
        if not principal.has_role(ADMIN_ROLE):
            raise Forbidden("Only operators can resolve reconciliation cases")
        with self.locks.hold(("order", order_id)):
            with DBSession(self.engine) as s:
                orders = OrderRepository(s)
                order = orders.find(order_id)
                if order is None:
                    raise OrderNotFound(f"Order {order_id} not found")
                if not order.reconciliation_required:
                    raise InvalidTransition(order_id, order.status, "resolve_reconciliation")
                order.reconciliation_required = False
                order.failure_reason = f"{order.failure_reason}; resolved by {principal.subject}: {note}"
                order.updated_at = self.clock()
                orders.save(order)
                s.commit()
                view = OrderView.build(order, orders.find_lines(order_id))
        alerts.info("Reconciliation case resolved", order_id=order_id, operator=principal.subject)
        return view

    # -------------------------- Internals ---------------------------

    def _load(self, order_id: str) -> OrderView:
        with DBSession(self.engine) as s:
            orders = OrderRepository(s)
            order = orders.find(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            return OrderView.build(order, orders.find_lines(order_id))

    def _apply(self, order_id: str, event: str, **changes) -> OrderView:
        with DBSession(self.engine) as s:
            orders = OrderRepository(s)
            order = orders.find(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            previous = order.status
            order.status = next_state(order_id, OrderStatus(order.status), event).value
            for key, value in changes.items():
                setattr(order, key, value)
            order.updated_at = self.clock()
            orders.save(order)
            s.commit()
            view = OrderView.build(order, orders.find_lines(order_id))
        logger.debug("Order transition", order_id=order_id, transition=event, previous=previous, current=order.status)
        return view

    def _record_payment(self, view: OrderView, result: PaymentResult) -> None:
        with DBSession(self.engine) as s:
            payments = PaymentRepository(s)
            record = payments.find_for_order(view.id)
            if record is None:
                record = PaymentRecord(order_id=view.id, amount=view.total, status=PaymentStatus.ERRORED.value)
            record.external_id = result.external_id or record.external_id
            record.status = _PAYMENT_STATUS[result.outcome].value
            record.attempts = result.attempts
            record.detail = result.detail
            payments.save(record)
            s.commit()

    # _approved_reference: Provider reference opened by start_payment for this order.
    def _approved_reference(self, order_id: str, reference: Optional[str]) -> str:
        record = self.payment_for(order_id)
        if record is None or record.status != PaymentStatus.PENDING.value or not record.external_id:
            raise PaymentApprovalRequired(f"Order {order_id} has no payment awaiting capture; start one first")
        if reference is not None and reference != record.external_id:
            raise ValidationFailed({"reference": "Does not match the payment opened for this order"})
        return record.external_id

    def _order_for_reference(self, reference: str) -> str:
        with DBSession(self.engine) as s:
            record = PaymentRepository(s).find_by_external_id(reference)
        if record is None:
            raise PaymentNotFound(f"No payment with reference {reference}")
        return record.order_id

    @staticmethod
    def _authorize(view: OrderView, principal: Principal) -> None:
        if view.principal != principal.subject and not principal.has_role(ADMIN_ROLE):
            raise Forbidden(f"Order {view.id} belongs to another user")
