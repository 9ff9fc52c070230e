"""FastAPI application: authentication, cart, checkout, payment and order endpoints.

Thin HTTP layer over the ledger, the cart store and the order coordinator.
Every ServiceError raised below is answered with its own status code and a
``{"code", "detail"}`` body.
"""

import threading
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from cart import CartLineView, CartStore
from config import Settings, get_settings
from database import DBSession, init_db, make_engine
from errors import ServiceError, Unauthenticated, ValidationFailed
from inventory import InventoryLedger
from locks import KeyedLocks
from logging_config import add_context, clear_context, configure_logging, get_logger
from models import Principal, User, utcnow
from orders import ADMIN_ROLE, DeliveryDetails, FulfillmentService, OrderCoordinator, OrderView
from payments import PaymentGateway, PaymentOutcome, PaymentResult, PayPalGateway
from repositories import UserRepository
from security import authenticate, create_token, hash_password, verify_password

logger = get_logger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once at startup."""
    settings: Settings
    engine: object
    ledger: InventoryLedger
    carts: CartStore
    orders: OrderCoordinator
    clock: Callable[[], datetime]


def build_services(settings: Settings, engine=None, gateway: Optional[PaymentGateway] = None,
                   fulfillment: Optional[FulfillmentService] = None,
                   clock: Callable[[], datetime] = utcnow, sleep=None) -> Services:
    engine = engine or make_engine(settings.database_url)
    locks = KeyedLocks()
    ledger = InventoryLedger(engine, settings, clock=clock, locks=locks)
    carts = CartStore(engine, ledger)
    kwargs = {"sleep": sleep} if sleep is not None else {}
    orders = OrderCoordinator(engine, settings, ledger, gateway or PayPalGateway(settings),
                              fulfillment=fulfillment, **kwargs)
    return Services(settings=settings, engine=engine, ledger=ledger, carts=carts, orders=orders, clock=clock)


# ---------------------------- Schemas ----------------------------
class RegisterPayload(BaseModel):
    """New user (admin only)."""
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=4)
    roles: List[str] = ["user"]


class LoginPayload(BaseModel):
    username: str
    password: str


class ProductPayload(BaseModel):
    name: str
    description: str = ""
    actual_price: Decimal
    discounted_price: Optional[Decimal] = None
    available: int = 0


class RestockPayload(BaseModel):
    quantity: int


class CartItemPayload(BaseModel):
    product_id: int
    quantity: int = 1


class CheckoutPayload(BaseModel):
    """Delivery details for the order."""
    full_name: str = Field(min_length=1, max_length=100)
    full_address: str = Field(min_length=1, max_length=255)
    contact_number: str = Field(min_length=3, max_length=30)
    alternate_contact_number: Optional[str] = Field(default=None, max_length=30)

    def to_delivery(self) -> DeliveryDetails:
        return DeliveryDetails(
            full_name=self.full_name.strip(),
            full_address=self.full_address.strip(),
            contact_number=self.contact_number.strip(),
            alternate_contact_number=self.alternate_contact_number,
        )


class PaymentCallbackPayload(BaseModel):
    """Provider callback relayed by the payment client."""
    outcome: PaymentOutcome
    external_id: Optional[str] = None
    detail: Optional[str] = None


class ResolvePayload(BaseModel):
    note: str = Field(min_length=3)


# ------------------------- Serialization -------------------------
def _money(value: Decimal) -> str:
    return f"{value:.2f}"


def cart_line_dict(line: CartLineView):
    return {
        "product_id": line.product_id,
        "product_name": line.product_name,
        "quantity": line.quantity,
        "unit_price": _money(line.unit_price),
        "line_total": _money(line.line_total),
        "reserved": line.live_quantity,
        "stale": line.stale,
    }


def order_dict(view: OrderView):
    return {
        "order_id": view.id,
        "principal": view.principal,
        "status": view.status.value,
        "total": _money(view.total),
        "currency": view.currency,
        "reconciliation_required": view.reconciliation_required,
        "failure_reason": view.failure_reason,
        "delivery": {
            "full_name": view.delivery.full_name,
            "full_address": view.delivery.full_address,
            "contact_number": view.delivery.contact_number,
            "alternate_contact_number": view.delivery.alternate_contact_number,
        } if view.delivery else None,
        "lines": [
            {
                "product_id": l.product_id,
                "product_name": l.product_name,
                "quantity": l.quantity,
                "unit_price": _money(l.unit_price),
                "line_total": _money(l.line_total),
            }
            for l in view.lines
        ],
        "created_at": view.created_at.isoformat(),
        "updated_at": view.updated_at.isoformat(),
    }


# ----------------------- Auth Dependencies -----------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_principal(request: Request) -> Principal:
    """Authenticated caller from the bearer credential, or 401."""
    services = get_services(request)
    return authenticate(request.headers, services.settings, clock=services.clock)


def require_admin(request: Request) -> Principal:
    services = get_services(request)
    return authenticate(request.headers, services.settings, clock=services.clock, role=ADMIN_ROLE)


# ------------------------ Background sweep -----------------------
class ReservationSweeper(threading.Thread):
    """Periodically reclaims expired reservations."""
    def __init__(self, ledger: InventoryLedger, interval: float):
        super().__init__(name="reservation-sweeper", daemon=True)
        self.ledger = ledger
        self.interval = interval
        self.stopped = threading.Event()

    def run(self):
        while not self.stopped.wait(self.interval):
            try:
                self.ledger.sweep_expired()
            except Exception:
                logger.exception("Reservation sweep failed")

    def stop(self):
        self.stopped.set()


# _bootstrap_admin: Creates the default admin user if missing.
def _bootstrap_admin(services: Services) -> None:
    settings = services.settings
    with DBSession(services.engine) as s:
        users = UserRepository(s)
        if users.find(settings.admin_username) is None:
            users.save(User(
                username=settings.admin_username,
                password_hash=hash_password(settings.admin_password),
                roles=f"user,{ADMIN_ROLE}",
            ))
            s.commit()
            logger.info("Default admin created", username=settings.admin_username)


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.services.engine)
        _bootstrap_admin(app.state.services)
        sweeper = None
        if settings.reconcile_interval > 0:
            sweeper = ReservationSweeper(app.state.services.ledger, settings.reconcile_interval)
            sweeper.start()
        yield
        if sweeper:
            sweeper.stop()

    app = FastAPI(title="Order and Cart Consistency API", version="0.1.0", lifespan=lifespan)
    app.state.services = services or build_services(settings)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        """Tag every log line of a request with its id and path."""
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        clear_context()
        add_context(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            clear_context()
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, code=exc.code, detail=exc.detail)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    # --------------------------- Auth Routes -------------------------
    @app.post('/auth/register')
    def register(payload: RegisterPayload, admin: Principal = Depends(require_admin),
                 services: Services = Depends(get_services)):
        """Registers a new user (admin only)."""
        with DBSession(services.engine) as s:
            users = UserRepository(s)
            if users.find(payload.username):
                raise ValidationFailed({"username": "Username already exists"})
            user = User(username=payload.username, password_hash=hash_password(payload.password),
                        roles=",".join(sorted(set(payload.roles))))
            users.save(user)
            s.commit()
            return {"id": user.id, "username": user.username, "roles": sorted(user.role_set())}

    @app.post('/auth/login')
    def login(payload: LoginPayload, services: Services = Depends(get_services)):
        """Checks the password and returns a bearer credential."""
        with DBSession(services.engine) as s:
            user = UserRepository(s).find(payload.username)
            if not user or not verify_password(payload.password, user.password_hash):
                raise Unauthenticated("Invalid credentials")
            token = create_token(user.username, user.role_set(), services.settings, now=services.clock())
            return {"access_token": token, "token_type": "bearer"}

    # ----------------------------- Products --------------------------
    @app.post('/products', status_code=201)
    def create_product(payload: ProductPayload, admin: Principal = Depends(require_admin),
                       services: Services = Depends(get_services)):
        product = services.ledger.add_product(
            payload.name, payload.actual_price, available=payload.available,
            discounted_price=payload.discounted_price, description=payload.description,
        )
        return {"id": product.id, "name": product.name, "unit_price": _money(product.unit_price),
                "available": product.available}

    @app.get('/products/{product_id}')
    def get_product(product_id: int, services: Services = Depends(get_services)):
        product = services.ledger.get_product(product_id)
        return {
            "id": product.id,
            "name": product.name,
            "description": product.description,
            "actual_price": _money(product.actual_price),
            "discounted_price": _money(product.discounted_price) if product.discounted_price else None,
            "unit_price": _money(product.unit_price),
            "available": services.ledger.availability(product_id),
        }

    @app.post('/products/{product_id}/restock')
    def restock(product_id: int, payload: RestockPayload, admin: Principal = Depends(require_admin),
                services: Services = Depends(get_services)):
        product = services.ledger.restock(product_id, payload.quantity)
        return {"id": product.id, "available": product.available}

    # ------------------------------- Cart ----------------------------
    @app.get('/cart')
    def get_cart(principal: Principal = Depends(get_current_principal),
                 services: Services = Depends(get_services)):
        lines = services.carts.lines(principal)
        return {"lines": [cart_line_dict(l) for l in lines], "total": _money(services.carts.total(principal))}

    @app.post('/cart/items')
    def add_cart_item(payload: CartItemPayload, principal: Principal = Depends(get_current_principal),
                      services: Services = Depends(get_services)):
        return cart_line_dict(services.carts.add_line(principal, payload.product_id, payload.quantity))

    @app.delete('/cart/items/{product_id}')
    def remove_cart_item(product_id: int, principal: Principal = Depends(get_current_principal),
                         services: Services = Depends(get_services)):
        return {"removed": services.carts.remove_line(principal, product_id)}

    @app.post('/cart/renew')
    def renew_cart(principal: Principal = Depends(get_current_principal),
                   services: Services = Depends(get_services)):
        return {"lines": [cart_line_dict(l) for l in services.carts.renew(principal)]}

    # ------------------------------ Orders ---------------------------
    @app.post('/orders/checkout', status_code=201)
    def checkout(payload: CheckoutPayload, principal: Principal = Depends(get_current_principal),
                 services: Services = Depends(get_services)):
        return order_dict(services.orders.checkout(principal, payload.to_delivery()))

    @app.post('/orders/{order_id}/pay')
    def pay(order_id: str, principal: Principal = Depends(get_current_principal),
            services: Services = Depends(get_services)):
        """Captures right away, or answers 202 with the link where the buyer approves."""
        if services.orders.gateway.requires_approval:
            approval = services.orders.start_payment(order_id, principal)
            return JSONResponse(status_code=202, content={
                "order_id": order_id,
                "reference": approval.reference,
                "approve_url": approval.approve_url,
            })
        return order_dict(services.orders.pay(order_id, principal))

    @app.get('/payments/paypal/return')
    def paypal_return(token: str, services: Services = Depends(get_services)):
        """Buyer approved at PayPal; ``token`` is the PayPal order id."""
        view = services.orders.complete_payment(token)
        return {"order_id": view.id, "status": view.status.value}

    @app.get('/payments/paypal/cancel')
    def paypal_cancel(token: str, services: Services = Depends(get_services)):
        view = services.orders.abandon_payment(token)
        return {"order_id": view.id, "status": view.status.value}

    @app.post('/orders/{order_id}/confirm-payment')
    def confirm_payment(order_id: str, payload: PaymentCallbackPayload,
                        admin: Principal = Depends(require_admin),
                        services: Services = Depends(get_services)):
        result = PaymentResult(payload.outcome, external_id=payload.external_id, detail=payload.detail)
        return order_dict(services.orders.confirm_payment(order_id, result))

    @app.post('/orders/{order_id}/fulfill')
    def fulfill(order_id: str, admin: Principal = Depends(require_admin),
                services: Services = Depends(get_services)):
        return order_dict(services.orders.fulfill(order_id))

    @app.post('/orders/{order_id}/fulfilled')
    def fulfilled(order_id: str, admin: Principal = Depends(require_admin),
                  services: Services = Depends(get_services)):
        return order_dict(services.orders.mark_fulfilled(order_id))

    @app.post('/orders/{order_id}/cancel')
    def cancel(order_id: str, principal: Principal = Depends(get_current_principal),
               services: Services = Depends(get_services)):
        return order_dict(services.orders.cancel(order_id, principal))

    @app.get('/orders')
    def list_orders(limit: int = 50, principal: Principal = Depends(get_current_principal),
                    services: Services = Depends(get_services)):
        return [order_dict(v) for v in services.orders.list_orders(principal, limit)]

    @app.get('/orders/{order_id}')
    def get_order(order_id: str, principal: Principal = Depends(get_current_principal),
                  services: Services = Depends(get_services)):
        return order_dict(services.orders.get_order(order_id, principal))

    # ------------------------------ Admin ----------------------------
    @app.post('/admin/reconcile')
    def reconcile(admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
        """Reclaims expired reservations right away."""
        return {"performed": services.ledger.sweep_expired()}

    @app.get('/admin/orders')
    def search_orders(status: str = "all", search: Optional[str] = None, page: int = 0, size: int = 20,
                      admin: Principal = Depends(require_admin), services: Services = Depends(get_services)):
        """Every order, sorted by delivery name, with status filter, search and pagination."""
        views, total = services.orders.search_orders(admin, status=status, search=search, page=page, size=size)
        return {"items": [order_dict(v) for v in views], "total": total, "page": page, "size": size}

    @app.get('/admin/reconciliation')
    def reconciliation_cases(admin: Principal = Depends(require_admin),
                             services: Services = Depends(get_services)):
        """Orders whose payment was captured but whose inventory could not be committed."""
        return [order_dict(v) for v in services.orders.list_reconciliation_cases()]

    @app.post('/admin/reconciliation/{order_id}/resolve')
    def resolve_case(order_id: str, payload: ResolvePayload, admin: Principal = Depends(require_admin),
                     services: Services = Depends(get_services)):
        return order_dict(services.orders.resolve_reconciliation(order_id, payload.note, admin))

    # ------------------------------ Utility --------------------------
    @app.get('/health')
    def health():
        return {"status": "ok", "currency": settings.currency}

    return app


configure_logging(get_settings().log_level)
app = create_app()
