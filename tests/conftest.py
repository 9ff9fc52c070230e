"""Pytest fixtures: temporary database, controllable clock and scripted collaborators."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from cart import CartStore
from config import Settings
from database import init_db, make_engine
from inventory import InventoryLedger
from locks import KeyedLocks
from logging_config import configure_logging
from models import Principal
from orders import FulfillmentService, OrderCoordinator
from payments import PaymentApproval, PaymentGateway, PaymentResult

TEST_SECRET = "test-signing-key-that-is-long-enough-for-hs256"

configure_logging("WARNING")


class FakeClock:
    """Clock that only moves when a test says so."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedGateway(PaymentGateway):
    """Returns queued results in order; repeats the last one when the queue runs dry."""

    def __init__(self, *results: PaymentResult):
        self.results = list(results) or [PaymentResult.success("ext-1")]
        self.calls = []
        self.references = []

    def capture(self, order_id, amount, principal, reference=None):
        self.calls.append((order_id, amount, principal.subject))
        self.references.append(reference)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


class ApprovalGateway(ScriptedGateway):
    """Scripted provider that wants the buyer to approve before capture."""
    requires_approval = True

    def __init__(self, *results: PaymentResult):
        super().__init__(*results)
        self.begun = []

    def begin(self, order_id, amount, principal):
        self.begun.append(order_id)
        reference = f"PP-{len(self.begun)}"
        return PaymentApproval(reference=reference, approve_url=f"https://paypal.test/approve?token={reference}")


class RecordingFulfillment(FulfillmentService):
    def __init__(self, confirm: bool = True):
        self.confirm = confirm
        self.dispatched = []

    def dispatch(self, order) -> bool:
        self.dispatched.append(order.id)
        return self.confirm


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret=TEST_SECRET,
        jwt_exp_minutes=60,
        reservation_ttl_minutes=15,
        payment_max_attempts=3,
        payment_backoff_seconds=0.5,
        reconcile_interval=0,
        admin_password="admin-pass",
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine, settings, clock) -> InventoryLedger:
    return InventoryLedger(engine, settings, clock=clock, locks=KeyedLocks())


@pytest.fixture
def carts(engine, ledger) -> CartStore:
    return CartStore(engine, ledger)


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def fulfillment() -> RecordingFulfillment:
    return RecordingFulfillment()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(engine, settings, ledger, gateway, fulfillment, sleeps) -> OrderCoordinator:
    return OrderCoordinator(engine, settings, ledger, gateway, fulfillment=fulfillment, sleep=sleeps.append)


@pytest.fixture
def alice() -> Principal:
    return Principal(subject="alice", roles=frozenset({"user"}))


@pytest.fixture
def bob() -> Principal:
    return Principal(subject="bob", roles=frozenset({"user"}))


@pytest.fixture
def operator() -> Principal:
    return Principal(subject="ops", roles=frozenset({"user", "admin"}))


@pytest.fixture
def widget(ledger):
    return ledger.add_product("Widget", Decimal("10.00"), available=5)


@pytest.fixture
def gadget(ledger):
    return ledger.add_product("Gadget", Decimal("25.00"), available=10, discounted_price=Decimal("20.00"))
