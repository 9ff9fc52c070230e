"""Tests for the payment boundary: retry policy and the PayPal adapter."""
from decimal import Decimal

import pytest
import requests

from errors import PaymentDeclined, PaymentErrored
from models import Principal
from payments import PaymentApproval, PaymentOutcome, PaymentResult, PayPalGateway, capture_with_retry
from tests.conftest import ScriptedGateway

PRINCIPAL = Principal(subject="alice", roles=frozenset({"user"}))


class FakeResponse:
    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self._body = body

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Answers PayPal endpoints from canned responses, matched on method and URL suffix."""

    def __init__(self, routes=None, token_error=None):
        self.routes = routes or {}
        self.token_error = token_error
        self.requests = []

    def _answer(self, method, url, kwargs):
        self.requests.append((method, url, kwargs))
        for (route_method, suffix), response in self.routes.items():
            if route_method == method and url.endswith(suffix):
                return response
        raise AssertionError(f"unexpected {method} {url}")

    def post(self, url, **kwargs):
        if url.endswith("/v1/oauth2/token"):
            if self.token_error:
                raise self.token_error
            return FakeResponse(200, {"access_token": "access"})
        return self._answer("POST", url, kwargs)

    def get(self, url, **kwargs):
        return self._answer("GET", url, kwargs)


def _provider_order(status, order_id="order-1", value="12.50", currency="USD"):
    return {
        "id": "PAYPAL-1",
        "status": status,
        "purchase_units": [{
            "reference_id": order_id,
            "custom_id": order_id,
            "amount": {"currency_code": currency, "value": value},
        }],
    }


def test_errored_then_success_retries(sleeps):
    gateway = ScriptedGateway(
        PaymentResult.errored("timeout"),
        PaymentResult.errored("timeout"),
        PaymentResult.success("ext-9"),
    )

    result = capture_with_retry(gateway, "o-1", Decimal("10.00"), PRINCIPAL,
                                max_attempts=3, backoff_seconds=0.5, sleep=sleeps.append)

    assert result.outcome == PaymentOutcome.SUCCESS
    assert result.attempts == 3
    assert len(gateway.calls) == 3
    assert sleeps == [0.5, 1.0]


def test_declined_is_not_retried(sleeps):
    gateway = ScriptedGateway(PaymentResult.declined("INSTRUMENT_DECLINED"), PaymentResult.success("x"))

    result = capture_with_retry(gateway, "o-1", Decimal("10.00"), PRINCIPAL, sleep=sleeps.append)

    assert result.outcome == PaymentOutcome.DECLINED
    assert len(gateway.calls) == 1
    assert sleeps == []


def test_retry_is_bounded(sleeps):
    gateway = ScriptedGateway(PaymentResult.errored("down"))

    result = capture_with_retry(gateway, "o-1", Decimal("10.00"), PRINCIPAL,
                                max_attempts=3, sleep=sleeps.append)

    assert result.outcome == PaymentOutcome.ERRORED
    assert result.attempts == 3
    assert len(gateway.calls) == 3


def test_gateway_exception_counts_as_errored(sleeps):
    class Exploding(ScriptedGateway):
        def capture(self, order_id, amount, principal, reference=None):
            super().capture(order_id, amount, principal, reference)
            raise ConnectionError("reset by peer")

    gateway = Exploding()
    result = capture_with_retry(gateway, "o-1", Decimal("1.00"), PRINCIPAL, max_attempts=2, sleep=sleeps.append)

    assert result.outcome == PaymentOutcome.ERRORED
    assert "reset by peer" in result.detail
    assert len(gateway.calls) == 2


def test_reference_is_passed_to_the_gateway(sleeps):
    gateway = ScriptedGateway(PaymentResult.success("PP-1"))

    capture_with_retry(gateway, "o-1", Decimal("1.00"), PRINCIPAL, sleep=sleeps.append, reference="PP-1")

    assert gateway.references == ["PP-1"]


def test_paypal_begin_returns_approval_link(settings):
    created = FakeResponse(201, {
        "id": "PAYPAL-1",
        "status": "CREATED",
        "links": [
            {"rel": "self", "href": "https://api.paypal.test/v2/checkout/orders/PAYPAL-1"},
            {"rel": "approve", "href": "https://www.paypal.test/checkoutnow?token=PAYPAL-1"},
        ],
    })
    session = FakeSession({("POST", "/v2/checkout/orders"): created})
    gateway = PayPalGateway(settings, session=session)

    approval = gateway.begin("order-1", Decimal("12.5"), PRINCIPAL)

    assert approval == PaymentApproval("PAYPAL-1", "https://www.paypal.test/checkoutnow?token=PAYPAL-1")
    method, url, kwargs = session.requests[0]
    assert (method, url.endswith("/v2/checkout/orders")) == ("POST", True)
    unit = kwargs["json"]["purchase_units"][0]
    assert unit["custom_id"] == "order-1"
    assert unit["amount"] == {"currency_code": "USD", "value": "12.50"}
    assert kwargs["json"]["application_context"]["return_url"] == settings.paypal_return_url
    assert kwargs["headers"]["PayPal-Request-Id"] == "create-order-1"
    assert kwargs["timeout"] == settings.request_timeout


def test_paypal_begin_refused(settings):
    body = {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "CURRENCY_NOT_SUPPORTED"}]}
    gateway = PayPalGateway(settings, session=FakeSession({("POST", "/v2/checkout/orders"): FakeResponse(422, body)}))

    with pytest.raises(PaymentDeclined) as exc:
        gateway.begin("order-1", Decimal("5.00"), PRINCIPAL)

    assert exc.value.detail == "CURRENCY_NOT_SUPPORTED"


def test_paypal_begin_transport_failure(settings):
    gateway = PayPalGateway(settings, session=FakeSession(token_error=requests.Timeout("read timed out")))

    with pytest.raises(PaymentErrored):
        gateway.begin("order-1", Decimal("5.00"), PRINCIPAL)


def test_paypal_captures_approved_order(settings):
    session = FakeSession({
        ("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(200, _provider_order("APPROVED")),
        ("POST", "/v2/checkout/orders/PAYPAL-1/capture"): FakeResponse(201, {"id": "PAYPAL-1", "status": "COMPLETED"}),
    })
    gateway = PayPalGateway(settings, session=session)

    result = gateway.capture("order-1", Decimal("12.50"), PRINCIPAL, reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.SUCCESS
    assert result.external_id == "PAYPAL-1"
    method, url, kwargs = session.requests[-1]
    assert url.endswith("/capture")
    assert kwargs["headers"]["PayPal-Request-Id"] == "capture-order-1"


def test_paypal_unapproved_order_is_not_captured(settings):
    session = FakeSession({("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(200, _provider_order("CREATED"))})
    gateway = PayPalGateway(settings, session=session)

    result = gateway.capture("order-1", Decimal("12.50"), PRINCIPAL, reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.DECLINED
    assert not any(url.endswith("/capture") for _, url, _ in session.requests)


@pytest.mark.parametrize("provider_order, reason", [
    (_provider_order("APPROVED", order_id="someone-else"), "ORDER_MISMATCH"),
    (_provider_order("APPROVED", value="1.00"), "AMOUNT_MISMATCH"),
    (_provider_order("APPROVED", currency="EUR"), "AMOUNT_MISMATCH"),
])
def test_paypal_order_must_match_ours(settings, provider_order, reason):
    session = FakeSession({("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(200, provider_order)})
    gateway = PayPalGateway(settings, session=session)

    result = gateway.capture("order-1", Decimal("12.50"), PRINCIPAL, reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.DECLINED
    assert result.detail == reason
    assert not any(url.endswith("/capture") for _, url, _ in session.requests)


def test_paypal_already_captured_counts_as_success(settings):
    session = FakeSession({("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(200, _provider_order("COMPLETED"))})

    result = PayPalGateway(settings, session=session).capture("order-1", Decimal("12.50"), PRINCIPAL,
                                                              reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.SUCCESS


def test_paypal_declined_capture(settings):
    body = {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "INSTRUMENT_DECLINED"}]}
    session = FakeSession({
        ("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(200, _provider_order("APPROVED", value="5.00")),
        ("POST", "/capture"): FakeResponse(422, body),
    })

    result = PayPalGateway(settings, session=session).capture("order-1", Decimal("5.00"), PRINCIPAL,
                                                              reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.DECLINED
    assert result.detail == "INSTRUMENT_DECLINED"


def test_paypal_server_error_is_errored(settings):
    session = FakeSession({("GET", "/v2/checkout/orders/PAYPAL-1"): FakeResponse(503)})

    result = PayPalGateway(settings, session=session).capture("order-1", Decimal("5.00"), PRINCIPAL,
                                                              reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.ERRORED


def test_paypal_transport_failure_is_errored(settings):
    session = FakeSession(token_error=requests.Timeout("read timed out"))

    result = PayPalGateway(settings, session=session).capture("order-1", Decimal("5.00"), PRINCIPAL,
                                                              reference="PAYPAL-1")

    assert result.outcome == PaymentOutcome.ERRORED
    assert "timed out" in result.detail


def test_paypal_capture_without_approval(settings):
    session = FakeSession()

    result = PayPalGateway(settings, session=session).capture("order-1", Decimal("5.00"), PRINCIPAL)

    assert result.outcome == PaymentOutcome.DECLINED
    assert session.requests == []
