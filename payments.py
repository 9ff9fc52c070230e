"""Payment provider boundary.

``PaymentGateway.capture`` is the call the order coordinator makes to move
funds. Any delay, transport failure or provider fault comes back as
``errored`` (retryable); a refusal by the provider comes back as ``declined``
(final). ``capture_with_retry`` applies the bounded retry.

Providers that need the buyer to approve first (PayPal) set
``requires_approval`` and implement ``begin``; ``capture`` is then called
with the provider reference the buyer approved.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional
import requests
from config import Settings
from errors import PaymentDeclined, PaymentErrored
from logging_config import get_logger
from models import Principal

logger = get_logger(__name__)


class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    ERRORED = "errored"


@dataclass(frozen=True)
class PaymentResult:
    outcome: PaymentOutcome
    external_id: Optional[str] = None
    detail: Optional[str] = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.outcome == PaymentOutcome.SUCCESS

    @classmethod
    def success(cls, external_id: str, detail: Optional[str] = None):
        return cls(PaymentOutcome.SUCCESS, external_id=external_id, detail=detail)

    @classmethod
    def declined(cls, detail: str, external_id: Optional[str] = None):
        return cls(PaymentOutcome.DECLINED, external_id=external_id, detail=detail)

    @classmethod
    def errored(cls, detail: str):
        return cls(PaymentOutcome.ERRORED, detail=detail)


@dataclass(frozen=True)
class PaymentApproval:
    """Provider order waiting for the buyer, and where to send them."""
    reference: str
    approve_url: str


class PaymentGateway(ABC):
    """Narrow contract to an external provider that moves funds for one order."""

    requires_approval = False

    def begin(self, order_id: str, amount: Decimal, principal: Principal) -> PaymentApproval:
        raise NotImplementedError(f"{type(self).__name__} captures without buyer approval")

    @abstractmethod
    def capture(self, order_id: str, amount: Decimal, principal: Principal,
                reference: Optional[str] = None) -> PaymentResult: ...


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 adapter.

    ``begin`` creates a provider order referencing our order id and returns
    the link where the buyer approves it. ``capture`` runs once the buyer is
    back: it re-reads the provider order, checks that it belongs to our order
    and carries our amount, and only then captures it. The
    ``PayPal-Request-Id`` header is derived from our order id, so a retried
    call is deduplicated by PayPal instead of charging twice.
    """
    requires_approval = True

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.base_url = settings.paypal_base_url.rstrip('/')
        self.http = session or requests.Session()

    # _access_token: OAuth2 client-credentials token for the REST API.
    def _access_token(self) -> str:
        resp = self.http.post(
            f"{self.base_url}/v1/oauth2/token",
            auth=(self.settings.paypal_client_id, self.settings.paypal_client_secret),
            data={'grant_type': 'client_credentials'},
            timeout=self.settings.request_timeout,
        )
        resp.raise_for_status()
        return resp.json()['access_token']

    def _headers(self, request_id: Optional[str] = None):
        headers = {
            'Authorization': f"Bearer {self._access_token()}",
            'Content-Type': 'application/json',
        }
        if request_id:
            headers['PayPal-Request-Id'] = request_id
        return headers

    def _value(self, amount: Decimal) -> str:
        return f"{Decimal(amount).quantize(self.settings.money_quantum)}"

    # _order_payload: Purchase unit for the whole order amount.
    def _order_payload(self, order_id: str, amount: Decimal):
        return {
            'intent': 'CAPTURE',
            'purchase_units': [{
                'reference_id': order_id,
                'custom_id': order_id,
                'amount': {
                    'currency_code': self.settings.currency,
                    'value': self._value(amount),
                },
            }],
            'application_context': {
                'return_url': self.settings.paypal_return_url,
                'cancel_url': self.settings.paypal_cancel_url,
                'user_action': 'PAY_NOW',
                'shipping_preference': 'NO_SHIPPING',
            },
        }

    def begin(self, order_id: str, amount: Decimal, principal: Principal) -> PaymentApproval:
        try:
            created = self.http.post(
                f"{self.base_url}/v2/checkout/orders",
                json=self._order_payload(order_id, amount),
                headers=self._headers(f"create-{order_id}"),
                timeout=self.settings.request_timeout,
            )
            if created.status_code >= 500:
                raise PaymentErrored(f"create returned {created.status_code}")
            if created.status_code >= 400:
                raise PaymentDeclined(self._reason(created))
            body = created.json()
            reference = body['id']
        except (requests.RequestException, ValueError, KeyError) as e:
            raise PaymentErrored(str(e) or e.__class__.__name__)

        links = {link.get('rel'): link.get('href') for link in body.get('links') or []}
        approve_url = links.get('approve') or links.get('payer-action')
        if not approve_url:
            raise PaymentErrored(f"PayPal order {reference} has no approval link")
        logger.info("PayPal order created", order_id=order_id, reference=reference)
        return PaymentApproval(reference=reference, approve_url=approve_url)

    def capture(self, order_id: str, amount: Decimal, principal: Principal,
                reference: Optional[str] = None) -> PaymentResult:
        if not reference:
            return PaymentResult.declined("PAYER_ACTION_REQUIRED")
        try:
            headers = self._headers()
            fetched = self.http.get(
                f"{self.base_url}/v2/checkout/orders/{reference}",
                headers=headers,
                timeout=self.settings.request_timeout,
            )
            if fetched.status_code >= 500:
                return PaymentResult.errored(f"lookup returned {fetched.status_code}")
            if fetched.status_code >= 400:
                return PaymentResult.declined(self._reason(fetched), external_id=reference)
            provider_order = fetched.json()
            mismatch = self._mismatch(provider_order, order_id, amount)
            if mismatch:
                logger.warning("PayPal order does not match", order_id=order_id, reference=reference,
                               mismatch=mismatch)
                return PaymentResult.declined(mismatch, external_id=reference)
            status = provider_order.get('status')
            if status == 'COMPLETED':
                return PaymentResult.success(reference, detail="already captured")
            if status != 'APPROVED':
                return PaymentResult.declined(f"order status {status}", external_id=reference)

            captured = self.http.post(
                f"{self.base_url}/v2/checkout/orders/{reference}/capture",
                headers={**headers, 'PayPal-Request-Id': f"capture-{order_id}"},
                timeout=self.settings.request_timeout,
            )
            if captured.status_code >= 500:
                return PaymentResult.errored(f"capture returned {captured.status_code}")
            if captured.status_code >= 400:
                return PaymentResult.declined(self._reason(captured), external_id=reference)
            status = captured.json().get('status')
            if status == 'COMPLETED':
                return PaymentResult.success(reference)
            return PaymentResult.declined(f"capture status {status}", external_id=reference)
        except (requests.RequestException, ValueError, KeyError) as e:
            return PaymentResult.errored(str(e) or e.__class__.__name__)

    # _mismatch: Reason the provider order is not the one we asked for, or None.
    def _mismatch(self, provider_order, order_id: str, amount: Decimal) -> Optional[str]:
        units = provider_order.get('purchase_units') or [{}]
        unit = units[0]
        if unit.get('custom_id') != order_id and unit.get('reference_id') != order_id:
            return "ORDER_MISMATCH"
        paid = unit.get('amount') or {}
        if paid.get('currency_code') != self.settings.currency or paid.get('value') != self._value(amount):
            return "AMOUNT_MISMATCH"
        return None

    @staticmethod
    def _reason(resp) -> str:
        try:
            body = resp.json()
        except ValueError:
            return f"HTTP {resp.status_code}"
        details = body.get('details') or []
        if details and isinstance(details, list):
            return details[0].get('issue') or body.get('name') or f"HTTP {resp.status_code}"
        return body.get('name') or f"HTTP {resp.status_code}"


def capture_with_retry(gateway: PaymentGateway, order_id: str, amount: Decimal, principal: Principal,
                       max_attempts: int = 3, backoff_seconds: float = 0.5,
                       sleep: Callable[[float], None] = time.sleep,
                       reference: Optional[str] = None) -> PaymentResult:
    """Call ``capture`` until it stops reporting ``errored`` or attempts run out.

    ``declined`` and ``success`` are returned immediately. An exception raised
    by the gateway counts as ``errored``.
    """
    attempts = max(1, max_attempts)
    result = PaymentResult.errored("not attempted")
    for attempt in range(1, attempts + 1):
        try:
            result = gateway.capture(order_id, amount, principal, reference=reference)
        except Exception as e:
            result = PaymentResult.errored(str(e) or e.__class__.__name__)
        result = replace(result, attempts=attempt)
        if result.outcome != PaymentOutcome.ERRORED:
            break
        logger.warning("Payment capture errored", order_id=order_id, attempt=attempt,
                       max_attempts=attempts, detail=result.detail)
        if attempt < attempts:
            sleep(backoff_seconds * attempt)
    logger.info("Payment capture finished", order_id=order_id, outcome=result.outcome.value,
                attempts=result.attempts)
    return result
