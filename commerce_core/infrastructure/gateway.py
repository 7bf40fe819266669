"""
Payment gateway boundary.

Services depend on the `PaymentGateway` protocol only. `MockPaymentGateway`
is the in-process implementation used in development and tests; it keeps
its objects in memory and signs webhooks the same way a hosted provider
would. Amounts cross this boundary in minor units (cents).
"""

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Optional, Protocol
import hashlib
import hmac
import json
import secrets
import threading
import time

from commerce_core.core import get_logger
from commerce_core.core_settings import get_settings
from commerce_core.domain.errors import PaymentGatewayError, WebhookSignatureError

logger = get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300
DECLINE_SUFFIX = "0002"
AUTHENTICATION_SUFFIX = "3155"


@dataclass(frozen=True)
class GatewayCustomer:
    id: str
    email: str
    name: Optional[str] = None


@dataclass(frozen=True)
class GatewayPaymentMethod:
    id: str
    type: str
    brand: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None
    customer: Optional[str] = None


@dataclass(frozen=True)
class GatewayPaymentIntent:
    id: str
    amount: int
    currency: str
    status: str
    client_secret: Optional[str] = None
    customer: Optional[str] = None
    payment_method: Optional[str] = None
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


@dataclass(frozen=True)
class GatewayRefund:
    id: str
    payment_intent_id: str
    amount: int
    status: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class GatewayEvent:
    id: str
    type: str
    data: dict = field(default_factory=dict)
    created: Optional[int] = None

    @property
    def object(self) -> dict:
        return self.data.get("object") or {}


class PaymentGateway(Protocol):
    name: str

    def create_customer(self, email: str, name: Optional[str] = None,
                        metadata: Optional[dict] = None) -> GatewayCustomer: ...

    def create_payment_method(self, type: str, card: Optional[dict] = None,
                              billing_details: Optional[dict] = None) -> GatewayPaymentMethod: ...

    def attach_payment_method(self, payment_method_id: str, customer_id: str) -> GatewayPaymentMethod: ...

    def detach_payment_method(self, payment_method_id: str) -> None: ...

    def create_payment_intent(self, amount_minor: int, currency: str, customer: Optional[str] = None,
                              payment_method: Optional[str] = None, description: Optional[str] = None,
                              metadata: Optional[dict] = None) -> GatewayPaymentIntent: ...

    def confirm_payment_intent(self, payment_intent_id: str,
                               payment_method: Optional[str] = None) -> GatewayPaymentIntent: ...

    def create_refund(self, payment_intent_id: str, amount_minor: int, reason: Optional[str] = None,
                      metadata: Optional[dict] = None) -> GatewayRefund: ...

    def verify_webhook(self, payload: bytes, signature: str) -> GatewayEvent: ...


def _token(prefix: str) -> str:
    return f"{prefix}_{secrets.token_hex(12)}"


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a `t=...,v1=...` signature header for `payload`."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    return f"t={timestamp},v1={compute_signature(payload, secret, timestamp)}"


def _parse_signature(signature: str) -> tuple[int, list[str]]:
    timestamp = None
    candidates = []
    for part in signature.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise WebhookSignatureError("Malformed signature timestamp")
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        raise WebhookSignatureError("Malformed signature header")
    return timestamp, candidates


class MockPaymentGateway:
    """In-memory gateway with card-number driven outcomes.

    Cards ending in 0002 are declined, cards ending in 3155 need customer
    authentication; everything else succeeds on confirmation.
    """

    name = "mock"

    def __init__(self, webhook_secret: str, tolerance: int = SIGNATURE_TOLERANCE_SECONDS):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self._lock = threading.Lock()
        self._customers: dict[str, GatewayCustomer] = {}
        self._methods: dict[str, GatewayPaymentMethod] = {}
        self._card_numbers: dict[str, str] = {}
        self._intents: dict[str, GatewayPaymentIntent] = {}
        self._refunded: dict[str, int] = {}

    def create_customer(self, email, name=None, metadata=None):
        customer = GatewayCustomer(id=_token("cus"), email=email, name=name)
        with self._lock:
            self._customers[customer.id] = customer
        return customer

    def create_payment_method(self, type, card=None, billing_details=None):
        card = card or {}
        number = str(card.get("number") or "")
        method = GatewayPaymentMethod(
            id=_token("pm"),
            type=type,
            brand=card.get("brand") or ("visa" if number else None),
            last4=number[-4:] or None,
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
        )
        with self._lock:
            self._methods[method.id] = method
            self._card_numbers[method.id] = number
        return method

    def attach_payment_method(self, payment_method_id, customer_id):
        with self._lock:
            method = self._methods.get(payment_method_id)
            if method is None:
                raise PaymentGatewayError(f"No such payment method: {payment_method_id}", code="resource_missing")
            if customer_id not in self._customers:
                raise PaymentGatewayError(f"No such customer: {customer_id}", code="resource_missing")
            attached = GatewayPaymentMethod(**{**method.__dict__, "customer": customer_id})
            self._methods[payment_method_id] = attached
        return attached

    def detach_payment_method(self, payment_method_id):
        with self._lock:
            method = self._methods.get(payment_method_id)
            if method is not None:
                self._methods[payment_method_id] = GatewayPaymentMethod(**{**method.__dict__, "customer": None})

    def create_payment_intent(self, amount_minor, currency, customer=None, payment_method=None,
                              description=None, metadata=None):
        if amount_minor <= 0:
            raise PaymentGatewayError("Amount must be positive", code="amount_too_small")
        intent_id = _token("pi")
        intent = GatewayPaymentIntent(
            id=intent_id,
            amount=amount_minor,
            currency=currency.lower(),
            status="requires_confirmation" if payment_method else "requires_payment_method",
            client_secret=f"{intent_id}_secret_{secrets.token_hex(8)}",
            customer=customer,
            payment_method=payment_method,
        )
        with self._lock:
            self._intents[intent_id] = intent
        return intent

    def confirm_payment_intent(self, payment_intent_id, payment_method=None):
        with self._lock:
            intent = self._intents.get(payment_intent_id)
            if intent is None:
                raise PaymentGatewayError(f"No such payment intent: {payment_intent_id}", code="resource_missing")
            if intent.status == "succeeded":
                return intent
            method_id = payment_method or intent.payment_method
            if method_id is None:
                return intent
            number = self._card_numbers.get(method_id, "")
            changes: dict[str, Any] = {"payment_method": method_id}
            if number.endswith(DECLINE_SUFFIX):
                changes.update(status="failed", failure_code="card_declined",
                               failure_message="Your card was declined.")
            elif number.endswith(AUTHENTICATION_SUFFIX):
                changes.update(status="requires_action")
            else:
                changes.update(status="succeeded", failure_code=None, failure_message=None)
            intent = GatewayPaymentIntent(**{**intent.__dict__, **changes})
            self._intents[payment_intent_id] = intent
        return intent

    def create_refund(self, payment_intent_id, amount_minor, reason=None, metadata=None):
        with self._lock:
            intent = self._intents.get(payment_intent_id)
            if intent is None:
                raise PaymentGatewayError(f"No such payment intent: {payment_intent_id}", code="resource_missing")
            if intent.status != "succeeded":
                raise PaymentGatewayError("Payment intent has not been captured", code="charge_not_captured")
            already = self._refunded.get(payment_intent_id, 0)
            if amount_minor <= 0 or already + amount_minor > intent.amount:
                raise PaymentGatewayError("Refund amount exceeds captured amount", code="amount_too_large")
            self._refunded[payment_intent_id] = already + amount_minor
        return GatewayRefund(
            id=_token("re"),
            payment_intent_id=payment_intent_id,
            amount=amount_minor,
            status="succeeded",
            reason=reason,
        )

    def verify_webhook(self, payload, signature):
        if not signature:
            raise WebhookSignatureError("Missing webhook signature")
        timestamp, candidates = _parse_signature(signature)
        if abs(time.time() - timestamp) > self.tolerance:
            raise WebhookSignatureError("Webhook timestamp outside tolerance")
        expected = compute_signature(payload, self.webhook_secret, timestamp)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates):
            raise WebhookSignatureError("Webhook signature mismatch")
        try:
            body = json.loads(payload)
        except (ValueError, UnicodeDecodeError):
            raise WebhookSignatureError("Webhook payload is not valid JSON")
        if not isinstance(body, dict) or not body.get("id") or not body.get("type"):
            raise WebhookSignatureError("Webhook payload is missing id or type")
        return GatewayEvent(
            id=str(body["id"]),
            type=str(body["type"]),
            data=body.get("data") or {},
            created=body.get("created"),
        )


class GatewayCaller:
    """Runs gateway calls with a bounded wait.

    Timeouts and provider failures surface as PaymentGatewayError; the
    caller decides what local state to keep. Nothing is retried here.
    """

    def __init__(self, timeout: float, max_workers: int = 8):
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="gateway")

    def __call__(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        future = self._executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.timeout)
        except FuturesTimeout:
            future.cancel()
            logger.error(
                f"Gateway call timed out: {operation}",
                extra={'extra_fields': {'operation': operation, 'timeout_s': self.timeout}},
            )
            raise PaymentGatewayError(
                f"Payment gateway timed out during {operation}", code="GATEWAY_TIMEOUT", ambiguous=True
            )
        except PaymentGatewayError as exc:
            logger.warning(
                f"Gateway rejected {operation}: {exc.message}",
                extra={'extra_fields': {'operation': operation, 'gateway_code': exc.code}},
            )
            raise
        except Exception as exc:
            logger.error(f"Gateway call failed: {operation}", exc_info=True)
            raise PaymentGatewayError(f"Payment gateway call failed during {operation}", ambiguous=True) from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


@lru_cache
def get_gateway() -> PaymentGateway:
    settings = get_settings()
    if settings.PAYMENT_PROVIDER == MockPaymentGateway.name:
        return MockPaymentGateway(settings.PAYMENT_WEBHOOK_SECRET)
    raise RuntimeError(f"Unsupported payment provider: {settings.PAYMENT_PROVIDER}")


@lru_cache
def get_gateway_caller() -> GatewayCaller:
    return GatewayCaller(get_settings().GATEWAY_TIMEOUT_SECONDS)
