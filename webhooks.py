"""
Payment webhook reconciliation.

Providers deliver at least once, so every event is checked against the order's
current state before anything is written, and the write itself is a
compare-and-set on that state. A redelivered event, or one that lost a race
with its own duplicate, is acknowledged without touching the order or sending
email.

Each request passes four gates in order: signature, event classification,
order resolution, idempotency. Only events that clear all four mutate state.
"""
import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Union

import stripe
import structlog
from pydantic import BaseModel, Field, ValidationError

import triggers
from config import ConfigProvider
from database import Store
from errors import (
    MalformedPayloadError,
    NotConfiguredError,
    OrderNotFoundError,
    SignatureVerificationError,
    UnknownProviderError,
)
from notifications import NotificationDispatcher
from payments import METADATA_ORDER_KEY
from schemas import Order, OrderStatus, PaymentSettings, PaymentStatus

log = structlog.get_logger(__name__)

# A capture may land on an order that is still waiting for money, including
# one whose earlier attempt failed and was retried by the customer.
CAPTURE_FROM = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.FAILED.value]
FAIL_FROM = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value]
# Cancelled and refunded orders are never moved by a late webhook.
OPEN_ORDER_STATUSES = [s.value for s in OrderStatus if s not in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)]


# --------------------- Events ---------------------

class PaymentCaptured(BaseModel):
    kind: Literal["captured"] = "captured"
    provider: str
    event_type: str
    order_ref: Optional[str] = None
    transaction_id: str
    amount: float = Field(..., description="Major currency units")
    currency: str
    method: Optional[str] = None
    customer_email: Optional[str] = None
    provider_ids: Dict[str, Any] = Field(default_factory=dict)


class PaymentFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    provider: str
    event_type: str
    order_ref: Optional[str] = None
    reason: str = "Payment failed"
    provider_ids: Dict[str, Any] = Field(default_factory=dict)


class IgnoredEvent(BaseModel):
    kind: Literal["ignored"] = "ignored"
    provider: str
    event_type: Optional[str] = None


WebhookEvent = Union[PaymentCaptured, PaymentFailed, IgnoredEvent]


class WebhookAck(BaseModel):
    outcome: Literal["applied", "duplicate", "ignored"]
    order_id: Optional[str] = None

    def body(self) -> Dict[str, str]:
        return {"status": "ok"}


def _load_json(raw_body: bytes) -> Dict[str, Any]:
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise MalformedPayloadError("Webhook body is not valid JSON")
    if not isinstance(body, dict):
        raise MalformedPayloadError("Webhook body must be a JSON object")
    return body


def _major_units(amount: Any) -> float:
    try:
        return float(Decimal(str(amount)) / 100)
    except ArithmeticError:
        raise MalformedPayloadError(f"Invalid amount: {amount!r}")


def _as_dict(value: Any) -> Dict[str, Any]:
    # Razorpay sends an empty list for notes when none were set.
    return value if isinstance(value, dict) else {}


# --------------------- Providers ---------------------

class RazorpayWebhook:
    name = "razorpay"
    signature_header = "x-razorpay-signature"

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: PaymentSettings) -> None:
        secret = settings.razorpay.webhook_secret
        if not secret:
            raise NotConfiguredError("Razorpay webhook")
        signature = headers.get(self.signature_header)
        if not signature:
            raise SignatureVerificationError()
        expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected.encode(), signature.encode("utf-8")):
            raise SignatureVerificationError()

    def decode(self, raw_body: bytes) -> WebhookEvent:
        body = _load_json(raw_body)
        event_type = body.get("event")
        if event_type not in ("payment.captured", "payment.failed"):
            return IgnoredEvent(provider=self.name, event_type=event_type)
        entity = _as_dict(_as_dict(_as_dict(body.get("payload")).get("payment")).get("entity"))
        if not entity.get("id"):
            raise MalformedPayloadError("Payment entity missing from payload")
        order_ref = _as_dict(entity.get("notes")).get(METADATA_ORDER_KEY)
        provider_ids = {"razorpay_payment_id": entity["id"], "razorpay_order_id": entity.get("order_id")}

        if event_type == "payment.failed":
            return PaymentFailed(
                provider=self.name,
                event_type=event_type,
                order_ref=order_ref,
                reason=entity.get("error_description") or "Payment failed",
                provider_ids=provider_ids,
            )
        status = entity.get("status")
        if status not in ("captured", "authorized"):
            return PaymentFailed(
                provider=self.name,
                event_type=event_type,
                order_ref=order_ref,
                reason=f"Payment status: {status}",
                provider_ids=provider_ids,
            )
        return PaymentCaptured(
            provider=self.name,
            event_type=event_type,
            order_ref=order_ref,
            transaction_id=entity["id"],
            amount=_major_units(entity.get("amount", 0)),
            currency=str(entity.get("currency") or ""),
            method=entity.get("method"),
            customer_email=entity.get("email"),
            provider_ids=provider_ids,
        )


class StripeWebhook:
    name = "stripe"
    signature_header = "stripe-signature"

    def verify(self, raw_body: bytes, headers: Mapping[str, str], settings: PaymentSettings) -> None:
        secret = settings.stripe.webhook_secret
        if not secret:
            raise NotConfiguredError("Stripe webhook")
        signature = headers.get(self.signature_header)
        if not signature:
            raise SignatureVerificationError()
        try:
            stripe.Webhook.construct_event(raw_body, signature, secret)
        except stripe.SignatureVerificationError:
            raise SignatureVerificationError()
        except ValueError:
            raise MalformedPayloadError("Webhook body is not valid JSON")

    def decode(self, raw_body: bytes) -> WebhookEvent:
        body = _load_json(raw_body)
        event_type = body.get("type")
        obj = _as_dict(_as_dict(body.get("data")).get("object"))
        order_ref = _as_dict(obj.get("metadata")).get(METADATA_ORDER_KEY)

        if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
            if obj.get("payment_status") != "paid":
                # Delayed methods settle later through async_payment_succeeded.
                return IgnoredEvent(provider=self.name, event_type=event_type)
            payment_intent = obj.get("payment_intent")
            method_types = obj.get("payment_method_types")
            return PaymentCaptured(
                provider=self.name,
                event_type=event_type,
                order_ref=order_ref,
                transaction_id=payment_intent or obj.get("id") or "",
                amount=_major_units(obj.get("amount_total", 0)),
                currency=str(obj.get("currency") or ""),
                method=method_types[0] if isinstance(method_types, list) and method_types else None,
                customer_email=obj.get("customer_email") or _as_dict(obj.get("customer_details")).get("email"),
                provider_ids={"stripe_session_id": obj.get("id"), "stripe_payment_intent_id": payment_intent},
            )
        if event_type in ("payment_intent.payment_failed", "checkout.session.async_payment_failed"):
            error = _as_dict(obj.get("last_payment_error"))
            return PaymentFailed(
                provider=self.name,
                event_type=event_type,
                order_ref=order_ref,
                reason=error.get("message") or "Payment failed",
                provider_ids={"stripe_object_id": obj.get("id")},
            )
        return IgnoredEvent(provider=self.name, event_type=event_type)


PROVIDERS: Dict[str, Union[RazorpayWebhook, StripeWebhook]] = {
    RazorpayWebhook.name: RazorpayWebhook(),
    StripeWebhook.name: StripeWebhook(),
}


# --------------------- Reconciler ---------------------

class PaymentWebhookReconciler:
    def __init__(
        self,
        store: Store,
        config: ConfigProvider,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.config = config
        self.dispatcher = dispatcher
        self.clock = clock

    def handle(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookAck:
        handler = PROVIDERS.get(provider.lower())
        if handler is None:
            raise UnknownProviderError(provider)
        headers = {k.lower(): v for k, v in headers.items()}

        handler.verify(raw_body, headers, self.config.payment_settings())
        try:
            event = handler.decode(raw_body)
        except ValidationError as exc:
            raise MalformedPayloadError(f"Unexpected {handler.name} payload: {exc.error_count()} invalid field(s)")
        logger = log.bind(provider=handler.name, event_type=event.event_type)

        if isinstance(event, IgnoredEvent):
            logger.info("webhook_ignored")
            return WebhookAck(outcome="ignored")
        if not event.order_ref:
            logger.warning("webhook_missing_order_id")
            raise MalformedPayloadError("Order ID missing from payment metadata")

        doc = self.store.get_order(event.order_ref)
        if doc is None:
            logger.warning("webhook_order_not_found", order_ref=event.order_ref)
            raise OrderNotFoundError(event.order_ref)
        order = Order.from_document(doc)
        logger = logger.bind(id=order.id, order_id=order.order_id)

        if isinstance(event, PaymentCaptured):
            return self._apply_capture(order, event, logger)
        return self._apply_failure(order, event, logger)

    def _apply_capture(self, order: Order, event: PaymentCaptured, logger) -> WebhookAck:
        if order.payment_status.value not in CAPTURE_FROM or order.status.value not in OPEN_ORDER_STATUSES:
            logger.info("webhook_duplicate", payment_status=order.payment_status.value, status=order.status.value)
            return WebhookAck(outcome="duplicate", order_id=order.id)

        now = self.clock()
        fields = {
            "status": OrderStatus.PAID.value,
            "payment_status": PaymentStatus.PAID.value,
            "transaction_id": event.transaction_id,
            "payment_details": {
                **event.provider_ids,
                "amount": event.amount,
                "currency": event.currency,
                "payment_method": event.method,
                "customer_email": event.customer_email,
            },
            "updated_at": now,
        }
        before = self.store.compare_and_set_order(
            order.id, {"payment_status": CAPTURE_FROM, "status": OPEN_ORDER_STATUSES}, fields
        )
        if before is None:
            logger.info("webhook_duplicate_concurrent")
            return WebhookAck(outcome="duplicate", order_id=order.id)

        logger.info("payment_captured", transaction_id=event.transaction_id, amount=event.amount, currency=event.currency)
        paid = Order.from_document({**before, **fields})
        triggers.on_payment_captured(self.dispatcher, paid, {
            "transaction_id": event.transaction_id,
            "amount": event.amount,
            "currency": event.currency,
            "payment_method": f"{event.provider.capitalize()} - {event.method or 'online'}",
            "paid_at": now,
        })
        return WebhookAck(outcome="applied", order_id=order.id)

    def _apply_failure(self, order: Order, event: PaymentFailed, logger) -> WebhookAck:
        if order.payment_status.value not in FAIL_FROM or order.status.value not in OPEN_ORDER_STATUSES:
            logger.info("webhook_duplicate", payment_status=order.payment_status.value, status=order.status.value)
            return WebhookAck(outcome="duplicate", order_id=order.id)
        fields = {
            "payment_status": PaymentStatus.FAILED.value,
            "payment_details": {**event.provider_ids, "error": event.reason},
            "updated_at": self.clock(),
        }
        before = self.store.compare_and_set_order(
            order.id, {"payment_status": FAIL_FROM, "status": OPEN_ORDER_STATUSES}, fields
        )
        if before is None:
            logger.info("webhook_duplicate_concurrent")
            return WebhookAck(outcome="duplicate", order_id=order.id)
        logger.info("payment_failed", reason=event.reason)
        return WebhookAck(outcome="applied", order_id=order.id)
