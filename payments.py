"""
Payment gateway operations: creating provider-side orders/sessions, refunds,
and checking the result the browser checkout reports back.

Every call builds its client from freshly read settings. The store order id is
always embedded in provider metadata under "order_id" so webhooks can find
the order again.
"""
import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal
from typing import Annotated, Any, Dict, Literal, Optional, Union

import requests
import stripe
import structlog
from pydantic import BaseModel, Field

from config import GATEWAY_TIMEOUT_SECONDS, RAZORPAY_API_URL, ConfigProvider
from errors import FailedPreconditionError, GatewayError, NotConfiguredError, SignatureVerificationError
from orders import OrderService
from schemas import PAID_STATUSES, Order, PaymentGateway, PaymentStatus

log = structlog.get_logger(__name__)

METADATA_ORDER_KEY = "order_id"


def minor_units(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class RazorpayClient:
    """Thin wrapper over the Razorpay REST API."""

    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API_URL, session: Optional[requests.Session] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=GATEWAY_TIMEOUT_SECONDS,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as exc:
            detail = exc.response.text[:200] if exc.response is not None else str(exc)
            raise GatewayError("razorpay", detail)
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise GatewayError("razorpay", str(exc)[:200])

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, str]) -> Dict[str, Any]:
        return self._post("/orders", {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes})

    def refund_payment(self, payment_id: str, speed: str = "normal") -> Dict[str, Any]:
        return self._post(f"/payments/{payment_id}/refund", {"speed": speed})


# --------------------- Checkout outcome ---------------------

class CheckoutSucceeded(BaseModel):
    kind: Literal["succeeded"] = "succeeded"
    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str


class CheckoutFailed(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str = "Payment failed"


class CheckoutDismissed(BaseModel):
    kind: Literal["dismissed"] = "dismissed"


CheckoutOutcome = Annotated[Union[CheckoutSucceeded, CheckoutFailed, CheckoutDismissed], Field(discriminator="kind")]


def razorpay_checkout_signature(razorpay_order_id: str, razorpay_payment_id: str, key_secret: str) -> str:
    message = f"{razorpay_order_id}|{razorpay_payment_id}".encode()
    return hmac.new(key_secret.encode(), message, hashlib.sha256).hexdigest()


# --------------------- Service ---------------------

class PaymentService:
    def __init__(self, orders: OrderService, config: ConfigProvider, razorpay_factory=RazorpayClient):
        self.orders = orders
        self.config = config
        self.razorpay_factory = razorpay_factory

    def razorpay(self) -> RazorpayClient:
        settings = self.config.payment_settings().razorpay
        if not settings.key_id or not settings.key_secret:
            raise NotConfiguredError("Razorpay")
        return self.razorpay_factory(settings.key_id, settings.key_secret)

    def stripe_key(self) -> str:
        secret_key = self.config.payment_settings().stripe.secret_key
        if not secret_key:
            raise NotConfiguredError("Stripe")
        return secret_key

    def _awaiting_payment(self, order_id: str, gateway: PaymentGateway) -> Order:
        order = self.orders.get_order(order_id)
        if order.payment_gateway != gateway:
            raise FailedPreconditionError(f"Order {order.order_id} is not a {gateway.value} order")
        if order.payment_status not in (PaymentStatus.PROCESSING, PaymentStatus.FAILED):
            raise FailedPreconditionError(f"Order {order.order_id} is not awaiting payment")
        return order

    def create_razorpay_order(self, order_id: str) -> Dict[str, Any]:
        order = self._awaiting_payment(order_id, PaymentGateway.RAZORPAY)
        currency = self.config.payment_settings().currency
        client = self.razorpay()
        created = client.create_order(
            amount=minor_units(order.total),
            currency=currency,
            receipt=order.id,
            notes={METADATA_ORDER_KEY: order.id},
        )
        log.info("razorpay_order_created", id=order.id, razorpay_order_id=created.get("id"))
        return {
            "razorpay_order_id": created.get("id"),
            "amount": created.get("amount"),
            "currency": created.get("currency"),
            "key_id": client.key_id,
        }

    def create_stripe_checkout(self, order_id: str, success_url: str, cancel_url: str) -> Dict[str, Any]:
        order = self._awaiting_payment(order_id, PaymentGateway.STRIPE)
        currency = self.config.payment_settings().currency.lower()
        api_key = self.stripe_key()
        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": item.title},
                    "unit_amount": minor_units(item.price),
                },
                "quantity": item.quantity,
            }
            for item in order.items
        ]
        extras = order.tax + order.shipping
        if extras > 0:
            line_items.append({
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": "Tax & shipping"},
                    "unit_amount": minor_units(extras),
                },
                "quantity": 1,
            })
        metadata = {METADATA_ORDER_KEY: order.id}
        try:
            session = stripe.checkout.Session.create(
                api_key=api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=line_items,
                customer_email=order.customer.email,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
            )
        except stripe.StripeError as exc:
            raise GatewayError("stripe", str(exc)[:200])
        log.info("stripe_checkout_created", id=order.id, session_id=session["id"])
        return {"session_id": session["id"], "url": session["url"]}

    def verify_checkout(self, order_id: str, outcome: Union[CheckoutSucceeded, CheckoutFailed, CheckoutDismissed]) -> Dict[str, Any]:
        """Check what the browser checkout reported. Payment state itself only
        changes through the webhook."""
        order = self.orders.get_order(order_id)
        if isinstance(outcome, CheckoutDismissed):
            log.info("checkout_dismissed", id=order.id)
            return {"verified": False, "outcome": outcome.kind, "reason": "Payment cancelled by user"}
        if isinstance(outcome, CheckoutFailed):
            log.info("checkout_failed", id=order.id, reason=outcome.reason)
            return {"verified": False, "outcome": outcome.kind, "reason": outcome.reason}
        settings = self.config.payment_settings().razorpay
        if not settings.key_secret:
            raise NotConfiguredError("Razorpay")
        expected = razorpay_checkout_signature(outcome.razorpay_order_id, outcome.razorpay_payment_id, settings.key_secret)
        if not hmac.compare_digest(expected.encode(), outcome.razorpay_signature.encode("utf-8")):
            log.warning("checkout_signature_invalid", id=order.id)
            raise SignatureVerificationError()
        return {"verified": True, "outcome": outcome.kind, "payment_status": order.payment_status.value}

    def refund(self, order: Order) -> Optional[str]:
        """Issue the provider refund for a captured order. Returns the provider
        refund id, or None when no provider call is needed (cash on delivery)."""
        if order.payment_gateway == PaymentGateway.COD:
            return None
        if order.payment_status.value not in PAID_STATUSES or not order.transaction_id:
            raise FailedPreconditionError(f"Order {order.order_id} has no captured payment to refund")
        if order.payment_gateway == PaymentGateway.RAZORPAY:
            refund = self.razorpay().refund_payment(order.transaction_id)
            return refund.get("id")
        try:
            refund = stripe.Refund.create(api_key=self.stripe_key(), payment_intent=order.transaction_id)
        except stripe.StripeError as exc:
            raise GatewayError("stripe", str(exc)[:200])
        return refund["id"]
