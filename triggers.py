"""
State-change triggers.

Each function is called once, after the state change it reacts to has been
persisted, and decides which emails that change produces. None of them raise:
an email problem must never undo or fail the primary operation.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from errors import StorefrontError
from notifications import NotificationDispatcher, NotificationEvent
from schemas import Order, PaymentGateway

log = structlog.get_logger(__name__)

WELCOME_WINDOW = timedelta(minutes=5)


def _notify_store_owner(dispatcher: NotificationDispatcher, order: Order) -> bool:
    try:
        owner = dispatcher.store_owner_address()
    except StorefrontError as exc:
        log.warning("store_owner_lookup_failed", order_id=order.order_id, error=str(exc))
        return False
    return dispatcher.notify(NotificationEvent.NEW_ORDER, owner, {"order": order})


def on_order_created(dispatcher: NotificationDispatcher, order: Order) -> None:
    # Gateway orders are confirmed once the payment webhook lands.
    if order.payment_gateway != PaymentGateway.COD:
        log.info("order_confirmation_deferred", order_id=order.order_id, gateway=order.payment_gateway.value)
        return
    dispatcher.notify(NotificationEvent.ORDER_CREATED, order.customer.email, {"order": order})
    _notify_store_owner(dispatcher, order)


def on_payment_captured(dispatcher: NotificationDispatcher, order: Order, capture: Dict[str, Any]) -> None:
    payload = {"order": order, **capture}
    dispatcher.notify(NotificationEvent.PAYMENT_CONFIRMED, order.customer.email, payload)
    dispatcher.notify(NotificationEvent.ORDER_CREATED, order.customer.email, {"order": order})
    _notify_store_owner(dispatcher, order)


def on_status_changed(dispatcher: NotificationDispatcher, order: Order, previous_status: Optional[str], new_status: str) -> None:
    if not previous_status or previous_status == new_status:
        return
    dispatcher.notify(
        NotificationEvent.STATUS_CHANGED,
        order.customer.email,
        {"order": order, "previous_status": previous_status, "new_status": new_status},
    )


def on_customer_created(dispatcher: NotificationDispatcher, customer: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Send the welcome email only for accounts created in the last few minutes,
    so profile updates that replay the same event don't send it again."""
    email = customer.get("email")
    if not email:
        log.info("welcome_skipped_no_email", customer_id=str(customer.get("_id")))
        return False
    created_at = customer.get("created_at")
    if created_at is None:
        log.info("welcome_skipped_no_timestamp", customer_id=str(customer.get("_id")))
        return False
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    if now - created_at > WELCOME_WINDOW:
        log.info("welcome_skipped_stale", customer_id=str(customer.get("_id")))
        return False
    return dispatcher.notify(NotificationEvent.WELCOME, email, {"name": customer.get("name")})
