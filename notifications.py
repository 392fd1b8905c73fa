"""
Transactional email.

`NotificationDispatcher.send` renders and delivers one email and raises
`EmailDeliveryError` on any failure; use it when the email is the operation
(an admin resending a confirmation). `notify` is the side-effect form used by
triggers: it logs the failure and returns False instead of raising.

The dispatcher never deduplicates. Callers decide whether an event should
produce an email at all.
"""
import smtplib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import structlog

import email_templates
from config import ConfigProvider
from errors import EmailDeliveryError, NotConfiguredError, StorefrontError
from schemas import PAID_STATUSES, Order, StoreInfo

log = structlog.get_logger(__name__)

SMTP_TIMEOUT_SECONDS = 20


class NotificationEvent(str, Enum):
    ORDER_CREATED = "order_created"
    PAYMENT_CONFIRMED = "payment_confirmed"
    STATUS_CHANGED = "status_changed"
    WELCOME = "welcome"
    NEW_ORDER = "new_order"


PAYMENT_METHOD_LABELS = {
    "cod": "Cash on Delivery",
    "stripe": "Credit/Debit Card (Stripe)",
    "razorpay": "Online Payment (Razorpay)",
}

STATUS_BADGES = {
    "pending": ("#F59E0B", "Pending"),
    "processing": ("#3B82F6", "Processing"),
    "shipped": ("#6366F1", "Shipped"),
    "completed": ("#10B981", "Completed"),
    "cancelled": ("#EF4444", "Cancelled"),
    "paid": ("#10B981", "Paid"),
    "refunded": ("#6B7280", "Refunded"),
}

STATUS_MESSAGES = {
    "pending": "Your order is pending and will be processed soon.",
    "processing": "Great news! Your order is now being processed and prepared for shipment.",
    "shipped": "Your order is on its way.",
    "completed": "Your order has been completed and delivered. Thank you for your purchase!",
    "cancelled": "Your order has been cancelled. If you have any questions, please contact us.",
    "paid": "Your payment has been confirmed. Your order is now being processed.",
    "refunded": "Your order has been refunded. The refund will be processed according to your payment method.",
}


class Mailer(ABC):
    @abstractmethod
    def send(self, sender_name: str, to: str, subject: str, html: str) -> str:
        """Deliver one message and return its Message-ID."""


class SmtpMailer(Mailer):
    """SMTP over SSL. Credentials are read from settings on every send."""

    def __init__(self, config: ConfigProvider):
        self.config = config

    def send(self, sender_name: str, to: str, subject: str, html: str) -> str:
        smtp = self.config.email_settings().smtp
        if not smtp.user or not smtp.password:
            raise NotConfiguredError("SMTP credentials")
        msg = EmailMessage()
        msg["From"] = formataddr((sender_name, smtp.user))
        msg["To"] = to
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid()
        msg.set_content("This email requires an HTML capable client.")
        msg.add_alternative(html, subtype="html")
        with smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=SMTP_TIMEOUT_SECONDS) as server:
            server.login(smtp.user, smtp.password)
            server.send_message(msg)
        return msg["Message-ID"]


# --------------------- Formatting ---------------------

def money(symbol: str, amount: float) -> str:
    return f"{symbol}{float(amount or 0):.2f}"


def format_date(value: Optional[datetime], with_time: bool = False) -> str:
    value = value or datetime.now(timezone.utc)
    return value.strftime("%d %B %Y, %H:%M" if with_time else "%d %B %Y")


def items_html(order: Order, symbol: str) -> str:
    rows = []
    for item in order.items:
        options = ", ".join(f"{k}: {v}" for k, v in item.selected_options.items())
        rows.append(
            '<tr><td style="padding: 10px; border-bottom: 1px solid #eee;">'
            f"<strong>{email_templates.escape(item.title)}</strong><br>"
            + (f'<small style="color: #6b7280;">{email_templates.escape(options)}</small><br>' if options else "")
            + f'<small style="color: #6b7280;">Quantity: {item.quantity}</small></td>'
            f'<td style="padding: 10px; border-bottom: 1px solid #eee; text-align: right;">'
            f"{email_templates.escape(money(symbol, item.subtotal))}</td></tr>"
        )
    return "".join(rows)


def payment_status_html(status: str) -> str:
    if status in PAID_STATUSES:
        return '<span style="color: #10B981;">Paid</span>'
    return '<span style="color: #F59E0B;">Pending</span>'


def store_logo_html(store: StoreInfo) -> str:
    if not store.logo_url:
        return ""
    return (
        f'<div style="margin-bottom: 14px;"><img src="{email_templates.escape(store.logo_url)}" '
        f'alt="{email_templates.escape(store.store_name)}" style="max-height: 46px; max-width: 170px;" /></div>'
    )


# --------------------- Dispatcher ---------------------

class NotificationDispatcher:
    def __init__(self, config: ConfigProvider, mailer: Mailer):
        self.config = config
        self.mailer = mailer
        self._composers: Dict[NotificationEvent, Callable[[Dict[str, Any], StoreInfo], Tuple[str, Dict[str, Any]]]] = {
            NotificationEvent.ORDER_CREATED: self._order_created,
            NotificationEvent.PAYMENT_CONFIRMED: self._payment_confirmed,
            NotificationEvent.STATUS_CHANGED: self._status_changed,
            NotificationEvent.WELCOME: self._welcome,
            NotificationEvent.NEW_ORDER: self._new_order,
        }

    def send(self, event: NotificationEvent, to: str, payload: Dict[str, Any]) -> str:
        try:
            store = self.config.store_info()
            subject, data = self._composers[event](payload, store)
            data.setdefault("store_name", store.store_name)
            html = email_templates.render(event.value, data)
            message_id = self.mailer.send(store.store_name, to, subject, html)
        except (StorefrontError, smtplib.SMTPException, OSError, KeyError, ValueError) as exc:
            raise EmailDeliveryError(event.value, str(exc)) from exc
        log.info("email_sent", email_event=event.value, to=to, message_id=message_id)
        return message_id

    def notify(self, event: NotificationEvent, to: Optional[str], payload: Dict[str, Any]) -> bool:
        if not to:
            log.info("email_skipped_no_recipient", email_event=event.value)
            return False
        try:
            self.send(event, to, payload)
        except EmailDeliveryError as exc:
            log.warning("email_failed", email_event=event.value, to=to, error=exc.reason)
            return False
        return True

    def store_owner_address(self) -> Optional[str]:
        settings = self.config.email_settings()
        return settings.store_owner_email or settings.smtp.user

    # Composers return (subject, template data)

    def _order_created(self, payload: Dict[str, Any], store: StoreInfo) -> Tuple[str, Dict[str, Any]]:
        order: Order = payload["order"]
        symbol = store.currency_symbol
        subject = f"Order Confirmation - {order.order_id} - {store.store_name}"
        return subject, {
            "email_title": f"Order Confirmation - {order.order_id}",
            "header_title": "Order Confirmed!",
            "header_subtitle": "Thank you for your order",
            "store_logo_html": store_logo_html(store),
            "footer_message": "If you have any questions about your order, please don't hesitate to contact us.",
            "customer_name": order.customer.name,
            "order_id": order.order_id,
            "order_date": format_date(order.created_at),
            "items_html": items_html(order, symbol),
            "subtotal": money(symbol, order.subtotal),
            "tax": money(symbol, order.tax),
            "shipping": money(symbol, order.shipping),
            "total": money(symbol, order.total),
            "payment_method": PAYMENT_METHOD_LABELS.get(order.payment_gateway.value, order.payment_gateway.value),
            "payment_status": payment_status_html(order.payment_status.value),
            "shipping_address": f"{order.customer.address}, {order.customer.postal_code}",
        }

    def _payment_confirmed(self, payload: Dict[str, Any], store: StoreInfo) -> Tuple[str, Dict[str, Any]]:
        order: Order = payload["order"]
        currency = str(payload.get("currency") or "").upper()
        subject = f"Payment Received - {order.order_id} - {store.store_name}"
        return subject, {
            "email_title": f"Payment Received - {order.order_id}",
            "header_title": "Payment Received!",
            "header_subtitle": "Your payment has been successfully processed",
            "header_gradient_start": "#10B981",
            "header_gradient_end": "#059669",
            "footer_message": "Thank you for your purchase! If you have any questions, please contact our support team.",
            "order_id": order.order_id,
            "transaction_id": payload.get("transaction_id"),
            "amount": f"{currency} {float(payload.get('amount') or 0):.2f}",
            "payment_method": payload.get("payment_method"),
            "payment_date": format_date(payload.get("paid_at"), with_time=True),
        }

    def _status_changed(self, payload: Dict[str, Any], store: StoreInfo) -> Tuple[str, Dict[str, Any]]:
        order: Order = payload["order"]
        new_status = payload["new_status"]
        color, label = STATUS_BADGES.get(new_status, ("#6B7280", new_status))
        subject = f"Order Status Update - {order.order_id} - {store.store_name}"
        return subject, {
            "email_title": f"Order Status Update - {order.order_id}",
            "header_title": "Order Status Update",
            "header_subtitle": "Your order status has been updated",
            "customer_name": order.customer.name,
            "order_id": order.order_id,
            "previous_status": payload.get("previous_status") or "N/A",
            "new_status_badge": f'<span style="color: {color}; font-weight: 600;">{email_templates.escape(label)}</span>',
            "status_message": email_templates.escape(
                STATUS_MESSAGES.get(new_status, "Your order status has been updated.")
            ),
        }

    def _welcome(self, payload: Dict[str, Any], store: StoreInfo) -> Tuple[str, Dict[str, Any]]:
        subject = f"Welcome to {store.store_name}!"
        return subject, {
            "email_title": subject,
            "header_title": subject,
            "header_subtitle": "We're excited to have you",
            "footer_message": "If you have any questions, feel free to reach out to us. We're here to help!",
            "customer_name": payload.get("name") or "Customer",
            "store_url": store.website,
        }

    def _new_order(self, payload: Dict[str, Any], store: StoreInfo) -> Tuple[str, Dict[str, Any]]:
        order: Order = payload["order"]
        symbol = store.currency_symbol
        return f"New Order Received - {order.order_id}", {
            "email_title": f"New Order Received - {order.order_id}",
            "header_title": "New Order Received!",
            "header_subtitle": "You have a new order to process",
            "header_gradient_start": "#F59E0B",
            "header_gradient_end": "#D97706",
            "store_logo_html": store_logo_html(store),
            "footer_message": "Please log in to your admin panel to process this order.",
            "order_id": order.order_id,
            "order_date": format_date(order.created_at, with_time=True),
            "customer_name": order.customer.name,
            "customer_email": order.customer.email,
            "customer_phone": order.customer.phone,
            "items_html": items_html(order, symbol),
            "total": money(symbol, order.total),
            "payment_method": PAYMENT_METHOD_LABELS.get(order.payment_gateway.value, order.payment_gateway.value),
            "payment_status": payment_status_html(order.payment_status.value),
            "shipping_address": f"{order.customer.address}, {order.customer.postal_code}",
        }
