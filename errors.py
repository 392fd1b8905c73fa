"""Exceptions raised by the storefront services."""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class InvalidRequestError(StorefrontError):
    """Raised when input is missing or malformed."""

    pass


class ProductNotFoundError(StorefrontError):
    """Raised when a cart line references a product that doesn't exist."""

    def __init__(self, product_id: str, title: Optional[str] = None):
        self.product_id = product_id
        self.title = title
        super().__init__(f"Product {title or product_id} not found")


class InsufficientStockError(StorefrontError):
    """Raised when a product has fewer units than requested."""

    def __init__(self, product_id: str, title: str, available: int, requested: int):
        self.product_id = product_id
        self.title = title
        self.available = available
        self.requested = requested
        super().__init__(f"Insufficient stock for {title}. Only {available} available.")


class OrderNotFoundError(StorefrontError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class FailedPreconditionError(StorefrontError):
    """Raised when an order is not in a state that allows the operation."""

    pass


class SignatureVerificationError(StorefrontError):
    """Raised when a webhook signature doesn't match the body."""

    def __init__(self):
        super().__init__("Invalid signature")


class MalformedPayloadError(StorefrontError):
    """Raised when a webhook body can't be decoded into a known event."""

    pass


class NotConfiguredError(StorefrontError):
    """Raised when gateway or SMTP credentials are missing from settings."""

    def __init__(self, what: str):
        self.what = what
        super().__init__(f"{what} not configured")


class GatewayError(StorefrontError):
    """Raised when a payment provider API call fails."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} error: {message}")


class EmailDeliveryError(StorefrontError):
    """Raised when a transactional email can't be rendered or sent."""

    def __init__(self, event: str, reason: str):
        self.event = event
        self.reason = reason
        super().__init__(f"Failed to send {event} email: {reason}")


class UnknownProviderError(StorefrontError):
    """Raised when a webhook arrives for a provider we don't handle."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown payment provider: {provider}")
