"""
Order placement and order lifecycle.

Placement reads every product, validates stock, writes the order and writes the
decremented stock inside one store transaction. Nothing is written until every
line has passed, and a failure anywhere leaves the catalog untouched.
"""
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

import triggers
from config import ConfigProvider
from database import Store, Transaction
from errors import (
    FailedPreconditionError,
    InsufficientStockError,
    InvalidRequestError,
    OrderNotFoundError,
    ProductNotFoundError,
)
from notifications import NotificationDispatcher, NotificationEvent
from order_ids import generate_order_id
from schemas import CartLine, CustomerInfo, Order, OrderStatus, PaymentGateway, PaymentStatus, StoreInfo

log = structlog.get_logger(__name__)

CENTS = Decimal("0.01")

# Statuses an administrator may set by hand. paid and refunded are only
# reached through the payment webhook and the refund operation.
ADMIN_STATUSES = (
    OrderStatus.PENDING.value,
    OrderStatus.PROCESSING.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.COMPLETED.value,
    OrderStatus.CANCELLED.value,
)


def _money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENTS, rounding=ROUND_HALF_UP)


def unit_price_and_image(product: Dict[str, Any], line: CartLine) -> Tuple[Decimal, Optional[str]]:
    """Price and image a cart line is charged at, taken from the stored product."""
    images = product.get("images") or []
    image = images[0] if images else None
    base = product.get("discounted_price") or product.get("price") or 0
    if not line.selected_options:
        return _money(base), image
    for configuration in product.get("configurations") or []:
        if configuration.get("values") == line.selected_options:
            price = configuration.get("price")
            return _money(price if price is not None else base), configuration.get("image") or image
    raise InvalidRequestError(
        f"Selected options are not available for {product.get('title', line.product_id)}"
    )


def compute_totals(subtotal: Decimal, store: StoreInfo) -> Dict[str, Decimal]:
    tax = (subtotal * Decimal(str(store.tax_percentage)) / 100).quantize(CENTS, rounding=ROUND_HALF_UP)
    shipping = _money(store.shipping_cost)
    return {"subtotal": subtotal, "tax": tax, "shipping": shipping, "total": subtotal + tax + shipping}


class OrderService:
    def __init__(
        self,
        store: Store,
        config: ConfigProvider,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        id_generator: Callable[[datetime], str] = generate_order_id,
    ):
        self.store = store
        self.config = config
        self.dispatcher = dispatcher
        self.clock = clock
        self.id_generator = id_generator

    # --------------------- Placement ---------------------

    def place_order(
        self,
        items: List[CartLine],
        customer: CustomerInfo,
        payment_method: str,
        customer_id: Optional[str] = None,
    ) -> Order:
        if not items:
            raise InvalidRequestError("Cart is empty")
        try:
            gateway = PaymentGateway(payment_method)
        except ValueError:
            raise InvalidRequestError(f"Unsupported payment method: {payment_method}")

        # Repeated lines for one product are checked and decremented as one.
        requested: "OrderedDict[str, int]" = OrderedDict()
        for line in items:
            if line.quantity < 1:
                raise InvalidRequestError("Quantity must be at least 1")
            requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity

        store_info = self.config.store_info()

        def place(txn: Transaction) -> Dict[str, Any]:
            products: Dict[str, Dict[str, Any]] = {}
            for product_id, quantity in requested.items():
                product = txn.get_product(product_id)
                if product is None:
                    raise ProductNotFoundError(product_id)
                available = int(product.get("stock") or 0)
                if available < quantity:
                    raise InsufficientStockError(product_id, product.get("title", product_id), available, quantity)
                products[product_id] = product

            # All reads done and validated; writes start here.
            order_items = []
            subtotal = Decimal("0")
            for line in items:
                product = products[line.product_id]
                price, image = unit_price_and_image(product, line)
                line_total = price * line.quantity
                subtotal += line_total
                order_items.append({
                    "product_id": line.product_id,
                    "title": product.get("title", ""),
                    "price": float(price),
                    "quantity": line.quantity,
                    "subtotal": float(line_total),
                    "image": image,
                    "selected_options": dict(line.selected_options),
                })
            totals = compute_totals(subtotal, store_info)

            linked_customer_id = customer_id
            if not linked_customer_id:
                match = txn.find_customer_by_email(str(customer.email).lower())
                if match:
                    linked_customer_id = str(match["_id"])

            now = self.clock()
            doc: Dict[str, Any] = {
                "order_id": self.id_generator(now),
                "items": order_items,
                "customer": customer.model_dump(mode="json"),
                "customer_id": linked_customer_id,
                "status": OrderStatus.PENDING.value,
                "payment_status": (
                    PaymentStatus.PENDING.value if gateway == PaymentGateway.COD else PaymentStatus.PROCESSING.value
                ),
                "payment_gateway": gateway.value,
                "payment_details": {},
                "transaction_id": None,
                "refund_id": None,
                "subtotal": float(totals["subtotal"]),
                "tax": float(totals["tax"]),
                "shipping": float(totals["shipping"]),
                "total": float(totals["total"]),
                "created_at": now,
                "updated_at": now,
            }
            new_id = txn.insert_order(doc)
            for product_id, quantity in requested.items():
                current = int(products[product_id].get("stock") or 0)
                txn.set_product_stock(product_id, max(0, current - quantity))
            doc["_id"] = new_id
            return doc

        doc = self.store.run_transaction(place)
        order = Order.from_document(doc)
        log.info(
            "order_placed",
            id=order.id,
            order_id=order.order_id,
            gateway=order.payment_gateway.value,
            total=order.total,
            lines=len(order.items),
        )
        triggers.on_order_created(self.dispatcher, order)
        return order

    # --------------------- Queries ---------------------

    def get_order(self, order_id: str) -> Order:
        doc = self.store.get_order(order_id)
        if doc is None:
            raise OrderNotFoundError(order_id)
        return Order.from_document(doc)

    def list_orders(self, status: Optional[str] = None, customer_id: Optional[str] = None, limit: int = 100) -> List[Order]:
        return [Order.from_document(d) for d in self.store.list_orders(status=status, customer_id=customer_id, limit=limit)]

    def order_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"total_orders": 0, "total_revenue": 0.0}
        for status in OrderStatus:
            stats[f"{status.value}_orders"] = 0
        revenue = Decimal("0")
        for doc in self.store.list_orders(limit=0):
            stats["total_orders"] += 1
            key = f"{doc.get('status')}_orders"
            if key in stats:
                stats[key] += 1
            if doc.get("status") != OrderStatus.CANCELLED.value:
                revenue += _money(doc.get("total"))
        stats["total_revenue"] = float(revenue)
        return stats

    # --------------------- Transitions ---------------------

    def cancel_order(self, order_id: str, customer_id: str) -> Order:
        """Customer cancellation, allowed only while the order is still pending."""
        order = self.get_order(order_id)
        if order.customer_id != customer_id:
            raise OrderNotFoundError(order_id)
        if order.status != OrderStatus.PENDING:
            raise FailedPreconditionError(f"Order {order.order_id} can no longer be cancelled")
        now = self.clock()
        before = self.store.compare_and_set_order(
            order_id,
            {"status": [OrderStatus.PENDING.value]},
            {"status": OrderStatus.CANCELLED.value, "updated_at": now},
        )
        if before is None:
            raise FailedPreconditionError(f"Order {order.order_id} can no longer be cancelled")
        cancelled = order.model_copy(update={"status": OrderStatus.CANCELLED, "updated_at": now})
        log.info("order_cancelled", id=order_id, order_id=order.order_id)
        triggers.on_status_changed(self.dispatcher, cancelled, before.get("status"), OrderStatus.CANCELLED.value)
        return cancelled

    def update_status(self, order_id: str, new_status: str) -> Order:
        if new_status not in ADMIN_STATUSES:
            raise InvalidRequestError(f"Invalid order status: {new_status}")
        order = self.get_order(order_id)
        if order.status == OrderStatus.REFUNDED:
            raise FailedPreconditionError(f"Order {order.order_id} has been refunded")
        if order.status.value == new_status:
            return order
        now = self.clock()
        before = self.store.compare_and_set_order(
            order_id,
            {"status": [order.status.value]},
            {"status": new_status, "updated_at": now},
        )
        if before is None:
            raise FailedPreconditionError(f"Order {order.order_id} was modified concurrently")
        updated = order.model_copy(update={"status": OrderStatus(new_status), "updated_at": now})
        log.info("order_status_changed", id=order_id, previous=order.status.value, status=new_status)
        triggers.on_status_changed(self.dispatcher, updated, order.status.value, new_status)
        return updated

    def resend_confirmation(self, order_id: str) -> str:
        """Email is the operation here, so delivery failures propagate."""
        order = self.get_order(order_id)
        return self.dispatcher.send(NotificationEvent.ORDER_CREATED, order.customer.email, {"order": order})
