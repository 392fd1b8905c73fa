from datetime import datetime, timezone
from typing import Any, Callable, Dict

import structlog

import triggers
from errors import FailedPreconditionError
from notifications import NotificationDispatcher
from orders import OrderService
from payments import PaymentService
from schemas import OrderStatus, PaymentGateway, PaymentStatus

log = structlog.get_logger(__name__)

# Any payment status except refunded may be refunded.
REFUNDABLE_PAYMENT_STATUSES = [s.value for s in PaymentStatus if s != PaymentStatus.REFUNDED]
REFUNDABLE_ORDER_STATUSES = [s.value for s in OrderStatus if s != OrderStatus.REFUNDED]


class RefundService:
    def __init__(
        self,
        orders: OrderService,
        payments: PaymentService,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.orders = orders
        self.payments = payments
        self.dispatcher = dispatcher
        self.clock = clock

    def refund_order(self, order_id: str) -> Dict[str, Any]:
        order = self.orders.get_order(order_id)
        if order.status == OrderStatus.REFUNDED or order.payment_status == PaymentStatus.REFUNDED:
            raise FailedPreconditionError("Order already refunded")

        refund_id = self.payments.refund(order)

        fields: Dict[str, Any] = {
            "status": OrderStatus.REFUNDED.value,
            "payment_status": PaymentStatus.REFUNDED.value,
            "updated_at": self.clock(),
        }
        if refund_id:
            fields["refund_id"] = refund_id
        before = self.orders.store.compare_and_set_order(
            order_id,
            {"status": REFUNDABLE_ORDER_STATUSES, "payment_status": REFUNDABLE_PAYMENT_STATUSES},
            fields,
        )
        if before is None:
            # Lost a race with another refund after the provider call went through.
            log.error("refund_state_conflict", id=order_id, refund_id=refund_id)
            raise FailedPreconditionError("Order already refunded")

        log.info("order_refunded", id=order_id, order_id=order.order_id, gateway=order.payment_gateway.value, refund_id=refund_id)
        refunded = order.model_copy(update={
            "status": OrderStatus.REFUNDED,
            "payment_status": PaymentStatus.REFUNDED,
            "refund_id": refund_id,
            "updated_at": fields["updated_at"],
        })
        triggers.on_status_changed(self.dispatcher, refunded, before.get("status"), OrderStatus.REFUNDED.value)
        if order.payment_gateway == PaymentGateway.COD:
            return {"success": True, "refund_id": None, "message": "Marked as refunded (COD)"}
        return {"success": True, "refund_id": refund_id, "message": "Refund initiated"}
