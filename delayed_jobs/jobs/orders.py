"""
Order notification handlers.

Each handler re-reads the order before sending anything, so a redelivered job
for an order that no longer qualifies fails permanently instead of emailing
the customer twice for the wrong reason. Mail transport errors are transient.
"""

import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Protocol

from opentelemetry import trace

from delayed_jobs.config import Settings, get_settings
from delayed_jobs.exceptions import PermanentFailure, TransientFailure
from delayed_jobs.jobs.email import EmailDeliveryError, EmailSender
from delayed_jobs.types.job import HandlerConfig
from delayed_jobs.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)


class OrderStatus(StrEnum):
    PENDING = "PENDING"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


@dataclass
class Order:
    """The slice of an order the notification handlers read."""

    id: str
    order_number: str
    status: OrderStatus
    customer_email: str | None = None
    tracking_number: str | None = None
    payment_intent_id: str | None = None
    paid_at: datetime | None = None
    item_names: list[str] = field(default_factory=list)


class OrderLookup(Protocol):
    """Reads orders from the owning service."""

    async def get_order(self, order_id: str) -> Order | None: ...


class _OrderNotificationHandler:
    def __init__(
        self,
        orders: OrderLookup,
        mailer: EmailSender,
        settings: Settings | None = None,
    ):
        self._orders = orders
        self._mailer = mailer
        self._settings = settings or get_settings()

    async def _load_order(self, actor_id: str) -> Order:
        order = await self._orders.get_order(actor_id)
        if order is None:
            logger.error("Order not found", extra={"order_id": actor_id})
            raise PermanentFailure(f"Order not found: {actor_id}")

        span = trace.get_current_span()
        span.set_attribute("order.id", order.id)
        span.set_attribute("order.number", order.order_number)
        span.set_attribute("order.status", str(order.status))
        return order

    def _require_email(self, order: Order) -> str:
        if not order.customer_email:
            raise PermanentFailure(f"No customer email found for order: {order.id}")
        return order.customer_email

    async def _send(self, to_addr: str, subject: str, body: str, what: str) -> None:
        try:
            await self._mailer.send_html_email(
                self._settings.email_order_from, to_addr, subject, body
            )
        except EmailDeliveryError as e:
            raise TransientFailure(f"Failed to send {what}", cause=e) from e

    def _order_url(self, order: Order) -> str:
        return html.escape(f"{self._settings.app_base_url}/orders/{order.id}")


class OrderEmailJobHandler(_OrderNotificationHandler):
    """Sends the order confirmation to the customer and a notice to the admin."""

    config = HandlerConfig(
        queue_name="OrderEmailJobHandler",
        priority=10,
        description="Order confirmation email sender",
    )

    async def run(self, actor_id: str) -> None:
        logger.info("Processing order confirmation email", extra={"order_id": actor_id})

        order = await self._load_order(actor_id)
        customer_email = self._require_email(order)

        number = html.escape(order.order_number)
        items = "".join(f"<li>{html.escape(name)}</li>" for name in order.item_names)
        await self._send(
            customer_email,
            f"Order Confirmation - Village Compute Calendar #{order.order_number}",
            f"<p>Thank you for your order #{number}.</p>"
            f"<ul>{items}</ul>"
            f'<p><a href="{self._order_url(order)}">View your order</a></p>',
            "order confirmation email",
        )
        await self._send(
            self._settings.email_admin_to,
            f"New Order Received - #{order.order_number}",
            f"<p>Order #{number} placed by {html.escape(customer_email)}.</p>"
            f"<ul>{items}</ul>",
            "admin order notification email",
        )

        logger.info("Order confirmation emails sent", extra={"order_id": actor_id})


class ShippingNotificationJobHandler(_OrderNotificationHandler):
    """Tells the customer their order shipped, with the tracking number."""

    config = HandlerConfig(
        queue_name="ShippingNotificationJobHandler",
        priority=10,
        description="Shipping notification email sender",
    )

    async def run(self, actor_id: str) -> None:
        logger.info("Processing shipping notification email", extra={"order_id": actor_id})

        order = await self._load_order(actor_id)
        if not order.tracking_number or not order.tracking_number.strip():
            logger.warning("Order has no tracking number", extra={"order_id": actor_id})
            raise PermanentFailure(f"Order has no tracking number: {actor_id}")
        customer_email = self._require_email(order)

        await self._send(
            customer_email,
            "Your Order Has Shipped! - Village Compute Calendar",
            f"<p>Order #{html.escape(order.order_number)} is on its way.</p>"
            f"<p>Tracking number: {html.escape(order.tracking_number)}</p>",
            "shipping notification email",
        )

        logger.info("Shipping notification email sent", extra={"order_id": actor_id})


class OrderCancellationJobHandler(_OrderNotificationHandler):
    """Confirms a cancellation; mentions the refund when the order was paid."""

    config = HandlerConfig(
        queue_name="OrderCancellationJobHandler",
        priority=5,
        description="Order cancellation email sender",
    )

    async def run(self, actor_id: str) -> None:
        logger.info("Processing order cancellation email", extra={"order_id": actor_id})

        order = await self._load_order(actor_id)
        if order.status != OrderStatus.CANCELLED:
            logger.warning(
                "Order is not cancelled",
                extra={"order_id": actor_id, "status": str(order.status)},
            )
            raise PermanentFailure(f"Order is not cancelled: {actor_id}")
        customer_email = self._require_email(order)

        refund_note = ""
        if order.payment_intent_id and order.paid_at:
            refund_note = "<p>Your refund is being processed.</p>"

        await self._send(
            customer_email,
            "Order Cancelled - Village Compute Calendar",
            f"<p>Order #{html.escape(order.order_number)} has been cancelled.</p>{refund_note}",
            "order cancellation email",
        )

        logger.info("Order cancellation email sent", extra={"order_id": actor_id})


def build_order_registry(
    orders: OrderLookup,
    mailer: EmailSender,
    settings: Settings | None = None,
) -> HandlerRegistry:
    """Registry with the three order notification handlers."""
    return HandlerRegistry(
        [
            (OrderEmailJobHandler(orders, mailer, settings), None),
            (ShippingNotificationJobHandler(orders, mailer, settings), None),
            (OrderCancellationJobHandler(orders, mailer, settings), None),
        ]
    )
