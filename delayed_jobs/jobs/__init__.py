"""
Example job handlers for order notifications.
"""

from delayed_jobs.jobs.email import EmailDeliveryError, EmailSender, HttpEmailSender
from delayed_jobs.jobs.orders import (
    Order,
    OrderCancellationJobHandler,
    OrderEmailJobHandler,
    OrderLookup,
    OrderStatus,
    ShippingNotificationJobHandler,
    build_order_registry,
)

__all__ = [
    "EmailDeliveryError",
    "EmailSender",
    "HttpEmailSender",
    "Order",
    "OrderCancellationJobHandler",
    "OrderEmailJobHandler",
    "OrderLookup",
    "OrderStatus",
    "ShippingNotificationJobHandler",
    "build_order_registry",
]
