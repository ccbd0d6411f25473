# Database models
from app.models.user import User
from app.models.product import Product
from app.models.address import Address
from app.models.subscription import Subscription
from app.models.order import Order, OrderItem
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "Product",
    "Address",
    "Subscription",
    "Order",
    "OrderItem",
    "AuditLog",
]
