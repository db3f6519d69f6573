# Import all models to register them with SQLModel
from freshmart.models.user import User, UserRole
from freshmart.models.product import Product, UNCATEGORIZED
from freshmart.models.order import Order, OrderItem, OrderStatus
from freshmart.models.coupon import Coupon, CouponUsage, CouponType

__all__ = [
    "User",
    "UserRole",
    "Product",
    "UNCATEGORIZED",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Coupon",
    "CouponUsage",
    "CouponType",
]
