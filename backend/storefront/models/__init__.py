from storefront.db.base import Base  # noqa: F401
from storefront.models.user import User  # noqa: F401
from storefront.models.catalog import Category, Product, product_categories  # noqa: F401
from storefront.models.cart import Cart, CartItem, CartStatus  # noqa: F401
from storefront.models.order import Order, OrderItem, OrderStatus  # noqa: F401
from storefront.models.coupons import Coupon, CouponType, OrderCoupon, UserCoupon, UserCouponSource  # noqa: F401

__all__ = [
    "Base",
    "User",
    "Category",
    "Product",
    "product_categories",
    "Cart",
    "CartItem",
    "CartStatus",
    "Order",
    "OrderItem",
    "OrderStatus",
    "Coupon",
    "CouponType",
    "OrderCoupon",
    "UserCoupon",
    "UserCouponSource",
]
