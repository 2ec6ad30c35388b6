# Database modules

from .products import product_db, ProductDatabase
from .coupons import coupon_db, CouponDatabase
from .carts import server_cart_db, ServerCartDatabase

__all__ = [
    "product_db",
    "ProductDatabase",
    "coupon_db",
    "CouponDatabase",
    "server_cart_db",
    "ServerCartDatabase",
]
