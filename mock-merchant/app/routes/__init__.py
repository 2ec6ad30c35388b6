# API Routes

from .products import router as products_router
from .coupons import router as coupons_router
from .cart import router as cart_router
from .auth import router as auth_router

__all__ = ["products_router", "coupons_router", "cart_router", "auth_router"]
