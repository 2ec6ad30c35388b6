# Mock Merchant Models

from .auth import TokenRequest, TokenResponse
from .cart import CartDeletedResponse
from .product import ProductSearchResponse

__all__ = [
    "TokenRequest",
    "TokenResponse",
    "CartDeletedResponse",
    "ProductSearchResponse",
]
