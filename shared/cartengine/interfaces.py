"""Collaborator contracts consumed by the cart engine"""

from typing import Optional, Protocol

from .models import Coupon, IdentityContext, Product, ServerCartData


class CatalogLookup(Protocol):
    """Current product truth. Returns None when the product does not exist."""

    async def fetch_product(self, product_id: str) -> Optional[Product]:
        ...


class CouponLookup(Protocol):
    """Current coupon truth. Returns None when the code does not exist."""

    async def fetch_coupon(self, code: str) -> Optional[Coupon]:
        ...


class CartTransport(Protocol):
    """Server-held cart endpoint used for synchronization"""

    async def get_server_cart(self, identity: IdentityContext) -> Optional[ServerCartData]:
        ...

    async def put_server_cart(self, identity: IdentityContext, data: ServerCartData) -> None:
        ...
