"""Product API models for mock merchant"""

from pydantic import BaseModel

from cartengine.models import Product


class ProductSearchResponse(BaseModel):
    """Response from product search"""
    products: list[Product]
    total: int
    limit: int
    offset: int
