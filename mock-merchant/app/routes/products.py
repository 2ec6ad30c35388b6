"""Product API routes for mock merchant"""

from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from cartengine.models import Product

from ..database.products import product_db
from ..models.product import ProductSearchResponse

router = APIRouter(prefix="/api/products", tags=["Products"])


@router.get("", response_model=ProductSearchResponse)
async def search_products(
    query: Optional[str] = Query(None, description="Search query"),
    min_price: Optional[float] = Query(None, ge=0, description="Minimum price"),
    max_price: Optional[float] = Query(None, ge=0, description="Maximum price"),
    in_stock_only: bool = Query(False, description="Only show in-stock items"),
    limit: int = Query(20, ge=1, le=100, description="Max results"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
):
    """Search published products in the catalog"""
    products, total = product_db.search_products(
        query=query,
        min_price=min_price,
        max_price=max_price,
        in_stock_only=in_stock_only,
        limit=limit,
        offset=offset,
    )

    return ProductSearchResponse(
        products=products,
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{product_id}", response_model=Product)
async def get_product(product_id: str):
    """
    Get a product by ID.

    Unpublished products are returned too, so clients can tell
    "no longer available" apart from "never existed".
    """
    product = product_db.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product
