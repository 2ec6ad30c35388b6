"""Server cart sync routes for mock merchant"""

from fastapi import APIRouter, Depends, HTTPException

from cartengine.models import ServerCartData

from ..database.carts import server_cart_db
from ..models.cart import CartDeletedResponse
from ..security.bearer import TokenClaims, require_user

router = APIRouter(prefix="/api/cart/sync", tags=["Cart Sync"])


@router.get("/{user_id}", response_model=ServerCartData)
async def get_server_cart(
    user_id: str,
    claims: TokenClaims = Depends(require_user),
):
    """Get the last synced cart for a user"""
    data = server_cart_db.get_cart(user_id)
    if not data:
        raise HTTPException(status_code=404, detail="No cart stored for this user")
    return data


@router.put("/{user_id}", response_model=ServerCartData)
async def put_server_cart(
    user_id: str,
    data: ServerCartData,
    claims: TokenClaims = Depends(require_user),
):
    """Store the merged cart for a user"""
    if data.metadata.user_id != user_id:
        raise HTTPException(
            status_code=400,
            detail="Cart metadata user does not match the request path",
        )
    return server_cart_db.save_cart(user_id, data)


@router.delete("/{user_id}", response_model=CartDeletedResponse)
async def delete_server_cart(
    user_id: str,
    claims: TokenClaims = Depends(require_user),
):
    """Remove the stored cart for a user"""
    if not server_cart_db.delete_cart(user_id):
        raise HTTPException(status_code=404, detail="No cart stored for this user")
    return CartDeletedResponse(user_id=user_id, deleted=True, message="Cart removed")
