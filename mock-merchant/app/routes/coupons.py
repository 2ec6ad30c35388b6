"""Coupon API routes for mock merchant"""

from fastapi import APIRouter, HTTPException

from cartengine.models import Coupon

from ..database.coupons import coupon_db

router = APIRouter(prefix="/api/coupons", tags=["Coupons"])


@router.get("/{code}", response_model=Coupon)
async def get_coupon(code: str):
    """Get current coupon data by code"""
    coupon = coupon_db.get_coupon(code)
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon
