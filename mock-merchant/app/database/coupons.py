"""Mock coupon database"""

from datetime import datetime, timezone
from typing import Optional

from cartengine.models import Coupon, DiscountType, normalize_coupon_code

# Mock coupons
COUPONS: dict[str, Coupon] = {
    "SAVE10": Coupon(
        code="SAVE10",
        discount_type=DiscountType.PERCENT,
        amount=10,
        description="10% off your order",
    ),
    "FLAT20": Coupon(
        code="FLAT20",
        discount_type=DiscountType.FIXED_CART,
        amount=20,
        description="$20 off orders over $50",
        minimum_amount=50,
    ),
    "HALFCAP": Coupon(
        code="HALFCAP",
        discount_type=DiscountType.PERCENT,
        amount=50,
        description="50% off, up to $10",
        maximum_amount=10,
    ),
    "BOOK5": Coupon(
        code="BOOK5",
        discount_type=DiscountType.FIXED_PRODUCT,
        amount=5,
        description="$5 off each book",
        product_ids=["prod-010"],
    ),
    "SOLO": Coupon(
        code="SOLO",
        discount_type=DiscountType.PERCENT,
        amount=15,
        description="15% off, cannot be combined",
        individual_use=True,
    ),
    "EXPIRED": Coupon(
        code="EXPIRED",
        discount_type=DiscountType.PERCENT,
        amount=25,
        expiry_date=datetime(2020, 1, 1, tzinfo=timezone.utc),
    ),
    "USEDUP": Coupon(
        code="USEDUP",
        discount_type=DiscountType.FIXED_CART,
        amount=5,
        usage_limit=100,
        usage_count=100,
    ),
}


class CouponDatabase:
    """In-memory coupon database for mock merchant"""

    def __init__(self):
        self.coupons = dict(COUPONS)

    def get_coupon(self, code: str) -> Optional[Coupon]:
        """Get a coupon by code (case-insensitive)"""
        return self.coupons.get(normalize_coupon_code(code))

    def upsert_coupon(self, coupon: Coupon) -> Coupon:
        """Create or replace a coupon"""
        self.coupons[normalize_coupon_code(coupon.code)] = coupon
        return coupon

    def reset(self) -> None:
        """Restore the seed coupons"""
        self.coupons = dict(COUPONS)


# Singleton instance
coupon_db = CouponDatabase()
