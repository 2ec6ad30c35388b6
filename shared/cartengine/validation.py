"""
Cart Validation Engine

Re-checks a cart against live catalog and coupon data.
Validation never changes the cart. Errors make the cart invalid,
warnings are informational and never block.
"""

import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .config import CartSettings
from .errors import CouponError
from .interfaces import CatalogLookup, CouponLookup
from .models import (
    AppliedCoupon,
    BackorderPolicy,
    Cart,
    CartItem,
    Coupon,
    Product,
    ProductType,
    StockStatus,
    TaxContext,
    ValidationCode,
    utcnow,
)
from .totals import TotalsCalculator, coupon_applies_to_item

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = 0.01


class ValidationIssue(BaseModel):
    """A single validation error or warning"""
    item_key: str = ""
    code: ValidationCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ValidationReport(BaseModel):
    """Validation outcome. A cart is valid when it has no errors."""
    is_valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)

    def codes(self) -> list[ValidationCode]:
        """All reported codes, errors first"""
        return [issue.code for issue in self.errors + self.warnings]


class _Findings:
    """Errors and warnings collected for one check"""

    def __init__(self):
        self.errors: list[ValidationIssue] = []
        self.warnings: list[ValidationIssue] = []

    def error(self, item_key: str, code: ValidationCode, message: str, **details) -> None:
        self.errors.append(ValidationIssue(item_key=item_key, code=code, message=message, details=details))

    def warning(self, item_key: str, code: ValidationCode, message: str, **details) -> None:
        self.warnings.append(ValidationIssue(item_key=item_key, code=code, message=message, details=details))

    def extend(self, other: "_Findings") -> None:
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def low_stock_threshold(available: int) -> int:
    """10% of available stock or 5 units, whichever is larger"""
    return max(5, math.ceil(available * 0.1))


class CartValidator:
    """
    Validates carts against current catalog truth.

    Usage:
        validator = CartValidator(settings, catalog, calculator, coupons)
        report = await validator.validate(cart)
        if not report.is_valid:
            ...
    """

    def __init__(
        self,
        settings: CartSettings,
        catalog: CatalogLookup,
        calculator: TotalsCalculator,
        coupons: Optional[CouponLookup] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.calculator = calculator
        self.coupons = coupons

    async def validate(self, cart: Cart, tax_context: Optional[TaxContext] = None) -> ValidationReport:
        """Run every item, cart, coupon and totals check"""
        findings = _Findings()

        # Item checks are independent; results are kept in cart order
        item_findings = await asyncio.gather(*(self._check_item(item) for item in cart.items))
        for result in item_findings:
            findings.extend(result)

        self._check_cart_limits(cart, findings)
        await self._check_coupons(cart, findings)
        self._check_totals(cart, tax_context, findings)

        return ValidationReport(
            is_valid=len(findings.errors) == 0,
            errors=findings.errors,
            warnings=findings.warnings,
        )

    # ==================== Item checks ====================

    async def _check_item(self, item: CartItem) -> _Findings:
        findings = _Findings()

        try:
            product = await self.catalog.fetch_product(item.product_id)
        except Exception as e:
            logger.warning(f"Could not fetch product {item.product_id} for validation: {e}")
            findings.warning(
                item.key,
                ValidationCode.VALIDATION_ERROR,
                f"Could not validate item: {e}",
                error=str(e),
            )
            return findings

        if product is None:
            findings.error(
                item.key,
                ValidationCode.PRODUCT_NOT_FOUND,
                f"Product with ID {item.product_id} not found",
                current_stock=0,
                requested_quantity=item.quantity,
            )
            return findings

        if not product.is_published:
            findings.error(
                item.key,
                ValidationCode.PRODUCT_NOT_FOUND,
                f"Product {item.name} is no longer available",
            )
            return findings

        self._check_stock(item, product, findings)
        self._check_quantity_limits(item, product, findings)
        self._check_price_drift(item, product, findings)
        self._check_variation(item, product, findings)

        return findings

    def _check_stock(self, item: CartItem, product: Product, findings: _Findings) -> None:
        if product.stock_status == StockStatus.OUT_OF_STOCK:
            findings.error(
                item.key,
                ValidationCode.OUT_OF_STOCK,
                f"{item.name} is currently out of stock",
                current_stock=0,
                requested_quantity=item.quantity,
            )
            return

        if product.manage_stock and product.stock_quantity is not None:
            available = product.stock_quantity

            if item.quantity > available:
                if available == 0:
                    findings.error(
                        item.key,
                        ValidationCode.OUT_OF_STOCK,
                        f"{item.name} is out of stock",
                        current_stock=available,
                        requested_quantity=item.quantity,
                    )
                else:
                    findings.error(
                        item.key,
                        ValidationCode.INSUFFICIENT_STOCK,
                        f"Only {available} units of {item.name} available, but {item.quantity} requested",
                        current_stock=available,
                        requested_quantity=item.quantity,
                    )
                return

            threshold = low_stock_threshold(available)
            if available - item.quantity <= threshold:
                findings.warning(
                    item.key,
                    ValidationCode.LOW_STOCK,
                    f"Only {available} units of {item.name} remaining",
                    available_stock=available,
                    threshold=threshold,
                )

        if product.stock_status == StockStatus.ON_BACKORDER:
            if product.backorders == BackorderPolicy.NO:
                findings.error(
                    item.key,
                    ValidationCode.OUT_OF_STOCK,
                    f"{item.name} is temporarily unavailable",
                    current_stock=0,
                    requested_quantity=item.quantity,
                )
            else:
                findings.warning(
                    item.key,
                    ValidationCode.BACKORDER,
                    f"{item.name} is on backorder and may take longer to ship",
                    backorder_notify=product.backorders == BackorderPolicy.NOTIFY,
                )

    def _check_quantity_limits(self, item: CartItem, product: Product, findings: _Findings) -> None:
        limits = product.quantity_limits or item.quantity_limits
        if limits:
            if item.quantity < limits.min:
                findings.error(
                    item.key,
                    ValidationCode.INVALID_QUANTITY,
                    f"Minimum quantity for {item.name} is {limits.min}",
                    requested_quantity=item.quantity,
                )
            if item.quantity > limits.max:
                findings.error(
                    item.key,
                    ValidationCode.INVALID_QUANTITY,
                    f"Maximum quantity for {item.name} is {limits.max}",
                    requested_quantity=item.quantity,
                )
            if (item.quantity - limits.min) % limits.step != 0:
                findings.error(
                    item.key,
                    ValidationCode.INVALID_QUANTITY,
                    f"{item.name} must be ordered in multiples of {limits.step}",
                    requested_quantity=item.quantity,
                )

        if item.quantity > self.settings.max_quantity_per_item:
            findings.error(
                item.key,
                ValidationCode.INVALID_QUANTITY,
                f"Maximum quantity per item is {self.settings.max_quantity_per_item}",
                requested_quantity=item.quantity,
            )

    def _check_price_drift(self, item: CartItem, product: Product, findings: _Findings) -> None:
        if abs(item.regular_price - product.regular_price) > PRICE_TOLERANCE:
            findings.warning(
                item.key,
                ValidationCode.PRICE_CHANGED,
                f"Price for {item.name} has changed from "
                f"{item.regular_price:.2f} to {product.regular_price:.2f}",
                previous_price=item.regular_price,
                current_price=product.regular_price,
                price_increase=product.regular_price > item.regular_price,
            )

        previous_sale = item.sale_price
        current_sale = product.sale_price
        if (previous_sale is None) != (current_sale is None) or (
            previous_sale is not None
            and current_sale is not None
            and abs(previous_sale - current_sale) > PRICE_TOLERANCE
        ):
            findings.warning(
                item.key,
                ValidationCode.PRICE_CHANGED,
                f"Sale price for {item.name} has changed",
                previous_sale_price=previous_sale,
                current_sale_price=current_sale,
            )

    def _check_variation(self, item: CartItem, product: Product, findings: _Findings) -> None:
        if product.type != ProductType.VARIABLE:
            return

        if not item.variation_id:
            findings.error(
                item.key,
                ValidationCode.VARIATION_NOT_FOUND,
                f"{item.name} requires a variation to be selected",
            )
            return

        missing = sorted(name for name, value in item.attributes.items() if not value)
        if missing:
            findings.error(
                item.key,
                ValidationCode.VARIATION_NOT_FOUND,
                f"Missing values for {', '.join(missing)} on {item.name}",
                missing_attributes=missing,
            )

    # ==================== Cart checks ====================

    def _check_cart_limits(self, cart: Cart, findings: _Findings) -> None:
        if len(cart.items) > self.settings.max_items:
            findings.error(
                "",
                ValidationCode.INVALID_QUANTITY,
                f"Cart cannot contain more than {self.settings.max_items} items",
                item_count=len(cart.items),
            )

        ceiling = self.settings.max_items * self.settings.max_quantity_per_item
        if cart.total_quantity > ceiling:
            findings.warning(
                "",
                ValidationCode.HIGH_QUANTITY,
                "Cart contains an unusually high quantity of items",
                total_quantity=cart.total_quantity,
                ceiling=ceiling,
            )

        if not cart.items:
            findings.warning("", ValidationCode.EMPTY_CART, "Cart is empty")
            return

        minimum = self.settings.minimum_order_amount
        if minimum > 0 and cart.totals.total < minimum:
            findings.error(
                "",
                ValidationCode.MINIMUM_ORDER_NOT_MET,
                f"Minimum order amount is {minimum:.2f}",
                minimum=minimum,
                total=cart.totals.total,
            )

    async def _check_coupons(self, cart: Cart, findings: _Findings) -> None:
        subtotal = cart.totals.subtotal
        now = utcnow()
        coupon_count = len(cart.applied_coupons)

        for applied in cart.applied_coupons:
            coupon: Union[AppliedCoupon, Coupon] = applied

            if self.coupons is not None:
                try:
                    live = await self.coupons.fetch_coupon(applied.code)
                except Exception as e:
                    logger.warning(f"Could not refresh coupon {applied.code}: {e}")
                    findings.warning(
                        "",
                        ValidationCode.COUPON_VALIDATION_ERROR,
                        f"Could not validate coupon {applied.code}: {e}",
                        coupon_code=applied.code,
                    )
                else:
                    if live is None:
                        findings.error(
                            "",
                            ValidationCode.COUPON_NOT_FOUND,
                            f"Coupon {applied.code} no longer exists",
                            coupon_code=applied.code,
                        )
                        continue
                    coupon = live

            if _is_expired(coupon.expiry_date, now):
                findings.error(
                    "",
                    ValidationCode.COUPON_EXPIRED,
                    f"Coupon {applied.code} has expired",
                    coupon_code=applied.code,
                )

            if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
                findings.error(
                    "",
                    ValidationCode.COUPON_USAGE_LIMIT_EXCEEDED,
                    f"Coupon {applied.code} usage limit has been reached",
                    coupon_code=applied.code,
                )

            if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
                findings.error(
                    "",
                    ValidationCode.COUPON_MINIMUM_NOT_MET,
                    f"Minimum spend of {coupon.minimum_amount:.2f} required for coupon {applied.code}",
                    coupon_code=applied.code,
                    minimum_amount=coupon.minimum_amount,
                )

            if coupon.maximum_amount is not None and subtotal > coupon.maximum_amount:
                findings.warning(
                    "",
                    ValidationCode.COUPON_MAXIMUM_EXCEEDED,
                    f"Cart subtotal exceeds the maximum of {coupon.maximum_amount:.2f} for coupon {applied.code}",
                    coupon_code=applied.code,
                    maximum_amount=coupon.maximum_amount,
                )

            if coupon.individual_use and coupon_count > 1:
                findings.error(
                    "",
                    ValidationCode.COUPON_INDIVIDUAL_USE,
                    f"Coupon {applied.code} cannot be used with other coupons",
                    coupon_code=applied.code,
                )

    def _check_totals(self, cart: Cart, tax_context: Optional[TaxContext], findings: _Findings) -> None:
        expected = self.calculator.calculate(
            cart.items,
            cart.applied_coupons,
            cart.shipping_methods,
            cart.fees,
            tax_context,
        )
        stored = cart.totals.model_dump()
        mismatched = [
            name for name, value in expected.model_dump().items()
            if abs(value - stored[name]) > PRICE_TOLERANCE
        ]
        if mismatched:
            findings.warning(
                "",
                ValidationCode.TOTALS_MISMATCH,
                "Cart totals are out of date and need to be recalculated",
                fields=mismatched,
                expected_total=expected.total,
                stored_total=cart.totals.total,
            )


def _is_expired(expiry_date: Optional[datetime], now: datetime) -> bool:
    if expiry_date is None:
        return False
    if expiry_date.tzinfo is None:
        return expiry_date < now.replace(tzinfo=None)
    return expiry_date < now


def check_coupon_eligibility(
    coupon: Union[Coupon, AppliedCoupon],
    cart: Cart,
    now: Optional[datetime] = None,
) -> None:
    """
    Check whether a coupon may be applied to a cart.

    Raises:
        CouponError: with a ValidationCode-style code describing the rule
    """
    now = now or utcnow()
    code = coupon.code
    subtotal = cart.totals.subtotal

    if _is_expired(coupon.expiry_date, now):
        raise CouponError(f"Coupon {code} has expired", code=ValidationCode.COUPON_EXPIRED.value)

    if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
        raise CouponError(
            f"Coupon {code} usage limit has been reached",
            code=ValidationCode.COUPON_USAGE_LIMIT_EXCEEDED.value,
        )

    if coupon.minimum_amount is not None and subtotal < coupon.minimum_amount:
        raise CouponError(
            f"Minimum spend of {coupon.minimum_amount:.2f} required for coupon {code}",
            code=ValidationCode.COUPON_MINIMUM_NOT_MET.value,
            details={"minimum_amount": coupon.minimum_amount, "subtotal": subtotal},
        )

    if coupon.maximum_amount is not None and subtotal > coupon.maximum_amount:
        raise CouponError(
            f"Cart subtotal exceeds the maximum of {coupon.maximum_amount:.2f} for coupon {code}",
            code=ValidationCode.COUPON_MAXIMUM_EXCEEDED.value,
            details={"maximum_amount": coupon.maximum_amount, "subtotal": subtotal},
        )

    applied = coupon if isinstance(coupon, AppliedCoupon) else coupon.to_applied()

    if coupon.product_ids and not any(coupon_applies_to_item(applied, item) for item in cart.items):
        raise CouponError(f"Coupon {code} is not valid for the items in your cart")

    excluded = set(coupon.excluded_product_ids)
    if excluded and any(item.product_id in excluded or item.variation_id in excluded for item in cart.items):
        raise CouponError(f"Coupon {code} cannot be used with some items in your cart")

    others: Sequence[AppliedCoupon] = [c for c in cart.applied_coupons if c.code != applied.code]
    if others and (coupon.individual_use or any(c.individual_use for c in others)):
        raise CouponError(
            f"Coupon {code} cannot be used with other coupons",
            code=ValidationCode.COUPON_INDIVIDUAL_USE.value,
        )
