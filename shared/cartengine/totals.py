"""
Cart Totals Calculator

Derives cart totals from items, coupons, shipping and fees.
The pipeline runs in a fixed order: subtotal, subtotal tax, discounts,
contents after discount, shipping, fees, grand total. Each stage only
reads the stages before it.

Money is computed with Decimal so that totals do not depend on the
order of items in the input.
"""

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional, Sequence

from .config import CartSettings
from .models import (
    AppliedCoupon,
    Cart,
    CartFee,
    CartItem,
    CartTotals,
    DiscountType,
    ShippingMethod,
    TaxContext,
    utcnow,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENT = Decimal("0.01")
INTERMEDIATE = Decimal("0.0001")
LINE_PRECISION = Decimal("0.000001")


def to_decimal(value: float | int | Decimal) -> Decimal:
    """Convert a stored float to the Decimal it was written as"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _sum(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO)


class TotalsCalculator:
    """
    Pure totals pipeline.

    Usage:
        calculator = TotalsCalculator(settings)
        totals = calculator.calculate(cart.items, cart.applied_coupons)
        cart = calculator.refresh(cart, items=new_items)
    """

    def __init__(self, settings: CartSettings):
        self.settings = settings
        self.tax = settings.tax

    # ==================== Public API ====================

    def calculate(
        self,
        items: Sequence[CartItem],
        coupons: Sequence[AppliedCoupon] = (),
        shipping_methods: Sequence[ShippingMethod] = (),
        fees: Sequence[CartFee] = (),
        tax_context: Optional[TaxContext] = None,
    ) -> CartTotals:
        """Calculate cart totals"""
        rate = self.resolve_tax_rate(tax_context)

        subtotal = self._round(self._subtotal(items))
        subtotal_tax = self._round(self._subtotal_tax(items, rate))

        discount_total, discount_tax = self._discounts(items, coupons, rate)

        cart_contents_total = max(ZERO, subtotal - discount_total)
        cart_contents_tax = max(ZERO, subtotal_tax - discount_tax)

        shipping_total, shipping_tax = self._shipping(shipping_methods, rate)
        fee_total, fee_tax = self._fees(fees, rate)

        total_tax = cart_contents_tax + shipping_tax + fee_tax

        if self.tax.prices_include_tax:
            total = cart_contents_total + shipping_total + fee_total
        else:
            total = cart_contents_total + shipping_total + fee_total + total_tax

        return CartTotals(
            subtotal=self._present(subtotal),
            subtotal_tax=self._present(subtotal_tax),
            discount_total=self._present(discount_total),
            discount_tax=self._present(discount_tax),
            cart_contents_total=self._present(cart_contents_total),
            cart_contents_tax=self._present(cart_contents_tax),
            shipping_total=self._present(shipping_total),
            shipping_tax=self._present(shipping_tax),
            fee_total=self._present(fee_total),
            fee_tax=self._present(fee_tax),
            total_tax=self._present(total_tax),
            total=self._present(total),
        )

    def refresh(
        self,
        cart: Cart,
        *,
        items: Optional[Sequence[CartItem]] = None,
        applied_coupons: Optional[Sequence[AppliedCoupon]] = None,
        shipping_methods: Optional[Sequence[ShippingMethod]] = None,
        fees: Optional[Sequence[CartFee]] = None,
        tax_context: Optional[TaxContext] = None,
    ) -> Cart:
        """
        Produce a new cart version with re-derived fields.

        Arguments left as None keep the cart's current value.
        """
        items = list(cart.items if items is None else items)
        applied_coupons = list(cart.applied_coupons if applied_coupons is None else applied_coupons)
        shipping_methods = list(cart.shipping_methods if shipping_methods is None else shipping_methods)
        fees = list(cart.fees if fees is None else fees)

        totals = self.calculate(items, applied_coupons, shipping_methods, fees, tax_context)

        return cart.model_copy(
            update={
                "items": items,
                "applied_coupons": applied_coupons,
                "shipping_methods": shipping_methods,
                "fees": fees,
                "totals": totals,
                "item_count": sum(item.quantity for item in items),
                "is_empty": len(items) == 0,
                "needs_shipping": any(item.weight is not None for item in items),
                "needs_payment": totals.total > 0,
                "prices_include_tax": self.tax.prices_include_tax,
                "updated_at": utcnow(),
            }
        )

    def resolve_tax_rate(self, tax_context: Optional[TaxContext] = None) -> Decimal:
        """
        Resolve the tax rate for a customer.

        An explicit customer rate always wins. Otherwise the configured
        country table is used, which is a policy default and not tax law.
        """
        if tax_context is not None and tax_context.tax_rate is not None:
            return to_decimal(tax_context.tax_rate)

        country = (tax_context.country if tax_context and tax_context.country else self.tax.default_country)
        rate = self.tax.default_rates.get(country.upper(), self.tax.fallback_rate)
        return to_decimal(rate)

    # ==================== Stages ====================

    def _line_amount(self, item: CartItem) -> Decimal:
        if self.tax.prices_include_tax:
            return to_decimal(item.total_price)
        return to_decimal(item.regular_price) * item.quantity

    def _subtotal(self, items: Sequence[CartItem]) -> Decimal:
        return _sum(self._line_amount(item) for item in items)

    def _subtotal_tax(self, items: Sequence[CartItem], rate: Decimal) -> Decimal:
        if not self.tax.enabled:
            return ZERO

        if self.tax.prices_include_tax:
            factor = rate / (1 + rate)
        else:
            factor = rate

        return _sum(
            (self._line_amount(item) * factor).quantize(LINE_PRECISION, rounding=ROUND_HALF_UP)
            for item in items
        )

    def _discounts(
        self,
        items: Sequence[CartItem],
        coupons: Sequence[AppliedCoupon],
        rate: Decimal,
    ) -> tuple[Decimal, Decimal]:
        discount_total = ZERO
        for coupon in coupons:
            discount_total += self._coupon_discount(items, coupon)

        discount_total = self._round(discount_total)

        discount_tax = ZERO
        if self.tax.enabled and not self.tax.prices_include_tax:
            discount_tax = self._round(discount_total * rate)

        return discount_total, discount_tax

    def _coupon_discount(self, items: Sequence[CartItem], coupon: AppliedCoupon) -> Decimal:
        eligible = [item for item in items if coupon_applies_to_item(coupon, item)]
        if not eligible:
            return ZERO

        eligible_subtotal = _sum(to_decimal(item.total_price) for item in eligible)
        amount = to_decimal(coupon.amount)

        if coupon.discount_type == DiscountType.FIXED_CART:
            return min(amount, eligible_subtotal)

        if coupon.discount_type == DiscountType.PERCENT:
            discount = eligible_subtotal * amount / 100
            if coupon.maximum_amount is not None:
                discount = min(discount, to_decimal(coupon.maximum_amount))
            return discount

        if coupon.discount_type == DiscountType.FIXED_PRODUCT:
            eligible_quantity = sum(item.quantity for item in eligible)
            return min(amount * eligible_quantity, eligible_subtotal)

        raise ValueError(f"Unknown discount type: {coupon.discount_type}")

    def _shipping(
        self,
        shipping_methods: Sequence[ShippingMethod],
        rate: Decimal,
    ) -> tuple[Decimal, Decimal]:
        if not self.settings.enable_shipping:
            return ZERO, ZERO

        # Single-method selection: the first enabled method is charged
        method = next((m for m in shipping_methods if m.enabled), None)
        if method is None:
            return ZERO, ZERO

        shipping_total = self._round(to_decimal(method.cost))

        shipping_tax = ZERO
        if self.tax.enabled and method.taxable:
            if method.taxes:
                shipping_tax = _sum(to_decimal(t.total) for t in method.taxes)
            else:
                shipping_tax = shipping_total * rate

        return shipping_total, self._round(shipping_tax)

    def _fees(self, fees: Sequence[CartFee], rate: Decimal) -> tuple[Decimal, Decimal]:
        if not self.settings.enable_fees or not fees:
            return ZERO, ZERO

        fee_total = self._round(_sum(to_decimal(fee.amount) for fee in fees))

        fee_tax = ZERO
        if self.tax.enabled:
            for fee in fees:
                if not fee.taxable:
                    continue
                if fee.taxes:
                    fee_tax += _sum(to_decimal(t.total) for t in fee.taxes)
                else:
                    fee_tax += to_decimal(fee.amount) * rate

        return fee_total, self._round(fee_tax)

    # ==================== Rounding ====================

    def _round(self, amount: Decimal) -> Decimal:
        """Round an intermediate stage value"""
        precision = CENT if self.tax.round_at_subtotal else INTERMEDIATE
        return amount.quantize(precision, rounding=ROUND_HALF_UP)

    @staticmethod
    def _present(amount: Decimal) -> float:
        """Final presented totals are always 2-decimal"""
        return float(amount.quantize(CENT, rounding=ROUND_HALF_UP))


def coupon_applies_to_item(coupon: AppliedCoupon, item: CartItem) -> bool:
    """Check a coupon's product include/exclude lists against a line"""
    item_ids = {item.product_id}
    if item.variation_id:
        item_ids.add(item.variation_id)

    if coupon.product_ids and not item_ids.intersection(coupon.product_ids):
        return False

    if item_ids.intersection(coupon.excluded_product_ids):
        return False

    return True
