"""Cart engine data models"""

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time"""
    return datetime.now(timezone.utc)


def normalize_coupon_code(code: str) -> str:
    return code.strip().upper()


class StockStatus(str, Enum):
    IN_STOCK = "instock"
    OUT_OF_STOCK = "outofstock"
    ON_BACKORDER = "onbackorder"


class BackorderPolicy(str, Enum):
    NO = "no"
    NOTIFY = "notify"
    YES = "yes"


class DiscountType(str, Enum):
    FIXED_CART = "fixed_cart"
    PERCENT = "percent"
    FIXED_PRODUCT = "fixed_product"


class ProductType(str, Enum):
    SIMPLE = "simple"
    VARIABLE = "variable"


class ProductStatus(str, Enum):
    PUBLISH = "publish"
    DRAFT = "draft"
    PENDING = "pending"
    PRIVATE = "private"


class SyncStatus(str, Enum):
    """State of the current or last sync attempt"""
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


class SyncStrategy(str, Enum):
    """Conflict resolution policy"""
    MERGE_SMART = "merge_smart"
    LOCAL_WINS = "local_wins"
    SERVER_WINS = "server_wins"
    MERGE_QUANTITIES = "merge_quantities"
    PROMPT_USER = "prompt_user"


class ConflictType(str, Enum):
    ITEM_QUANTITY = "item_quantity"
    COUPON_CONFLICT = "coupon_conflict"


class QueuedActionType(str, Enum):
    """Cart-affecting actions that can be queued while offline"""
    ADD = "add"
    UPDATE = "update"
    REMOVE = "remove"
    CLEAR = "clear"
    APPLY_COUPON = "apply_coupon"
    REMOVE_COUPON = "remove_coupon"


class ValidationCode(str, Enum):
    """Codes reported by the validation engine"""
    # Item errors
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    VARIATION_NOT_FOUND = "VARIATION_NOT_FOUND"
    # Item warnings
    LOW_STOCK = "LOW_STOCK"
    BACKORDER = "BACKORDER"
    PRICE_CHANGED = "PRICE_CHANGED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    # Cart level
    HIGH_QUANTITY = "HIGH_QUANTITY"
    EMPTY_CART = "EMPTY_CART"
    MINIMUM_ORDER_NOT_MET = "MINIMUM_ORDER_NOT_MET"
    TOTALS_MISMATCH = "TOTALS_MISMATCH"
    # Coupons
    COUPON_NOT_FOUND = "COUPON_NOT_FOUND"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_USAGE_LIMIT_EXCEEDED = "COUPON_USAGE_LIMIT_EXCEEDED"
    COUPON_MINIMUM_NOT_MET = "COUPON_MINIMUM_NOT_MET"
    COUPON_MAXIMUM_EXCEEDED = "COUPON_MAXIMUM_EXCEEDED"
    COUPON_INDIVIDUAL_USE = "COUPON_INDIVIDUAL_USE"
    COUPON_VALIDATION_ERROR = "COUPON_VALIDATION_ERROR"


# ==================== Catalog truth ====================


class QuantityLimits(BaseModel):
    """Per-product quantity rules"""
    min: int = Field(default=1, ge=0)
    max: int = Field(default=9999, ge=1)
    step: int = Field(default=1, ge=1)

    class Config:
        frozen = True


class Product(BaseModel):
    """Current product data from the catalog"""
    id: str
    name: str
    type: ProductType = ProductType.SIMPLE
    status: ProductStatus = ProductStatus.PUBLISH
    price: float = Field(ge=0)
    regular_price: float = Field(ge=0)
    sale_price: Optional[float] = Field(default=None, ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = None
    manage_stock: bool = True
    stock_quantity: Optional[int] = Field(default=None, ge=0)
    stock_status: StockStatus = StockStatus.IN_STOCK
    backorders: BackorderPolicy = BackorderPolicy.NO
    backorders_allowed: bool = False
    quantity_limits: Optional[QuantityLimits] = None

    @property
    def is_published(self) -> bool:
        return self.status == ProductStatus.PUBLISH


class Coupon(BaseModel):
    """Current coupon data from the backend"""
    code: str
    discount_type: DiscountType
    amount: float = Field(ge=0)
    description: Optional[str] = None
    free_shipping: bool = False
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(default=None, gt=0)
    usage_count: int = Field(default=0, ge=0)
    individual_use: bool = False
    product_ids: list[str] = Field(default_factory=list)
    excluded_product_ids: list[str] = Field(default_factory=list)
    minimum_amount: Optional[float] = Field(default=None, ge=0)
    maximum_amount: Optional[float] = Field(default=None, ge=0)

    def to_applied(self) -> "AppliedCoupon":
        """Snapshot this coupon for the cart"""
        data = self.model_dump()
        data["code"] = normalize_coupon_code(self.code)
        return AppliedCoupon(**data)


# ==================== Cart contents ====================


def make_item_key(
    product_id: str,
    variation_id: Optional[str] = None,
    attributes: Optional[dict[str, str]] = None,
) -> str:
    """
    Derive the deterministic identity of a cart line.

    Requests for the same product, variation and selected attributes
    always resolve to the same key, regardless of attribute order.
    """
    parts = [str(product_id), str(variation_id or "")]
    if attributes:
        parts.append("|".join(f"{k}:{attributes[k]}" for k in sorted(attributes)))
    return hashlib.sha256("\x1f".join(parts).encode()).hexdigest()[:32]


class CartItem(BaseModel):
    """One line of the cart"""
    key: str
    product_id: str
    variation_id: Optional[str] = None
    quantity: int = Field(gt=0)
    name: str
    price: float = Field(ge=0)
    regular_price: float = Field(ge=0)
    sale_price: Optional[float] = Field(default=None, ge=0)
    total_price: float = Field(ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = None
    # Snapshot taken at add time, compared against live catalog data later
    stock_quantity: Optional[int] = None
    stock_status: StockStatus = StockStatus.IN_STOCK
    backorders: BackorderPolicy = BackorderPolicy.NO
    backorders_allowed: bool = False
    quantity_limits: Optional[QuantityLimits] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    added_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        frozen = True

    @classmethod
    def from_product(
        cls,
        product: Product,
        quantity: int,
        variation_id: Optional[str] = None,
        attributes: Optional[dict[str, str]] = None,
    ) -> "CartItem":
        """Create a new line from current catalog data"""
        now = utcnow()
        return cls(
            key=make_item_key(product.id, variation_id, attributes),
            product_id=product.id,
            variation_id=variation_id,
            quantity=quantity,
            name=product.name,
            price=product.price,
            regular_price=product.regular_price,
            sale_price=product.sale_price,
            total_price=product.price * quantity,
            sku=product.sku,
            weight=product.weight,
            stock_quantity=product.stock_quantity,
            stock_status=product.stock_status,
            backorders=product.backorders,
            backorders_allowed=product.backorders_allowed,
            quantity_limits=product.quantity_limits,
            attributes=dict(attributes or {}),
            added_at=now,
            updated_at=now,
        )

    def with_quantity(self, quantity: int) -> "CartItem":
        """New version of this line with a different quantity"""
        return self.model_copy(
            update={
                "quantity": quantity,
                "total_price": self.price * quantity,
                "updated_at": utcnow(),
            }
        )


class AppliedCoupon(BaseModel):
    """Coupon snapshot attached to the cart"""
    code: str
    discount_type: DiscountType
    amount: float = Field(ge=0)
    description: Optional[str] = None
    free_shipping: bool = False
    expiry_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    individual_use: bool = False
    product_ids: list[str] = Field(default_factory=list)
    excluded_product_ids: list[str] = Field(default_factory=list)
    minimum_amount: Optional[float] = None
    maximum_amount: Optional[float] = None

    class Config:
        frozen = True


class TaxLine(BaseModel):
    """Itemized tax amount"""
    id: int
    total: float


class ShippingMethod(BaseModel):
    """Delivery option chosen for the cart"""
    id: str
    title: str
    method_id: str = "flat_rate"
    cost: float = Field(ge=0)
    taxable: bool = True
    enabled: bool = True
    taxes: list[TaxLine] = Field(default_factory=list)

    class Config:
        frozen = True


class CartFee(BaseModel):
    """Extra charge added to the cart"""
    id: str
    name: str
    amount: float
    taxable: bool = False
    taxes: list[TaxLine] = Field(default_factory=list)

    class Config:
        frozen = True


class CartTotals(BaseModel):
    """Derived cart totals"""
    subtotal: float = 0.0
    subtotal_tax: float = 0.0
    discount_total: float = 0.0
    discount_tax: float = 0.0
    cart_contents_total: float = 0.0
    cart_contents_tax: float = 0.0
    shipping_total: float = 0.0
    shipping_tax: float = 0.0
    fee_total: float = 0.0
    fee_tax: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0

    class Config:
        frozen = True


class Cart(BaseModel):
    """Shopping cart aggregate"""
    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    customer_id: Optional[str] = None
    items: list[CartItem] = Field(default_factory=list)
    item_count: int = 0
    applied_coupons: list[AppliedCoupon] = Field(default_factory=list)
    shipping_methods: list[ShippingMethod] = Field(default_factory=list)
    fees: list[CartFee] = Field(default_factory=list)
    totals: CartTotals = Field(default_factory=CartTotals)
    currency: str = "USD"
    currency_symbol: str = "$"
    prices_include_tax: bool = False
    needs_shipping: bool = False
    needs_payment: bool = False
    is_empty: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    class Config:
        frozen = True

    def find_item(self, key: str) -> Optional[CartItem]:
        """Get a line by key"""
        return next((item for item in self.items if item.key == key), None)

    def find_coupon(self, code: str) -> Optional[AppliedCoupon]:
        return next((c for c in self.applied_coupons if c.code == code), None)

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


# ==================== Sync records ====================


class IdentityContext(BaseModel):
    """Authenticated identity used for cart synchronization"""
    user_id: Optional[str] = None
    is_authenticated: bool = False
    email: Optional[str] = None
    access_token: Optional[str] = None


class TaxContext(BaseModel):
    """Customer tax information"""
    tax_rate: Optional[float] = Field(default=None, ge=0)
    country: Optional[str] = None
    state: Optional[str] = None


class SyncConflict(BaseModel):
    """A divergence found while merging local and server carts"""
    type: ConflictType
    item_key: Optional[str] = None
    local_value: Any = None
    server_value: Any = None
    message: str
    suggestion: str


class SyncChanges(BaseModel):
    """Summary of what a merge changed relative to the local cart"""
    items_added: int = 0
    items_updated: int = 0
    items_removed: int = 0
    coupons_added: int = 0
    coupons_removed: int = 0


class CartSyncResult(BaseModel):
    """Outcome of one synchronization attempt"""
    success: bool
    status: SyncStatus
    conflicts: list[SyncConflict] = Field(default_factory=list)
    merged_cart: Optional[Cart] = None
    synced_at: datetime = Field(default_factory=utcnow)
    changes: SyncChanges = Field(default_factory=SyncChanges)


class SyncMetadata(BaseModel):
    """Metadata stored next to the server cart"""
    device_id: str
    last_sync_at: datetime
    sync_version: int = 1
    user_id: str
    session_id: str
    source: str = "local"


class ServerCartData(BaseModel):
    """Wire shape of the server cart endpoint"""
    cart: Cart
    metadata: SyncMetadata


class QueuedAction(BaseModel):
    """Cart action recorded while offline"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    action: QueuedActionType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    retry_count: int = 0
