"""
Cart Service

Orchestrates the cart model, totals, validation, persistence and sync.
Every public operation returns a CartResult instead of raising.
"""

import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from .client import CommerceClient
from .config import CartSettings
from .errors import (
    CartInputError,
    CartOperationError,
    CommerceError,
    ConfigurationError,
    CouponError,
    LimitError,
    NotFoundError,
    PersistenceError,
    StockError,
)
from .interfaces import CartTransport, CatalogLookup, CouponLookup
from .models import (
    Cart,
    CartFee,
    CartItem,
    CartSyncResult,
    Coupon,
    IdentityContext,
    Product,
    QueuedAction,
    QueuedActionType,
    ShippingMethod,
    StockStatus,
    SyncStatus,
    TaxContext,
    make_item_key,
    normalize_coupon_code,
    utcnow,
)
from .persistence import CartStorage, create_storage
from .result import CartResult
from .sync import CartSyncManager, ConflictResolver, SyncObserver
from .totals import TotalsCalculator
from .validation import CartValidator, ValidationReport, check_coupon_eligibility

logger = logging.getLogger(__name__)


class AddItemRequest(BaseModel):
    """Add-to-cart request"""
    product_id: str = Field(min_length=1)
    quantity: int = Field(default=1, gt=0)
    variation_id: Optional[str] = None
    attributes: dict[str, str] = Field(default_factory=dict)
    replace: bool = False


class CartService:
    """
    Cart session orchestrator.

    Owns the working copy of the cart for one session. Mutations are
    expected to be issued one at a time by the caller.

    Usage:
        async with CartService.from_settings() as service:
            result = await service.add_item("prod_001", quantity=2)
            if result.success:
                print(result.data.totals.total)
    """

    def __init__(
        self,
        settings: CartSettings,
        catalog: CatalogLookup,
        coupons: CouponLookup,
        storage: CartStorage,
        transport: CartTransport,
        calculator: Optional[TotalsCalculator] = None,
        device_id: Optional[str] = None,
    ):
        self.settings = settings
        self.catalog = catalog
        self.coupons = coupons
        self.storage = storage
        self.calculator = calculator or TotalsCalculator(settings)
        self.validator = CartValidator(settings, catalog, self.calculator, coupons)
        self.sync_manager = CartSyncManager(settings.sync, transport, self.calculator, device_id)

        self._cart: Optional[Cart] = None
        self._identity = IdentityContext()
        self._tax_context: Optional[TaxContext] = None
        self._owned_clients: list[CommerceClient] = []

        self._handlers: dict[QueuedActionType, Callable[..., Awaitable[Cart]]] = {
            QueuedActionType.ADD: self._apply_add,
            QueuedActionType.UPDATE: self._apply_update,
            QueuedActionType.REMOVE: self._apply_remove,
            QueuedActionType.CLEAR: self._apply_clear,
            QueuedActionType.APPLY_COUPON: self._apply_coupon,
            QueuedActionType.REMOVE_COUPON: self._apply_remove_coupon,
        }

    @classmethod
    def from_settings(cls, settings: Optional[CartSettings] = None) -> "CartService":
        """Build a service talking to the configured commerce backend"""
        from .config import get_settings

        settings = settings or get_settings()
        client = CommerceClient(settings.base_url, timeout=settings.request_timeout)
        service = cls(
            settings=settings,
            catalog=client,
            coupons=client,
            storage=create_storage(settings.persistence),
            transport=client,
        )
        service._owned_clients.append(client)
        return service

    # ==================== Lifecycle ====================

    async def start(self) -> None:
        """Start background sync"""
        self.sync_manager.start_background_sync(self._background_sync, lambda: self._identity)

    async def close(self) -> None:
        """Stop background sync and close owned clients"""
        await self.sync_manager.close()
        for client in self._owned_clients:
            await client.close()
        self._owned_clients.clear()

    async def __aenter__(self) -> "CartService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _background_sync(self) -> None:
        result = await self.sync_with_server()
        if not result.success:
            logger.warning(f"Background sync failed: {result.error.message}")

    # ==================== Cart access ====================

    def _new_cart(self) -> Cart:
        expiration_days = self.settings.persistence.expiration_days
        cart = Cart(
            customer_id=self._identity.user_id,
            currency=self.settings.currency,
            currency_symbol=self.settings.currency_symbol,
            expires_at=utcnow() + timedelta(days=expiration_days) if expiration_days else None,
        )
        return self.calculator.refresh(cart, tax_context=self._tax_context)

    async def _ensure_cart(self) -> Cart:
        if self._cart is None:
            stored = await self.storage.load()
            if stored is not None and stored.expires_at is not None and stored.expires_at <= utcnow():
                logger.info(f"Stored cart {stored.session_id} has expired, starting a new cart")
                stored = None
            self._cart = self._claim(stored) if stored is not None else self._new_cart()
        return self._cart

    def _claim(self, cart: Cart) -> Cart:
        """Attach the cart to the signed-in customer"""
        if self._identity.is_authenticated and self._identity.user_id and cart.customer_id != self._identity.user_id:
            return cart.model_copy(update={"customer_id": self._identity.user_id})
        return cart

    async def _commit(self, cart: Cart, sync: bool = True) -> CartResult[Cart]:
        """Make the cart the working copy, persist it and optionally sync"""
        self._cart = cart

        try:
            await self.storage.save(cart)
        except PersistenceError as e:
            logger.error(f"Failed to save cart {cart.session_id}: {e.message}")
            return CartResult.fail(e, data=cart)

        if sync and self.settings.sync.sync_on_cart_change:
            await self._sync_quietly()

        return CartResult.ok(self._cart)

    async def _sync_quietly(self) -> None:
        if not self.sync_manager.enabled or not self.sync_manager.is_online or not self._identity.is_authenticated:
            return
        result = await self.sync_with_server()
        if not result.success:
            logger.warning(f"Cart sync after change failed: {result.error.message}")

    def _is_offline(self) -> bool:
        return self.sync_manager.enabled and not self.sync_manager.is_online

    async def _guard(self, operation: str, func: Callable[[], Awaitable[CartResult]]) -> CartResult:
        """Convert raised errors into failed results"""
        try:
            return await func()
        except CommerceError as e:
            logger.warning(f"Failed to {operation}: {e.message}")
            return CartResult.fail(e)
        except Exception as e:
            logger.exception(f"Unexpected error while trying to {operation}")
            return CartResult.fail(
                CartOperationError(
                    f"Failed to {operation}: {e}",
                    details={"operation": operation, "error_type": type(e).__name__},
                )
            )

    async def _mutate(self, operation: str, action: QueuedActionType, payload: dict[str, Any]) -> CartResult[Cart]:
        async def run() -> CartResult[Cart]:
            cart = await self._ensure_cart()

            if self._is_offline():
                self.sync_manager.queue_action(action, payload)
                logger.info(f"Offline: queued {action.value}")
                return CartResult.ok(cart)

            new_cart = await self._handlers[action](cart, **payload)
            return await self._commit(new_cart)

        return await self._guard(operation, run)

    # ==================== Public operations ====================

    async def get_cart(self) -> CartResult[Cart]:
        """Get the current cart, loading it from storage on first use"""
        async def run() -> CartResult[Cart]:
            return CartResult.ok(await self._ensure_cart())

        return await self._guard("get cart", run)

    async def add_item(
        self,
        product_id: str,
        quantity: int = 1,
        variation_id: Optional[str] = None,
        attributes: Optional[dict[str, str]] = None,
        replace: bool = False,
    ) -> CartResult[Cart]:
        """
        Add a product to the cart.

        Adding the same product, variation and attributes again merges
        into the existing line, or sets its quantity when replace is True.
        """
        payload = {
            "product_id": product_id,
            "quantity": quantity,
            "variation_id": variation_id,
            "attributes": dict(attributes or {}),
            "replace": replace,
        }
        return await self._mutate("add item", QueuedActionType.ADD, payload)

    async def update_item_quantity(self, key: str, quantity: int) -> CartResult[Cart]:
        """Set a line's quantity. A quantity of 0 removes the line."""
        return await self._mutate("update item quantity", QueuedActionType.UPDATE, {"key": key, "quantity": quantity})

    async def remove_item(self, key: str) -> CartResult[Cart]:
        return await self._mutate("remove item", QueuedActionType.REMOVE, {"key": key})

    async def clear_cart(self) -> CartResult[Cart]:
        """Empty the cart. An unreadable stored cart is replaced by a new one."""
        if self._cart is None:
            try:
                await self._ensure_cart()
            except PersistenceError as e:
                logger.warning(f"Discarding unreadable stored cart: {e.message}")
                self._cart = self._new_cart()
        return await self._mutate("clear cart", QueuedActionType.CLEAR, {})

    async def apply_coupon(self, code: str) -> CartResult[Cart]:
        return await self._mutate("apply coupon", QueuedActionType.APPLY_COUPON, {"code": code})

    async def remove_coupon(self, code: str) -> CartResult[Cart]:
        return await self._mutate("remove coupon", QueuedActionType.REMOVE_COUPON, {"code": code})

    async def validate_cart(self) -> CartResult[ValidationReport]:
        """Re-check the cart against live catalog and coupon data"""
        async def run() -> CartResult[ValidationReport]:
            cart = await self._ensure_cart()
            report = await self.validator.validate(cart, self._tax_context)
            logger.info(
                f"Validated cart {cart.session_id}: "
                f"{len(report.errors)} errors, {len(report.warnings)} warnings"
            )
            return CartResult.ok(report)

        return await self._guard("validate cart", run)

    async def validate_coupon(self, code: str) -> CartResult[Coupon]:
        """Check whether a coupon could be applied, without applying it"""
        async def run() -> CartResult[Coupon]:
            cart = await self._ensure_cart()
            coupon = await self._fetch_eligible_coupon(cart, code)
            return CartResult.ok(coupon)

        return await self._guard("validate coupon", run)

    async def set_shipping_methods(self, methods: Sequence[ShippingMethod]) -> CartResult[Cart]:
        async def run() -> CartResult[Cart]:
            cart = await self._ensure_cart()
            return await self._commit(
                self.calculator.refresh(cart, shipping_methods=list(methods), tax_context=self._tax_context)
            )

        return await self._guard("set shipping methods", run)

    async def set_fees(self, fees: Sequence[CartFee]) -> CartResult[Cart]:
        async def run() -> CartResult[Cart]:
            cart = await self._ensure_cart()
            return await self._commit(self.calculator.refresh(cart, fees=list(fees), tax_context=self._tax_context))

        return await self._guard("set fees", run)

    async def set_tax_context(self, tax_context: Optional[TaxContext]) -> CartResult[Cart]:
        """Change the customer tax information and recalculate totals"""
        async def run() -> CartResult[Cart]:
            self._tax_context = tax_context
            cart = await self._ensure_cart()
            return await self._commit(self.calculator.refresh(cart, tax_context=tax_context), sync=False)

        return await self._guard("set tax context", run)

    # ==================== Sync ====================

    @property
    def identity(self) -> IdentityContext:
        return self._identity

    @property
    def sync_status(self) -> SyncStatus:
        return self.sync_manager.status

    @property
    def last_sync_at(self):
        return self.sync_manager.last_sync_at

    def add_sync_observer(self, observer: SyncObserver) -> None:
        self.sync_manager.add_observer(observer)

    def remove_sync_observer(self, observer: SyncObserver) -> None:
        self.sync_manager.remove_observer(observer)

    def set_conflict_resolver(self, resolver: Optional[ConflictResolver]) -> None:
        self.sync_manager.set_conflict_resolver(resolver)

    async def set_identity(self, identity: IdentityContext) -> CartResult[Optional[CartSyncResult]]:
        """Switch identity, syncing right away when configured to"""
        self._identity = identity
        logger.info(f"Cart identity set to {identity.user_id or 'anonymous'}")
        if self._cart is not None:
            self._cart = self._claim(self._cart)

        if (
            identity.is_authenticated
            and self.sync_manager.enabled
            and self.settings.sync.sync_on_auth
            and self.sync_manager.is_online
        ):
            return await self.sync_with_server()
        return CartResult.ok(None)

    async def sync_with_server(self) -> CartResult[CartSyncResult]:
        """Merge the local cart with the server cart and adopt the result"""
        async def run() -> CartResult[CartSyncResult]:
            cart = await self._ensure_cart()
            result = await self.sync_manager.sync_cart(cart, self._identity, self._tax_context)

            if result.merged_cart is not None and result.merged_cart is not cart:
                saved = await self._commit(result.merged_cart, sync=False)
                if not saved.success:
                    return CartResult.fail(saved.error, data=result)

            return CartResult.ok(result)

        return await self._guard("sync cart", run)

    async def enable_sync(self) -> CartResult[None]:
        self.sync_manager.enable()
        return CartResult.ok(None)

    async def disable_sync(self) -> CartResult[None]:
        self.sync_manager.disable()
        return CartResult.ok(None)

    async def set_online(self, online: bool) -> CartResult[int]:
        """Report connectivity. Going online replays the offline queue."""
        self.sync_manager.set_online(online)
        if not online:
            return CartResult.ok(0)
        return await self.process_offline_queue()

    async def process_offline_queue(self) -> CartResult[int]:
        """Replay queued actions, then sync if signed in"""
        async def run() -> CartResult[int]:
            processed = await self.sync_manager.process_queue(self._replay_action)
            await self._sync_quietly()
            return CartResult.ok(processed)

        return await self._guard("process offline queue", run)

    async def _replay_action(self, queued: QueuedAction) -> None:
        cart = await self._ensure_cart()
        new_cart = await self._handlers[queued.action](cart, **queued.payload)
        await self._commit(new_cart, sync=False)

    # ==================== Mutations ====================

    async def _fetch_product(self, product_id: str) -> Product:
        product = await self.catalog.fetch_product(product_id)
        if product is None:
            raise NotFoundError("Product", product_id)
        if not product.is_published:
            raise NotFoundError("Product", product_id, details={"status": product.status.value})
        return product

    def _check_stock(self, product: Product, quantity: int) -> None:
        if not self.settings.validate_stock:
            return

        backorders_allowed = self.settings.allow_backorders or product.backorders_allowed

        if product.stock_status == StockStatus.OUT_OF_STOCK and not backorders_allowed:
            raise StockError(f"{product.name} is out of stock", details={"product_id": product.id})

        if product.stock_status == StockStatus.ON_BACKORDER and not backorders_allowed:
            raise StockError(f"{product.name} is temporarily unavailable", details={"product_id": product.id})

        if (
            product.manage_stock
            and product.stock_quantity is not None
            and quantity > product.stock_quantity
            and not backorders_allowed
        ):
            raise StockError(
                f"Only {product.stock_quantity} items available in stock",
                code="INSUFFICIENT_STOCK",
                details={
                    "product_id": product.id,
                    "available": product.stock_quantity,
                    "requested": quantity,
                },
            )

    def _check_quantity(self, product: Product, quantity: int) -> None:
        if quantity > self.settings.max_quantity_per_item:
            raise LimitError(
                f"Maximum quantity per item is {self.settings.max_quantity_per_item}",
                details={"requested": quantity},
            )

        limits = product.quantity_limits
        if limits and quantity > limits.max:
            raise LimitError(f"Maximum quantity for {product.name} is {limits.max}", details={"requested": quantity})

    async def _apply_add(
        self,
        cart: Cart,
        product_id: str,
        quantity: int = 1,
        variation_id: Optional[str] = None,
        attributes: Optional[dict[str, str]] = None,
        replace: bool = False,
    ) -> Cart:
        try:
            request = AddItemRequest(
                product_id=product_id,
                quantity=quantity,
                variation_id=variation_id,
                attributes=attributes or {},
                replace=replace,
            )
        except ValidationError as e:
            raise CartInputError(f"Invalid add-to-cart request: {e}", details={"errors": e.errors()}) from e

        product = await self._fetch_product(request.product_id)

        key = make_item_key(product.id, request.variation_id, request.attributes)
        existing = cart.find_item(key)

        if existing and not request.replace:
            new_quantity = existing.quantity + request.quantity
        else:
            new_quantity = request.quantity

        if existing is None and len(cart.items) >= self.settings.max_items:
            raise LimitError(f"Cart cannot contain more than {self.settings.max_items} items")

        self._check_quantity(product, new_quantity)
        self._check_stock(product, new_quantity)

        if existing:
            items = [item.with_quantity(new_quantity) if item.key == key else item for item in cart.items]
        else:
            new_item = CartItem.from_product(product, new_quantity, request.variation_id, request.attributes)
            items = [*cart.items, new_item]

        logger.info(f"Added {request.quantity} x {product.id} to cart {cart.session_id}")
        return self.calculator.refresh(cart, items=items, tax_context=self._tax_context)

    async def _apply_update(self, cart: Cart, key: str, quantity: int) -> Cart:
        if not isinstance(quantity, int) or quantity < 0:
            raise CartInputError(f"Quantity must be a non-negative integer, got {quantity!r}")

        if quantity == 0:
            return await self._apply_remove(cart, key)

        item = cart.find_item(key)
        if item is None:
            raise NotFoundError("Cart item", key)

        if self.settings.validate_stock:
            product = await self._fetch_product(item.product_id)
            self._check_quantity(product, quantity)
            self._check_stock(product, quantity)
        elif quantity > self.settings.max_quantity_per_item:
            raise LimitError(f"Maximum quantity per item is {self.settings.max_quantity_per_item}")

        items = [i.with_quantity(quantity) if i.key == key else i for i in cart.items]
        return self.calculator.refresh(cart, items=items, tax_context=self._tax_context)

    async def _apply_remove(self, cart: Cart, key: str) -> Cart:
        if cart.find_item(key) is None:
            raise NotFoundError("Cart item", key)

        items = [item for item in cart.items if item.key != key]
        return self.calculator.refresh(cart, items=items, tax_context=self._tax_context)

    async def _apply_clear(self, cart: Cart) -> Cart:
        logger.info(f"Clearing cart {cart.session_id}")
        return self.calculator.refresh(cart, items=[], applied_coupons=[], fees=[], tax_context=self._tax_context)

    async def _fetch_eligible_coupon(self, cart: Cart, code: str) -> Coupon:
        if not self.settings.enable_coupons:
            raise ConfigurationError("Coupons are disabled")

        code = normalize_coupon_code(code)
        if not code:
            raise CartInputError("Coupon code is required")

        if cart.find_coupon(code):
            raise CouponError(f"Coupon {code} is already applied", code="COUPON_ALREADY_APPLIED")

        coupon = await self.coupons.fetch_coupon(code)
        if coupon is None:
            raise NotFoundError("Coupon", code)

        check_coupon_eligibility(coupon, cart)
        return coupon

    async def _apply_coupon(self, cart: Cart, code: str) -> Cart:
        coupon = await self._fetch_eligible_coupon(cart, code)
        applied = [*cart.applied_coupons, coupon.to_applied()]
        return self.calculator.refresh(cart, applied_coupons=applied, tax_context=self._tax_context)

    async def _apply_remove_coupon(self, cart: Cart, code: str) -> Cart:
        code = normalize_coupon_code(code)
        if cart.find_coupon(code) is None:
            raise NotFoundError("Coupon", code)

        applied = [c for c in cart.applied_coupons if c.code != code]
        return self.calculator.refresh(cart, applied_coupons=applied, tax_context=self._tax_context)
