import pytest

from cartengine.config import CartSettings, SyncSettings, TaxSettings
from cartengine.errors import CatalogError, PersistenceError, SyncTransportError
from cartengine.models import (
    Cart,
    CartItem,
    Coupon,
    DiscountType,
    IdentityContext,
    Product,
    ServerCartData,
)
from cartengine.persistence import MemoryCartStorage
from cartengine.service import CartService
from cartengine.totals import TotalsCalculator


@pytest.fixture
def anyio_backend():
    return "asyncio"


# ==================== Builders ====================


def make_product(product_id: str = "prod-1", price: float = 10.0, stock: int | None = 100, **kwargs) -> Product:
    data = {
        "id": product_id,
        "name": f"Product {product_id}",
        "price": price,
        "regular_price": kwargs.pop("regular_price", price),
        "stock_quantity": stock,
    }
    data.update(kwargs)
    return Product(**data)


def make_item(product: Product, quantity: int = 1, **kwargs) -> CartItem:
    return CartItem.from_product(product, quantity, **kwargs)


def make_coupon(code: str = "SAVE10", discount_type=DiscountType.PERCENT, amount: float = 10, **kwargs) -> Coupon:
    return Coupon(code=code, discount_type=discount_type, amount=amount, **kwargs)


def build_cart(calculator: TotalsCalculator, items=(), coupons=(), **kwargs) -> Cart:
    return calculator.refresh(Cart(**kwargs), items=list(items), applied_coupons=list(coupons))


def make_settings(tax_enabled: bool = False, sync_enabled: bool = False, **kwargs) -> CartSettings:
    sync = kwargs.pop("sync", None) or SyncSettings(enabled=sync_enabled, background_sync=False)
    tax = kwargs.pop("tax", None) or TaxSettings(enabled=tax_enabled)
    return CartSettings(_env_file=None, tax=tax, sync=sync, **kwargs)


# ==================== Fake collaborators ====================


class FakeCatalog:
    """Catalog lookup backed by a dict"""

    def __init__(self, products=()):
        self.products = {p.id: p for p in products}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def add(self, product: Product) -> None:
        self.products[product.id] = product

    async def fetch_product(self, product_id: str):
        self.calls.append(product_id)
        if product_id in self.failing:
            raise CatalogError(f"Catalog unavailable for {product_id}")
        return self.products.get(product_id)


class FakeCoupons:
    """Coupon lookup backed by a dict"""

    def __init__(self, coupons=()):
        self.coupons = {c.code: c for c in coupons}
        self.fail = False

    def add(self, coupon: Coupon) -> None:
        self.coupons[coupon.code] = coupon

    async def fetch_coupon(self, code: str):
        if self.fail:
            raise CatalogError("Coupon service unavailable")
        return self.coupons.get(code)


class FakeTransport:
    """Server cart endpoint backed by a dict"""

    def __init__(self):
        self.carts: dict[str, ServerCartData] = {}
        self.fail_get = False
        self.fail_put = False
        self.gets = 0
        self.puts: list[ServerCartData] = []

    async def get_server_cart(self, identity: IdentityContext):
        self.gets += 1
        if self.fail_get:
            raise SyncTransportError("Server unreachable")
        return self.carts.get(identity.user_id)

    async def put_server_cart(self, identity: IdentityContext, data: ServerCartData) -> None:
        if self.fail_put:
            raise SyncTransportError("Upload failed")
        self.carts[identity.user_id] = data
        self.puts.append(data)


class FailingStorage(MemoryCartStorage):
    """Storage whose writes always fail"""

    async def save(self, cart: Cart) -> None:
        raise PersistenceError("Disk full")


# ==================== Fixtures ====================


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def calculator(settings):
    return TotalsCalculator(settings)


@pytest.fixture
def catalog():
    return FakeCatalog(
        [
            make_product("prod-1", price=10.0, stock=100),
            make_product("prod-2", price=20.0, stock=50),
            make_product("prod-3", price=5.0, stock=3),
        ]
    )


@pytest.fixture
def coupons():
    return FakeCoupons(
        [
            make_coupon("SAVE10", DiscountType.PERCENT, 10),
            make_coupon("FLAT50", DiscountType.FIXED_CART, 5, minimum_amount=50),
            make_coupon("SOLO", DiscountType.PERCENT, 15, individual_use=True),
        ]
    )


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def storage():
    return MemoryCartStorage()


@pytest.fixture
def identity():
    return IdentityContext(user_id="user-1", is_authenticated=True, access_token="token")


@pytest.fixture
def service(settings, catalog, coupons, storage, transport):
    return CartService(settings, catalog, coupons, storage, transport)
