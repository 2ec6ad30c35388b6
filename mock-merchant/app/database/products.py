"""Mock product database"""

from typing import Optional

from cartengine.models import (
    BackorderPolicy,
    Product,
    ProductStatus,
    ProductType,
    QuantityLimits,
    StockStatus,
)

# Mock product catalog
PRODUCTS: dict[str, Product] = {
    "prod-001": Product(
        id="prod-001",
        name="Sony WH-1000XM5 Wireless Headphones",
        price=349.99,
        regular_price=349.99,
        sku="SONY-WH1000XM5-BLK",
        weight=0.25,
        stock_quantity=50,
    ),
    "prod-002": Product(
        id="prod-002",
        name="Apple AirPods Pro (2nd Gen)",
        price=229.00,
        regular_price=249.00,
        sale_price=229.00,
        sku="APPLE-APP2-WHT",
        weight=0.05,
        stock_quantity=100,
    ),
    "prod-003": Product(
        id="prod-003",
        name="Samsung Galaxy Tab S9",
        price=799.99,
        regular_price=799.99,
        sku="SAMSUNG-TABS9-GRY",
        weight=0.5,
        stock_quantity=4,
    ),
    "prod-004": Product(
        id="prod-004",
        name="Patagonia Better Sweater Jacket",
        type=ProductType.VARIABLE,
        price=139.00,
        regular_price=139.00,
        sku="PATA-BSJKT",
        weight=0.6,
        stock_quantity=75,
    ),
    "prod-005": Product(
        id="prod-005",
        name="Nike Air Max 90",
        price=130.00,
        regular_price=130.00,
        sku="NIKE-AM90-WHT-10",
        weight=0.9,
        stock_quantity=0,
        stock_status=StockStatus.OUT_OF_STOCK,
    ),
    "prod-006": Product(
        id="prod-006",
        name="Dyson V15 Detect Vacuum",
        price=749.99,
        regular_price=749.99,
        sku="DYSON-V15DET-GLD",
        weight=3.1,
        manage_stock=False,
        stock_status=StockStatus.ON_BACKORDER,
        backorders=BackorderPolicy.NOTIFY,
        backorders_allowed=True,
    ),
    "prod-007": Product(
        id="prod-007",
        name="KitchenAid Stand Mixer",
        status=ProductStatus.DRAFT,
        price=449.99,
        regular_price=449.99,
        sku="KA-MIXER-RED-55",
        weight=10.0,
        stock_quantity=40,
    ),
    "prod-008": Product(
        id="prod-008",
        name="Yeti Tundra 45 Cooler",
        price=325.00,
        regular_price=325.00,
        sku="YETI-T45-WHT",
        weight=10.5,
        stock_quantity=35,
        quantity_limits=QuantityLimits(min=1, max=2, step=1),
    ),
    "prod-009": Product(
        id="prod-009",
        name="Digital Gift Card",
        price=50.00,
        regular_price=50.00,
        sku="GIFT-50",
        manage_stock=False,
    ),
    "prod-010": Product(
        id="prod-010",
        name="Atomic Habits by James Clear",
        price=24.99,
        regular_price=24.99,
        sku="BOOK-ATOMIC-HC",
        weight=0.4,
        stock_quantity=200,
    ),
}


class ProductDatabase:
    """In-memory product database for mock merchant"""

    def __init__(self):
        self.products = {pid: product.model_copy() for pid, product in PRODUCTS.items()}

    def get_product(self, product_id: str) -> Optional[Product]:
        """Get a product by ID"""
        return self.products.get(product_id)

    def search_products(
        self,
        query: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        in_stock_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Product], int]:
        """
        Search published products with filters.

        Returns:
            Tuple of (matching products, total count)
        """
        results = [p for p in self.products.values() if p.is_published]

        # Filter by search query
        if query:
            query_lower = query.lower()
            results = [
                p for p in results
                if query_lower in p.name.lower() or (p.sku and query_lower in p.sku.lower())
            ]

        # Filter by price range
        if min_price is not None:
            results = [p for p in results if p.price >= min_price]
        if max_price is not None:
            results = [p for p in results if p.price <= max_price]

        # Filter by stock
        if in_stock_only:
            results = [p for p in results if p.stock_status == StockStatus.IN_STOCK]

        # Get total before pagination
        total = len(results)

        # Apply pagination
        results = results[offset : offset + limit]

        return results, total

    def upsert_product(self, product: Product) -> Product:
        """Create or replace a product"""
        self.products[product.id] = product
        return product

    def update_stock(self, product_id: str, quantity: int) -> Optional[Product]:
        """
        Set the stock level of a managed product.

        Returns:
            Updated product, or None if it does not exist
        """
        product = self.products.get(product_id)
        if not product:
            return None

        status = StockStatus.IN_STOCK if quantity > 0 else StockStatus.OUT_OF_STOCK
        updated = product.model_copy(update={"stock_quantity": quantity, "stock_status": status})
        self.products[product_id] = updated
        return updated

    def reset(self) -> None:
        """Restore the seed catalog"""
        self.products = {pid: product.model_copy() for pid, product in PRODUCTS.items()}


# Singleton instance
product_db = ProductDatabase()
