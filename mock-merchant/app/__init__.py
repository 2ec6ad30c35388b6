# Mock Merchant: catalog, coupons and server cart endpoint for the cart engine
