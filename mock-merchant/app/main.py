"""
Mock Merchant Application

A simulated commerce backend for developing and testing the cart engine.
Serves the catalog, coupons and the server-held cart used for
cross-device sync.
"""

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from .core.config import get_settings
from .database import product_db, coupon_db, server_cart_db
from .routes import products_router, coupons_router, cart_router, auth_router

# Load environment variables
load_dotenv(os.path.join(os.path.dirname(__file__), "..", "..", "config", ".env"))

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    logger.info("Mock Merchant starting up...")
    logger.info(
        f"Catalog: {len(product_db.products)} products, "
        f"{len(coupon_db.coupons)} coupons"
    )
    yield
    logger.info(f"Mock Merchant shutting down ({len(server_cart_db.carts)} server carts held)")


# Create FastAPI app
app = FastAPI(
    title="Mock Merchant",
    description="Simulated commerce backend for cart engine testing",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict this
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(products_router)
app.include_router(coupons_router)
app.include_router(cart_router)
app.include_router(auth_router)


@app.get("/")
async def home():
    """API index"""
    return {
        "message": "Mock Merchant API",
        "docs": "/docs",
        "endpoints": {
            "products": "/api/products",
            "coupons": "/api/coupons/{code}",
            "auth": "/api/auth/token",
            "cart_sync": "/api/cart/sync/{user_id}",
        },
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "mock-merchant",
        "products": len(product_db.products),
        "server_carts": len(server_cart_db.carts),
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
