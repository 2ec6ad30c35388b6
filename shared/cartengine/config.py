"""Cart engine configuration"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from .models import SyncStrategy


class TaxSettings(BaseModel):
    """Tax calculation policy"""
    enabled: bool = True
    prices_include_tax: bool = False
    display_mode: Literal["incl", "excl", "both"] = "excl"
    round_at_subtotal: bool = False
    default_country: str = "US"
    # Policy defaults used when no explicit customer rate is supplied.
    # These are not authoritative tax law.
    default_rates: dict[str, float] = Field(
        default_factory=lambda: {
            "US": 0.0875,
            "CA": 0.13,
            "GB": 0.20,
            "DE": 0.19,
            "FR": 0.20,
            "AU": 0.10,
        }
    )
    fallback_rate: float = 0.10


class SyncSettings(BaseModel):
    """Cross-device synchronization"""
    enabled: bool = False
    strategy: SyncStrategy = SyncStrategy.MERGE_SMART
    sync_interval_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=1)
    sync_on_auth: bool = True
    sync_on_cart_change: bool = False
    background_sync: bool = True
    offline_queue_size: int = Field(default=50, ge=1)


class PersistenceSettings(BaseModel):
    """Local cart snapshot storage"""
    strategy: Literal["memory", "file", "none"] = "memory"
    path: str = ".cart/cart.json"
    expiration_days: Optional[int] = 30


class CartSettings(BaseSettings):
    """Cart engine settings loaded from environment"""

    # Remote commerce backend
    base_url: str = "http://localhost:8001"
    request_timeout: float = 30.0

    # Cart rules
    max_items: int = 100
    max_quantity_per_item: int = 999
    validate_stock: bool = True
    allow_backorders: bool = False
    enable_coupons: bool = True
    enable_shipping: bool = True
    enable_fees: bool = True
    minimum_order_amount: float = 0.0

    currency: str = "USD"
    currency_symbol: str = "$"

    tax: TaxSettings = Field(default_factory=TaxSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)

    class Config:
        env_prefix = "CART_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_nested_delimiter = "__"
        case_sensitive = False
        extra = "ignore"


@lru_cache()
def get_settings() -> CartSettings:
    """Get cached settings instance"""
    return CartSettings()
