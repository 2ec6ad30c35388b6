# Cart consistency engine
# Cart model, totals, validation, cross-device sync and persistence

from .config import CartSettings, get_settings
from .errors import CommerceError, ErrorKind
from .models import Cart, CartItem, CartTotals, IdentityContext, SyncStrategy, TaxContext
from .result import CartResult
from .service import CartService
from .sync import CartSyncManager, SyncObserver
from .totals import TotalsCalculator
from .validation import CartValidator, ValidationReport

__all__ = [
    "CartSettings",
    "get_settings",
    "CommerceError",
    "ErrorKind",
    "Cart",
    "CartItem",
    "CartTotals",
    "IdentityContext",
    "SyncStrategy",
    "TaxContext",
    "CartResult",
    "CartService",
    "CartSyncManager",
    "SyncObserver",
    "TotalsCalculator",
    "CartValidator",
    "ValidationReport",
]
