"""Cart engine error taxonomy"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Kind of failure, independent of the concrete exception type"""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    STOCK = "stock"
    LIMITS = "limits"
    COUPON = "coupon"
    SYNC = "sync"
    PERSISTENCE = "persistence"
    CART = "cart"
    CONFIGURATION = "configuration"


class CommerceError(Exception):
    """Base exception for cart engine errors"""

    kind: ErrorKind = ErrorKind.CART
    default_code: str = "CART_ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        retryable: Optional[bool] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        if retryable is not None:
            self.retryable = retryable
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a plain dictionary"""
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


class CartInputError(CommerceError):
    """Raised when a request has a bad shape (e.g. non-positive quantity)"""
    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class NotFoundError(CommerceError):
    """Raised when a product, coupon or cart line does not exist"""
    kind = ErrorKind.NOT_FOUND
    default_code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", resource_id: Optional[str] = None, **kwargs):
        message = f"{resource} not found"
        if resource_id:
            message += f" with ID: {resource_id}"
        super().__init__(message, **kwargs)
        self.resource = resource
        self.resource_id = resource_id


class StockError(CommerceError):
    """Raised when requested stock is unavailable"""
    kind = ErrorKind.STOCK
    default_code = "OUT_OF_STOCK"


class LimitError(CommerceError):
    """Raised when quantity or item-count ceilings are exceeded"""
    kind = ErrorKind.LIMITS
    default_code = "LIMIT_EXCEEDED"


class CouponError(CommerceError):
    """Raised when a coupon is not eligible for the cart"""
    kind = ErrorKind.COUPON
    default_code = "COUPON_NOT_ELIGIBLE"


class SyncError(CommerceError):
    """Base class for cart synchronization failures"""
    kind = ErrorKind.SYNC
    default_code = "SYNC_ERROR"


class SyncAuthError(SyncError):
    """Raised when sync is attempted without an authenticated identity"""
    default_code = "SYNC_AUTH_REQUIRED"
    retryable = False


class SyncTransportError(SyncError):
    """Raised when fetching or uploading the server cart fails"""
    default_code = "SYNC_TRANSPORT_ERROR"
    retryable = True


class MergeError(SyncError):
    """Raised when the server cart has an unexpected shape"""
    default_code = "SYNC_MERGE_ERROR"


class PersistenceError(CommerceError):
    """Raised when cart storage cannot be read or written"""
    kind = ErrorKind.PERSISTENCE
    default_code = "PERSISTENCE_ERROR"
    retryable = True


class ConfigurationError(CommerceError):
    """Raised for unsupported or disabled configuration"""
    kind = ErrorKind.CONFIGURATION
    default_code = "CONFIGURATION_ERROR"


class CatalogError(CommerceError):
    """Raised when the catalog or coupon backend cannot be reached"""
    kind = ErrorKind.CART
    default_code = "CATALOG_UNAVAILABLE"
    retryable = True


class CartOperationError(CommerceError):
    """Generic failure wrapping an unexpected collaborator exception"""
    kind = ErrorKind.CART
    default_code = "CART_ERROR"
