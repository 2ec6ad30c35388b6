"""Success/failure result returned by public cart operations"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .errors import CommerceError

T = TypeVar("T")


@dataclass
class CartResult(Generic[T]):
    """Outcome of a cart operation"""
    success: bool
    data: Optional[T] = None
    error: Optional[CommerceError] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "CartResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: CommerceError, data: Optional[T] = None) -> "CartResult[T]":
        return cls(success=False, data=data, error=error)

    @property
    def retryable(self) -> bool:
        return bool(self.error and self.error.retryable)

    def unwrap(self) -> T:
        """Return data or raise the carried error"""
        if not self.success:
            raise self.error
        return self.data
