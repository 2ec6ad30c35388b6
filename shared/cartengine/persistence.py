"""
Cart Persistence

Local cart snapshot storage. Every backend round-trips the cart through
its JSON form, so dates, amounts and item order survive a save/load cycle.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, ValidationError

from .config import PersistenceSettings
from .errors import ConfigurationError, PersistenceError
from .models import Cart, utcnow

logger = logging.getLogger(__name__)


class CartStorage(Protocol):
    """Cart snapshot storage contract"""

    async def save(self, cart: Cart) -> None:
        ...

    async def load(self) -> Optional[Cart]:
        ...

    async def clear(self) -> None:
        ...


class StoredCart(BaseModel):
    """On-disk envelope around a cart snapshot"""
    cart: Cart
    saved_at: datetime
    expires_at: Optional[datetime] = None


class MemoryCartStorage:
    """Keeps the serialized cart in memory for the life of the process"""

    def __init__(self):
        self._data: Optional[str] = None

    async def save(self, cart: Cart) -> None:
        self._data = cart.model_dump_json()

    async def load(self) -> Optional[Cart]:
        if self._data is None:
            return None
        try:
            return Cart.model_validate_json(self._data)
        except ValidationError as e:
            raise PersistenceError(f"Stored cart is corrupt: {e}") from e

    async def clear(self) -> None:
        self._data = None


class NullCartStorage:
    """Storage strategy "none": nothing is kept between sessions"""

    async def save(self, cart: Cart) -> None:
        return None

    async def load(self) -> Optional[Cart]:
        return None

    async def clear(self) -> None:
        return None


class FileCartStorage:
    """
    Stores the cart as a JSON file.

    The file holds an envelope with the cart, the time it was saved and
    when it expires. Expired snapshots are removed on load.
    """

    def __init__(self, path: str | Path, expiration_days: Optional[int] = 30):
        self.path = Path(path)
        self.expiration_days = expiration_days

    async def save(self, cart: Cart) -> None:
        saved_at = utcnow()
        expires_at = saved_at + timedelta(days=self.expiration_days) if self.expiration_days else None
        envelope = StoredCart(cart=cart, saved_at=saved_at, expires_at=expires_at)
        await asyncio.to_thread(self._write, envelope.model_dump_json(indent=2))
        logger.debug(f"Cart {cart.session_id} saved to {self.path}")

    async def load(self) -> Optional[Cart]:
        raw = await asyncio.to_thread(self._read)
        if raw is None:
            return None

        try:
            envelope = StoredCart.model_validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(
                f"Stored cart at {self.path} is corrupt",
                details={"path": str(self.path), "error": str(e)},
            ) from e

        if envelope.expires_at is not None and envelope.expires_at <= utcnow():
            logger.info(f"Stored cart at {self.path} expired at {envelope.expires_at.isoformat()}")
            await self.clear()
            return None

        return envelope.cart

    async def clear(self) -> None:
        await asyncio.to_thread(self._remove)

    def _write(self, data: str) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(data, encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise PersistenceError(
                f"Could not write cart to {self.path}: {e}",
                details={"path": str(self.path)},
            ) from e

    def _read(self) -> Optional[str]:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(
                f"Could not read cart from {self.path}: {e}",
                details={"path": str(self.path)},
            ) from e

    def _remove(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Could not remove cart at {self.path}: {e}",
                details={"path": str(self.path)},
            ) from e


def create_storage(settings: PersistenceSettings) -> CartStorage:
    """Build the storage backend named by the persistence strategy"""
    if settings.strategy == "memory":
        return MemoryCartStorage()
    if settings.strategy == "file":
        return FileCartStorage(settings.path, settings.expiration_days)
    if settings.strategy == "none":
        return NullCartStorage()
    raise ConfigurationError(f"Unsupported persistence strategy: {settings.strategy}")
