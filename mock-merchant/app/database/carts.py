"""Server-held cart storage for mock merchant"""

import logging
from typing import Optional

from cartengine.models import ServerCartData

logger = logging.getLogger(__name__)


class ServerCartDatabase:
    """In-memory store of the last synced cart per user"""

    def __init__(self):
        self.carts: dict[str, ServerCartData] = {}

    def get_cart(self, user_id: str) -> Optional[ServerCartData]:
        """Get a user's server cart"""
        return self.carts.get(user_id)

    def save_cart(self, user_id: str, data: ServerCartData) -> ServerCartData:
        """Store a user's cart, replacing any previous version"""
        self.carts[user_id] = data
        logger.info(
            f"Stored cart for {user_id} from {data.metadata.device_id} "
            f"(version {data.metadata.sync_version}, {len(data.cart.items)} items)"
        )
        return data

    def delete_cart(self, user_id: str) -> bool:
        """Delete a user's cart"""
        if user_id in self.carts:
            del self.carts[user_id]
            return True
        return False

    def reset(self) -> None:
        self.carts.clear()


# Singleton instance
server_cart_db = ServerCartDatabase()
