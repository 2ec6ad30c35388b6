"""Server cart API models for mock merchant"""

from typing import Optional

from pydantic import BaseModel


class CartDeletedResponse(BaseModel):
    """Response after removing a server cart"""
    user_id: str
    deleted: bool
    message: Optional[str] = None
