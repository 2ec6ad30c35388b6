"""Auth API models for mock merchant"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class TokenRequest(BaseModel):
    """Request to issue an access token"""
    user_id: str = Field(min_length=1)
    email: Optional[str] = None


class TokenResponse(BaseModel):
    """Issued access token"""
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    user_id: str
