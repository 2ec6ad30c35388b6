"""Token issuing routes for mock merchant"""

import logging

from fastapi import APIRouter, Depends

from ..core.config import Settings, get_settings
from ..models.auth import TokenRequest, TokenResponse
from ..security.bearer import create_access_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Auth"])


@router.post("/token", response_model=TokenResponse)
async def issue_token(
    request: TokenRequest,
    settings: Settings = Depends(get_settings),
):
    """
    Issue a bearer token for a user.

    The mock merchant trusts the caller; a real backend would check
    credentials here.
    """
    token, expires_at = create_access_token(request.user_id, request.email, settings)
    logger.info(f"Issued access token for {request.user_id}")
    return TokenResponse(access_token=token, expires_at=expires_at, user_id=request.user_id)
