"""
Bearer Token Authentication

Issues and verifies HS256 access tokens for the cart sync endpoint.
Only the user named in a token's subject may read or write that
user's server cart.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class TokenClaims:
    """Verified token contents"""
    user_id: str
    email: Optional[str]
    expires_at: datetime


def create_access_token(
    user_id: str,
    email: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> tuple[str, datetime]:
    """
    Issue a signed access token for a user.

    Returns:
        Tuple of (token, expiry time)
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(minutes=settings.access_token_expire_minutes)

    payload = {
        "sub": user_id,
        "email": email,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
        "iss": settings.jwt_issuer,
    }

    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires


def decode_access_token(token: str, settings: Optional[Settings] = None) -> TokenClaims:
    """
    Verify a token and return its claims.

    Raises:
        jwt.InvalidTokenError: signature, expiry or issuer check failed
    """
    settings = settings or get_settings()
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
        options={"require": ["sub", "exp"]},
    )
    return TokenClaims(
        user_id=payload["sub"],
        email=payload.get("email"),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )


class BearerAuth:
    """
    FastAPI dependency for bearer token authentication.

    Rejects requests without a valid token (401). When match_path_user
    is set, the token subject must equal the {user_id} path parameter (403).
    """

    def __init__(self, match_path_user: bool = True):
        self.match_path_user = match_path_user

    async def __call__(
        self,
        request: Request,
        settings: Settings = Depends(get_settings),
    ) -> TokenClaims:
        authorization = request.headers.get("Authorization")
        if not authorization:
            raise HTTPException(
                status_code=401,
                detail="Missing bearer token",
                headers={"WWW-Authenticate": "Bearer"},
            )

        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise HTTPException(
                status_code=401,
                detail="Authorization header must use the Bearer scheme",
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            claims = decode_access_token(token, settings)
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise HTTPException(
                status_code=401,
                detail=f"Invalid token: {e}",
                headers={"WWW-Authenticate": "Bearer"},
            )

        if self.match_path_user:
            path_user = request.path_params.get("user_id")
            if path_user is not None and path_user != claims.user_id:
                logger.warning(f"User {claims.user_id} attempted to access cart of {path_user}")
                raise HTTPException(status_code=403, detail="Token does not grant access to this cart")

        return claims


# Dependency instance
require_user = BearerAuth(match_path_user=True)
