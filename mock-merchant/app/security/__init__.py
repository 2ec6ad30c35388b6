# Bearer token authentication for the cart sync endpoint

from .bearer import BearerAuth, TokenClaims, create_access_token, require_user

__all__ = ["BearerAuth", "TokenClaims", "create_access_token", "require_user"]
