############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# auth.py: Clerk session token authentication
#
############################################################

"""API authentication.

Requests carry a Clerk session JWT as ``Authorization: Bearer <token>``.
The token is verified against Clerk's JWKS and its ``sub`` claim is the
user ID the rest of the application trusts.
"""

import asyncio
from functools import lru_cache
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import PyJWKClient

from warpengine.app.logging_config import bind_request_context, get_logger
from warpengine.app.settings import Settings, get_settings

logger = get_logger(__name__)

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


class ClerkTokenVerifier:
    """Verifies Clerk session tokens using the instance's JWKS."""

    def __init__(self, settings: Settings):
        self._issuer = settings.clerk_issuer
        jwks_url = settings.clerk_jwks_url
        if not jwks_url and self._issuer:
            jwks_url = self._issuer.rstrip("/") + "/.well-known/jwks.json"
        self._jwks_url = jwks_url
        self._jwks_client: Optional[PyJWKClient] = None

    @property
    def configured(self) -> bool:
        return bool(self._jwks_url)

    def _get_jwks_client(self) -> PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(self._jwks_url, cache_keys=True)
        return self._jwks_client

    def decode(self, token: str) -> Dict[str, Any]:
        """Verify the token and return its claims (blocking: fetches JWKS)."""
        signing_key = self._get_jwks_client().get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=["RS256"],
            issuer=self._issuer,
            options={"verify_aud": False, "require": ["exp", "sub"]},
        )


@lru_cache
def get_token_verifier() -> ClerkTokenVerifier:
    """Get cached token verifier."""
    return ClerkTokenVerifier(get_settings())


async def get_current_user_id(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    verifier: ClerkTokenVerifier = Depends(get_token_verifier),
) -> str:
    """
    Authenticate a request and return the caller's user ID.

    Raises:
        HTTPException: 401 for a missing or invalid token, 503 when
            authentication is not configured
    """
    if not credentials or not credentials.credentials:
        logger.warning("missing_session_token", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing session token. Provide via 'Authorization: Bearer <token>'",
        )

    if not verifier.configured:
        logger.error("clerk_jwks_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication is not configured",
        )

    try:
        claims = await asyncio.to_thread(verifier.decode, credentials.credentials)
    except jwt.PyJWTError as e:
        logger.warning("invalid_session_token", path=request.url.path, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid session token",
        )

    user_id = claims["sub"]
    bind_request_context(user_id=user_id)
    return user_id
