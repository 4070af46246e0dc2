"""
Auth utilities for the entitlement API.

Validates HS256 bearer tokens issued by the hosted auth provider and
extracts user_id from the `sub` claim. Falls back to the X-User-Id header
for tests and internal callers.
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from legalinsight.core.config import settings
import jwt
import logging

logger = logging.getLogger("legalinsight.auth")


def verify_jwt(token: str) -> Optional[dict]:
    """
    Verify a bearer token and return its claims.

    Returns None when no JWT_SECRET is configured (token auth disabled).

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.JWT_SECRET:
        logger.debug("No JWT_SECRET configured, skipping JWT validation")
        return None

    options = {"verify_signature": True, "verify_exp": True}
    if not settings.JWT_AUDIENCE:
        options["verify_aud"] = False

    try:
        claims = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE or None,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Token has no subject")
    return claims


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Internal/test caller user ID")
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header
    3. Raise 401 Unauthorized

    After successful auth the user row is upserted (email taken from the
    token when present) so purchases can be matched by email later.
    """
    from legalinsight.features.users.service import get_or_create_user

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_jwt(auth_header[7:])
        if claims:
            user_id = claims["sub"]
            get_or_create_user(user_id, email=claims.get("email"))
            request.state.user_id = user_id
            return user_id

    if x_user_id:
        get_or_create_user(x_user_id)
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )


def verify_admin_key(x_admin_key: Optional[str] = Header(None)) -> str:
    """Gate for admin endpoints: X-Admin-Key must match ADMIN_KEY."""
    admin_key = settings.ADMIN_KEY
    if not admin_key or not x_admin_key or x_admin_key != admin_key:
        logger.warning(f"[admin] invalid admin key attempt: {x_admin_key[:4] if x_admin_key else 'none'}...")
        raise HTTPException(status_code=403, detail="Invalid or missing X-Admin-Key header")
    return x_admin_key
