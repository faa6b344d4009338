"""
Auth boundary.

Token issuance lives with the external identity provider; this module only
resolves the caller's user id from a verified HS256 bearer token (``sub``
claim), or from the X-User-Id header when header auth is allowed (local
development and tests).
"""
import logging
from typing import Optional

import jwt
from fastapi import Header, Request

from streakline.core.errors import UnauthorizedError

logger = logging.getLogger("streakline.auth")


def verify_token(token: str, secret: str) -> str:
    """
    Verify a bearer JWT and extract user_id.

    Raises:
        UnauthorizedError: Invalid, expired, or subject-less token
    """
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug("Invalid token", extra={"error": str(e)})
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header (when JWT_SECRET is configured)
    2. X-User-Id header (when ALLOW_HEADER_AUTH is on)
    3. Raise 401 Unauthorized
    """
    cfg = request.app.state.settings

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer ") and cfg.JWT_SECRET:
        return verify_token(auth_header[7:], cfg.JWT_SECRET)

    if x_user_id and cfg.ALLOW_HEADER_AUTH:
        return x_user_id

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")
