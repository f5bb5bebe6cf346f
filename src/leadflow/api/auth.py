"""Application-user resolution for token-management routes.

Provides:
- decode_user_id(): Validates an HS256 JWT and returns its user id claim
- resolve_app_user_id(): Bearer JWT first, explicit userId as fallback
"""

from __future__ import annotations

import jwt
from fastapi import Request

from leadflow.errors import AuthenticationError, ValidationError
from leadflow.observability.logging import get_logger

logger = get_logger(__name__)


def decode_user_id(token: str, secret: str) -> str:
    """Verify JWT and return the user id claim (``id``, else ``sub``).

    Raises:
        AuthenticationError: If the token is invalid, expired or has no id.
    """
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token") from None

    user_id = payload.get("id") or payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return str(user_id)


def _extract_bearer_token(request: Request) -> str | None:
    """Bearer token from the Authorization header, None when absent.

    Raises:
        AuthenticationError: If the header is present but malformed.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        return None

    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AuthenticationError("Invalid authorization header")
    return parts[1]


def resolve_app_user_id(request: Request, fallback: str | None = None) -> str:
    """Resolve the application user for this request.

    A bearer JWT wins when JWT_SECRET is configured; otherwise the userId
    supplied in the body or query string is used.

    Raises:
        AuthenticationError: Bearer token present but invalid.
        ValidationError: No user could be resolved.
    """
    secret = request.app.state.services.settings.jwt_secret
    token = _extract_bearer_token(request)

    if token and secret:
        return decode_user_id(token, secret)
    if token and not secret:
        logger.debug("bearer token ignored, JWT_SECRET not configured")

    if fallback:
        return fallback
    raise ValidationError(
        "User ID is required. Please authenticate or provide userId in request body."
    )
