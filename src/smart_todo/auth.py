"""Bearer-token authentication.

Tokens are issued by the external auth provider; this service only verifies
them. The user id is the token's ``sub`` claim.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from smart_todo.config import Settings, get_settings
from smart_todo.errors import Unauthorized


logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str, settings: Settings) -> dict[str, Any]:
    """Decode and validate a JWT.

    Raises:
        jwt.InvalidTokenError: If the token is malformed, expired, or signed
            with another key.
    """
    return jwt.decode(
        token,
        settings.auth_jwt_secret,
        algorithms=[settings.auth_jwt_algorithm],
        audience=settings.auth_jwt_audience or None,
        options={"require": ["sub", "exp"]},
    )


def create_access_token(
    user_id: str, settings: Settings, expires_in: timedelta | None = None
) -> str:
    """Issue a token the way the auth provider does. Used by tests and local tooling."""
    now = datetime.now(UTC)
    payload: dict[str, Any] = {
        "sub": user_id,
        "iat": now,
        "exp": now + (expires_in or timedelta(hours=1)),
    }
    if settings.auth_jwt_audience:
        payload["aud"] = settings.auth_jwt_audience
    return jwt.encode(payload, settings.auth_jwt_secret, algorithm=settings.auth_jwt_algorithm)


def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> str | None:
    """Resolve the caller's user id, or ``None`` when there is no valid session."""
    if credentials is None:
        return None
    try:
        payload = decode_token(credentials.credentials, settings)
    except jwt.InvalidTokenError as exc:
        logger.info("Rejected bearer token: %s", exc)
        return None
    user_id = payload.get("sub")
    return str(user_id) if user_id else None


def require_user_id(
    user_id: Annotated[str | None, Depends(get_current_user_id)],
) -> str:
    if user_id is None:
        raise Unauthorized()
    return user_id


CurrentUserId = Annotated[str, Depends(require_user_id)]
