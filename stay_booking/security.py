"""Bearer-token authentication. Tokens are issued by the external auth service."""

from typing import Optional
from uuid import UUID

import jwt
import structlog
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .errors import AuthenticationError
from .models import UserRole
from .schemas import CurrentUser

logger = structlog.get_logger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str) -> CurrentUser:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid access token", error=str(e))
        raise AuthenticationError("Invalid token")

    try:
        return CurrentUser(
            id=UUID(str(payload["sub"])),
            role=UserRole(payload.get("role", UserRole.GUEST.value)),
        )
    except ValueError:
        raise AuthenticationError("Invalid token claims")


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> CurrentUser:
    """Current authenticated user dependency."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError()
    return decode_access_token(credentials.credentials)
