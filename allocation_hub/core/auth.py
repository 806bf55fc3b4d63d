"""Authentication dependencies for FastAPI routes.

Routes depend on ``get_current_actor`` so that the acting identity is an
explicit argument of every service call.
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from allocation_hub.core.jwt import jwt_verifier
from allocation_hub.core.permissions import Actor
from allocation_hub.schemas.auth import CurrentUser
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> CurrentUser:
    """Get the current authenticated user from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if not credentials:
        LOGGER.warning("No authorization credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        claims = jwt_verifier.verify_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e

    user = CurrentUser(id=claims.sub, email=claims.email, role=claims.role, roles=claims.roles)
    LOGGER.debug(f"Authenticated user: {user.id} ({user.all_roles})")
    return user


async def get_current_actor(user: CurrentUser = Depends(get_current_user)) -> Actor:
    """Resolve the authenticated user into an actor with capabilities."""
    return Actor.from_user(user)
