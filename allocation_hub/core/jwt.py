"""Bearer token verification with PyJWT.

Tokens are issued elsewhere; this service only verifies them and reads the
identity and roles they carry.
"""

import jwt

from allocation_hub.core.config import settings
from allocation_hub.schemas.auth import JWTClaims
from allocation_hub.utils.logging import get_logger

LOGGER = get_logger(__name__)


class JWTVerifier:
    """Verifies signed access tokens against the configured secret."""

    def __init__(self, secret: str, algorithm: str = "HS256", issuer: str = "", audience: str = ""):
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    def verify_token(self, token: str) -> JWTClaims:
        """Verify and decode a token.

        Raises:
            jwt.InvalidTokenError: If the token is malformed, expired or
                signed with another key
        """
        options = {
            "verify_exp": True,
            "verify_iss": bool(self.issuer),
            "verify_aud": bool(self.audience),
            "require": ["sub", "exp"],
        }
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer or None,
                audience=self.audience or None,
                options=options,
            )
        except jwt.ExpiredSignatureError as e:
            LOGGER.warning(f"Token expired: {e}")
            raise jwt.InvalidTokenError("Token has expired") from e
        except jwt.InvalidTokenError as e:
            LOGGER.warning(f"Invalid token: {e}")
            raise

        roles = payload.get("roles") or (payload.get("app_metadata") or {}).get("roles") or []
        if isinstance(roles, str):
            roles = [roles]
        payload["roles"] = list(roles)

        claims = JWTClaims(**payload)
        LOGGER.debug(f"Successfully verified token for user: {claims.sub}")
        return claims


jwt_verifier = JWTVerifier(
    secret=settings.auth.jwt_secret,
    algorithm=settings.auth.jwt_algorithm,
    issuer=settings.auth.jwt_issuer,
    audience=settings.auth.jwt_audience,
)
