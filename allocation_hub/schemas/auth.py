"""Authentication schemas for bearer tokens."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class JWTClaims(BaseModel):
    """Claims extracted from a verified access token."""

    sub: str = Field(..., description="Subject (user ID)")
    email: Optional[str] = Field(None, description="User email")
    role: str = Field(default="member", description="Primary role")
    roles: List[str] = Field(default_factory=list, description="Additional roles")
    exp: int = Field(..., description="Expiration timestamp")
    iat: Optional[int] = Field(None, description="Issued at timestamp")
    iss: Optional[str] = Field(None, description="Token issuer")
    aud: Optional[str] = Field(None, description="Audience")
    app_metadata: Optional[Dict[str, Any]] = Field(None, description="Application metadata")


class CurrentUser(BaseModel):
    """Current authenticated user information."""

    id: str = Field(..., description="User ID")
    email: Optional[str] = Field(None, description="User email")
    role: str = Field(default="member", description="Primary role")
    roles: List[str] = Field(default_factory=list, description="Additional roles")

    @property
    def all_roles(self) -> List[str]:
        return [r for r in [self.role, *self.roles] if r]


__all__ = [
    "JWTClaims",
    "CurrentUser",
]
