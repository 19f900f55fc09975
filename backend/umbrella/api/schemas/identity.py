"""
Request/response models for the session and account endpoints.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from umbrella.models.user import User, UserRole


class UserResponse(BaseModel):
    """Public view of a user. Never includes provider ids."""
    id: str
    email: Optional[str] = None
    oauth_provider: Optional[str] = None
    role: Optional[str] = None
    onboarding_complete: bool = False
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.to_public_dict())


class SessionInfoResponse(BaseModel):
    expires_at: datetime


class SessionCheckResponse(BaseModel):
    """GET /v1/auth/session."""
    user: UserResponse
    valid: bool = True
    session: SessionInfoResponse


class TokenResponse(BaseModel):
    """Freshly issued session token."""
    token: str
    expires_at: datetime


class SignInResponse(TokenResponse):
    user: UserResponse


class LogoutResponse(BaseModel):
    success: bool = True
    message: str = "Logged out successfully"


class SelectRoleRequest(BaseModel):
    """PUT /v1/account/role. Only the fixed role enumeration is accepted."""

    role: UserRole = Field(..., description="artist, venue, fan or collective")
