"""
API schemas package.

Contains Pydantic models for request/response validation.
"""

from umbrella.api.schemas.identity import (
    UserResponse,
    SessionInfoResponse,
    SessionCheckResponse,
    TokenResponse,
    SignInResponse,
    LogoutResponse,
    SelectRoleRequest,
)

__all__ = [
    "UserResponse",
    "SessionInfoResponse",
    "SessionCheckResponse",
    "TokenResponse",
    "SignInResponse",
    "LogoutResponse",
    "SelectRoleRequest",
]
