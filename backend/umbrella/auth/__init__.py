"""
Authentication module for Umbrella session tokens.

This module provides:
- Session token issue/verify (TokenCodec)
- Session records in the key-value store (SessionCache)
- Authentication and role dependencies for FastAPI (see middleware and
  role_middleware; imported from their modules to keep this package light)

SECURITY NOTES:
- Sign-in happens at the external identity provider
- Umbrella tokens never carry the user's role
- The users table is the source of truth; the session cache is advisory
"""

from umbrella.auth.token_codec import (
    TokenCodec,
    SessionClaims,
    TokenError,
    EncodingError,
    TokenExpired,
    TokenMalformed,
    SignatureInvalid,
)
from umbrella.auth.session_cache import SessionCache, SessionRecord

__all__ = [
    # Token codec
    "TokenCodec",
    "SessionClaims",
    "TokenError",
    "EncodingError",
    "TokenExpired",
    "TokenMalformed",
    "SignatureInvalid",
    # Session cache
    "SessionCache",
    "SessionRecord",
]
