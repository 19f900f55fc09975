"""
Database models for the identity service.
"""

from umbrella.models.base import TimestampMixin, generate_uuid, utcnow
from umbrella.models.user import User, UserRole, OAuthProvider

__all__ = [
    "TimestampMixin",
    "generate_uuid",
    "utcnow",
    "User",
    "UserRole",
    "OAuthProvider",
]
