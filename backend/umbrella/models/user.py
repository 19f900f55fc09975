"""
User model for the Umbrella marketplace.

User is the canonical local identity record. Sign-in itself happens at the
external identity provider; this row links the provider's account to a local
id and holds the authorization data (role, onboarding state) that the
provider does not know about.

CRITICAL SECURITY:
- NO PASSWORDS are stored locally - the identity provider handles sign-in
- (oauth_provider, oauth_subject_id) is unique across all users
- id is immutable and never reused
- role is never copied into session tokens; it is re-read on every request

Rows are created by the identity webhook (authoritative path) or by webhook
failure recovery (fallback path), never by the auth middleware.
"""

import enum
from typing import Optional

from sqlalchemy import Column, String, Boolean, Enum, UniqueConstraint

from umbrella.db_base import Base
from umbrella.models.base import TimestampMixin, generate_uuid


class UserRole(str, enum.Enum):
    """Marketplace roles. A null role means the user has not chosen one yet."""
    ARTIST = "artist"
    VENUE = "venue"
    FAN = "fan"
    COLLECTIVE = "collective"


class OAuthProvider(str, enum.Enum):
    """OAuth providers a user can sign in with."""
    GOOGLE = "google"
    APPLE = "apple"


DEFAULT_OAUTH_PROVIDER = OAuthProvider.GOOGLE


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class User(Base, TimestampMixin):
    """
    Local user record linked to an external identity provider account.

    Key concepts:
    - id is the internal UUID used everywhere in the application
    - external_provider_id is the provider's own user id (nullable until the
      first successful link)
    - oauth_provider + oauth_subject_id identify the OAuth account
    - role is None until the user picks one during onboarding
    """

    __tablename__ = "users"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key"
    )

    external_provider_id = Column(
        String(255),
        nullable=True,
        unique=True,
        index=True,
        comment="Identity provider user ID (e.g. user_2abc...)"
    )

    oauth_provider = Column(
        Enum(
            OAuthProvider,
            name="oauth_provider",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=False,
        comment="OAuth provider the account signs in with"
    )

    oauth_subject_id = Column(
        String(255),
        nullable=False,
        comment="Subject id of the OAuth account at its provider"
    )

    email = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Primary email address (from identity provider)"
    )

    role = Column(
        Enum(
            UserRole,
            name="user_role",
            values_callable=_enum_values,
            create_constraint=True,
        ),
        nullable=True,
        comment="Marketplace role; NULL means not yet chosen"
    )

    onboarding_complete = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Whether the user finished onboarding"
    )

    __table_args__ = (
        UniqueConstraint(
            "oauth_provider", "oauth_subject_id", name="uq_users_oauth_identity"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<User(id={self.id}, external_provider_id={self.external_provider_id}, "
            f"provider={self.oauth_provider}, email={self.email})>"
        )

    @property
    def oauth_key(self) -> str:
        """Composite OAuth key, e.g. 'google:1093...'."""
        return generate_oauth_key(self.oauth_provider, self.oauth_subject_id)

    @property
    def role_value(self) -> Optional[str]:
        """Role as a plain string, or None when not chosen."""
        return self.role.value if self.role else None

    @property
    def token_subject(self) -> str:
        """Subject for session tokens: the provider id when linked, else the local id."""
        return self.external_provider_id or self.id

    def has_role(self, *roles: UserRole) -> bool:
        """Check whether the user currently holds one of the given roles."""
        return self.role is not None and self.role in roles

    def to_public_dict(self) -> dict:
        """Fields safe to return to clients."""
        return {
            "id": self.id,
            "email": self.email,
            "oauth_provider": self.oauth_provider.value if self.oauth_provider else None,
            "role": self.role_value,
            "onboarding_complete": bool(self.onboarding_complete),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


def generate_oauth_key(provider: OAuthProvider, subject_id: str) -> str:
    """Generate composite OAuth key for uniqueness checks and logging."""
    value = provider.value if isinstance(provider, OAuthProvider) else str(provider)
    return f"{value}:{subject_id}"
