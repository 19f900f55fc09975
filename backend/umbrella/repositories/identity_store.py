"""
Identity store: single-row persistence operations for User records.

Each operation runs and commits its own single-row transaction. Concurrent
creators of the same identity (webhook delivery and recovery racing each
other) converge through the database unique constraints: the loser gets
DuplicateIdentity and re-reads the winner's row via create_or_get(). There
is no check-then-insert anywhere.
"""

import logging
from typing import Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from umbrella.models.base import generate_uuid, utcnow
from umbrella.models.user import User, UserRole, OAuthProvider
from umbrella.platform.errors import DuplicateIdentity, IdentityConflict, NotFound

logger = logging.getLogger(__name__)


class UserCreate(BaseModel):
    """Input for creating a user."""

    id: Optional[str] = Field(None, description="Internal id; generated when omitted")
    external_provider_id: Optional[str] = None
    oauth_provider: OAuthProvider
    oauth_subject_id: str = Field(..., min_length=1)
    email: Optional[str] = None
    role: Optional[UserRole] = None
    onboarding_complete: bool = False


class UserUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    external_provider_id: Optional[str] = None
    email: Optional[str] = None
    role: Optional[UserRole] = None
    onboarding_complete: Optional[bool] = None


class IdentityStore:
    """
    Repository for User rows.

    Usage:
        store = IdentityStore(db_session)
        user = store.find_by_external_provider_id("user_2abc")
        user, created = store.create_or_get(UserCreate(...))
    """

    def __init__(self, db_session: Session):
        self.db_session = db_session

    def find_by_provider_identity(
        self, provider: OAuthProvider, subject_id: str
    ) -> Optional[User]:
        return (
            self.db_session.query(User)
            .filter(User.oauth_provider == provider, User.oauth_subject_id == subject_id)
            .first()
        )

    def find_by_internal_id(self, user_id: str) -> Optional[User]:
        return self.db_session.query(User).filter(User.id == user_id).first()

    def find_by_external_provider_id(self, external_id: str) -> Optional[User]:
        """Look up by the provider's own user id (webhook and recovery paths)."""
        if not external_id:
            return None
        return (
            self.db_session.query(User)
            .filter(User.external_provider_id == external_id)
            .first()
        )

    def count_by_provider_identity(self, provider: OAuthProvider, subject_id: str) -> int:
        return (
            self.db_session.query(User)
            .filter(User.oauth_provider == provider, User.oauth_subject_id == subject_id)
            .count()
        )

    def create(self, data: UserCreate) -> User:
        """
        Insert a new user.

        Raises:
            DuplicateIdentity: (oauth_provider, oauth_subject_id) or
                external_provider_id already exists. The transaction has
                been rolled back; callers re-read instead of failing.
        """
        user = User(
            id=data.id or generate_uuid(),
            external_provider_id=data.external_provider_id,
            oauth_provider=data.oauth_provider,
            oauth_subject_id=data.oauth_subject_id,
            email=data.email,
            role=data.role,
            onboarding_complete=data.onboarding_complete,
        )
        self.db_session.add(user)
        try:
            self.db_session.commit()
        except IntegrityError as e:
            self.db_session.rollback()
            logger.info(
                "User insert hit unique constraint",
                extra={
                    "external_provider_id": data.external_provider_id,
                    "oauth_provider": data.oauth_provider.value,
                    "error": str(e.orig),
                },
            )
            raise DuplicateIdentity(
                "User with this identity already exists",
                details={"external_provider_id": data.external_provider_id},
            )

        self.db_session.refresh(user)
        logger.info(
            "Created user",
            extra={
                "user_id": user.id,
                "external_provider_id": user.external_provider_id,
                "oauth_provider": data.oauth_provider.value,
            },
        )
        return user

    def update(self, user_id: str, patch: UserUpdate) -> User:
        """
        Apply a partial update and bump updated_at.

        Raises:
            NotFound: no user with this id
        """
        user = self.find_by_internal_id(user_id)
        if user is None:
            raise NotFound(f"User {user_id} not found", error_code="user_not_found")

        for field_name, value in patch.model_dump(exclude_unset=True).items():
            setattr(user, field_name, value)
        user.updated_at = utcnow()

        try:
            self.db_session.commit()
        except IntegrityError:
            self.db_session.rollback()
            raise DuplicateIdentity(
                "Update conflicts with an existing identity",
                details={"user_id": user_id},
            )

        self.db_session.refresh(user)
        return user

    def delete(self, external_id: str) -> bool:
        """
        Delete by external provider id. Idempotent.

        Returns:
            True if a row was removed, False if none existed
        """
        user = self.find_by_external_provider_id(external_id)
        if user is None:
            return False

        self.db_session.delete(user)
        self.db_session.commit()
        logger.info(
            "Deleted user",
            extra={"user_id": user.id, "external_provider_id": external_id},
        )
        return True

    def create_or_get(self, data: UserCreate) -> Tuple[User, bool]:
        """
        Insert, or converge on the row a concurrent creator already wrote.

        On DuplicateIdentity the existing row is re-read by external id,
        then by (provider, subject). A matching row that has no external id
        yet gets linked to this one.

        Returns:
            (user, created) where created is False when the row already existed

        Raises:
            IdentityConflict: the pair belongs to a user with another external id
        """
        try:
            return self.create(data), True
        except DuplicateIdentity:
            existing = None
            if data.external_provider_id:
                existing = self.find_by_external_provider_id(data.external_provider_id)
            if existing is None:
                existing = self.find_by_provider_identity(
                    data.oauth_provider, data.oauth_subject_id
                )
            if existing is None:
                # Conflicting row vanished between insert and re-read
                raise

            if (
                existing.external_provider_id is not None
                and existing.external_provider_id != data.external_provider_id
            ):
                logger.error(
                    "Provider identity already linked to another external id",
                    extra={
                        "user_id": existing.id,
                        "oauth_provider": data.oauth_provider.value,
                        "external_provider_id": data.external_provider_id,
                        "linked_external_provider_id": existing.external_provider_id,
                    },
                )
                raise IdentityConflict(
                    "Provider identity is linked to a different user",
                    details={"oauth_provider": data.oauth_provider.value},
                )

            if existing.external_provider_id is None and data.external_provider_id:
                existing = self.update(
                    existing.id,
                    UserUpdate(external_provider_id=data.external_provider_id),
                )
                logger.info(
                    "Linked existing user to external identity",
                    extra={
                        "user_id": existing.id,
                        "external_provider_id": data.external_provider_id,
                    },
                )

            return existing, False
