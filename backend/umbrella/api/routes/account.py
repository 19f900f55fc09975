"""
Account endpoints: current user, role selection and onboarding.

Role changes take effect on the next request with the same token, because
authorization always reads the role from the database.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from umbrella.api.schemas.identity import UserResponse, SelectRoleRequest
from umbrella.auth.middleware import require_auth
from umbrella.database.session import get_db_session
from umbrella.models.user import User
from umbrella.platform.errors import ValidationError
from umbrella.repositories.identity_store import IdentityStore, UserUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/account", tags=["account"])


@router.get("/me", response_model=UserResponse)
def get_me(user: User = Depends(require_auth)):
    return UserResponse.from_user(user)


@router.put("/role", response_model=UserResponse)
def select_role(
    body: SelectRoleRequest,
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session),
):
    """Set the user's marketplace role."""
    updated = IdentityStore(db).update(user.id, UserUpdate(role=body.role))

    logger.info(
        "User role selected",
        extra={"user_id": user.id, "role": body.role.value},
    )
    return UserResponse.from_user(updated)


@router.post("/onboarding/complete", response_model=UserResponse)
def complete_onboarding(
    user: User = Depends(require_auth),
    db: Session = Depends(get_db_session),
):
    """Mark onboarding done. A role must be chosen first."""
    if user.role is None:
        raise ValidationError(
            "Choose a role before completing onboarding",
            error_code="role_required",
        )

    updated = IdentityStore(db).update(user.id, UserUpdate(onboarding_complete=True))

    logger.info("Onboarding completed", extra={"user_id": user.id})
    return UserResponse.from_user(updated)
