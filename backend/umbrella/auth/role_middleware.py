"""
Role-based authorization for marketplace roles.

Runs after authentication and reads the principal it attached to
request.state. The role comes from the user row loaded for this request,
never from the token, so a role change applies to the very next request.

Usage:
    @router.post(
        "/events",
        dependencies=[Depends(require_auth), Depends(require_role(UserRole.VENUE))],
    )
    def create_event(...):
        ...
"""

import logging
from typing import Union, List

from fastapi import Request

from umbrella.models.user import User, UserRole
from umbrella.platform.errors import AuthenticationFailed, AuthorizationFailed

logger = logging.getLogger(__name__)


def _normalize_roles(roles) -> List[UserRole]:
    return [r if isinstance(r, UserRole) else UserRole(str(r).lower()) for r in roles]


def check_role(user: User, allowed: List[UserRole]) -> None:
    """
    Raise AuthorizationFailed unless the user holds one of the allowed roles.

    A user with no role chosen yet never passes.
    """
    if user.role is not None and user.role in allowed:
        return

    required = [r.value for r in allowed]
    logger.info(
        "Role check denied",
        extra={"user_id": user.id, "user_role": user.role_value, "required_roles": required},
    )
    raise AuthorizationFailed(
        f"This action requires one of these roles: {', '.join(required)}",
        details={"user_role": user.role_value, "required_roles": required},
        error_code="insufficient_role",
    )


def require_role(*roles: Union[UserRole, str]):
    """
    Create a dependency that requires one of the given roles.

    Must be declared after require_auth. A missing principal means the
    dependencies were wired in the wrong order and is reported as 401.
    """
    if not roles:
        raise ValueError("require_role needs at least one role")
    allowed = _normalize_roles(roles)

    def dependency(request: Request) -> User:
        user = getattr(request.state, "principal", None)
        if user is None:
            logger.error(
                "Role check ran without an authenticated principal",
                extra={"path": request.url.path},
            )
            raise AuthenticationFailed()
        check_role(user, allowed)
        return user

    return dependency
