"""
Session endpoints.

- POST /v1/auth/sign-in: exchange an identity provider session JWT for an
  Umbrella session token (recovering the local user if its webhook was lost)
- GET  /v1/auth/session: validate the current session token
- POST /v1/auth/refresh: issue a new token with a fresh expiry
- POST /v1/auth/logout: drop the session record; always succeeds

Session tokens never carry the user's role.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from umbrella.api.schemas.identity import (
    UserResponse,
    SessionCheckResponse,
    SessionInfoResponse,
    TokenResponse,
    SignInResponse,
    LogoutResponse,
)
from umbrella.auth.middleware import (
    Authenticator,
    build_recovery_service,
    get_bearer_token,
    get_session_claims,
    require_auth,
)
from umbrella.auth.provider_verifier import ProviderVerificationError, get_provider_verifier
from umbrella.auth.session_cache import get_session_cache
from umbrella.auth.token_codec import EncodingError, get_token_codec
from umbrella.database.session import get_db_session, get_session_factory
from umbrella.models.user import User
from umbrella.platform.errors import AuthenticationFailed, ConfigurationError
from umbrella.repositories.identity_store import IdentityStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _issue_token(user: User):
    try:
        return get_token_codec().issue_for_user(user)
    except EncodingError as e:
        logger.error("Failed to issue session token", extra={"user_id": user.id, "error": e.message})
        raise ConfigurationError("Session token signing is not configured")


@router.post("/sign-in", response_model=SignInResponse)
def sign_in(
    token: Optional[str] = Depends(get_bearer_token),
    db: Session = Depends(get_db_session),
):
    """
    Exchange a provider session JWT for an Umbrella session token.

    The provider JWT's subject is the external provider user id. A user
    unknown locally is recovered from the provider API before the token is
    issued.
    """
    if not token:
        raise AuthenticationFailed()

    try:
        provider_claims = get_provider_verifier().verify_token(token)
    except ProviderVerificationError as e:
        if e.error_code == "config_error":
            logger.error("Provider token verification is not configured")
            raise ConfigurationError("Sign-in is not configured")
        logger.warning(
            "Provider token rejected at sign-in",
            extra={"error_code": e.error_code},
        )
        raise AuthenticationFailed()

    external_id = provider_claims["sub"]
    user = IdentityStore(db).find_by_external_provider_id(external_id)
    if user is None:
        user = build_recovery_service(db).recover(external_id)

    issued = _issue_token(user)
    get_session_cache().put(user)

    logger.info("User signed in", extra={"user_id": user.id})

    return SignInResponse(
        token=issued.token,
        expires_at=issued.expires_at,
        user=UserResponse.from_user(user),
    )


@router.get("/session", response_model=SessionCheckResponse)
def check_session(request: Request, user: User = Depends(require_auth)):
    """Validate the bearer session token and return the current user."""
    claims = get_session_claims(request)
    return SessionCheckResponse(
        user=UserResponse.from_user(user),
        valid=True,
        session=SessionInfoResponse(expires_at=claims.expires_at),
    )


@router.post("/refresh", response_model=TokenResponse)
def refresh_session(user: User = Depends(require_auth)):
    """Issue a new session token with a fresh expiry. 401 if the current one is invalid."""
    issued = _issue_token(user)
    get_session_cache().refresh(user)

    logger.info("Session refreshed", extra={"user_id": user.id})

    return TokenResponse(token=issued.token, expires_at=issued.expires_at)


@router.post("/logout", response_model=LogoutResponse)
def logout(token: Optional[str] = Depends(get_bearer_token)):
    """
    Drop the session record.

    Always 200: logging out a session that is invalid or already gone is
    not an error, and neither is a store or cache failure while looking it
    up. Issued tokens stay valid until they expire.
    """
    user_id = None
    db = None
    try:
        db = get_session_factory()()
        authenticator = Authenticator(
            db_session=db,
            codec=get_token_codec(),
            session_cache=get_session_cache(),
        )
        user_id = authenticator.authenticate(token).user.id
        get_session_cache().delete(user_id)
    except AuthenticationFailed:
        logger.info("Logout without a valid session")
    except Exception as e:
        logger.error(
            "Logout could not drop the session record",
            extra={"user_id": user_id, "error": str(e)},
        )
    finally:
        if db is not None:
            db.close()

    logger.info("User logged out", extra={"user_id": user_id})
    return LogoutResponse()
