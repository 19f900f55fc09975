"""
Authentication for Umbrella session tokens.

Flow:
1. Request arrives with Authorization: Bearer <token>
2. Token verified by the TokenCodec (signature, expiry, claims)
3. Principal (the local User row) resolved:
   - session cache hit on the token's uid -> load by internal id
   - otherwise load by the token's external provider id (sub)
   - still missing -> webhook failure recovery from the identity provider
4. Principal and claims attached to request.state

Any failure is a 401 with a "please sign in again" message; the internal
reason is only logged.

Usage:
    from umbrella.auth.middleware import require_auth

    @router.get("/protected")
    def protected_route(user: User = Depends(require_auth)):
        return {"user_id": user.id}
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from umbrella.auth.session_cache import SessionCache, get_session_cache
from umbrella.auth.token_codec import TokenCodec, TokenError, SessionClaims, get_token_codec
from umbrella.config import get_settings
from umbrella.database.session import get_db_session
from umbrella.models.user import User
from umbrella.monitoring.alerts import get_alert_manager
from umbrella.monitoring.sync_counter import ManualSyncCounter
from umbrella.platform.errors import AuthenticationFailed, AuthorizationFailed
from umbrella.repositories.identity_store import IdentityStore
from umbrella.services.identity_provider_client import get_identity_provider_client
from umbrella.services.identity_recovery import IdentityRecoveryService
from umbrella.storage.kv import get_kv_store

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)


@dataclass
class AuthenticatedSession:
    """A verified token and the principal it resolved to."""
    user: User
    claims: SessionClaims


def _claims_match(user: User, claims: SessionClaims) -> bool:
    return claims.sub in (user.external_provider_id, user.id)


class Authenticator:
    """
    Verifies session tokens and resolves them to local users.

    The session cache only decides which lookup runs first; a cache miss
    or cache error never denies access.
    """

    def __init__(
        self,
        db_session: Session,
        codec: TokenCodec,
        session_cache: Optional[SessionCache] = None,
        recovery: Optional[IdentityRecoveryService] = None,
    ):
        self.store = IdentityStore(db_session)
        self.codec = codec
        self.session_cache = session_cache
        self.recovery = recovery

    def verify(self, token: Optional[str]) -> SessionClaims:
        """Verify a token, mapping every codec failure to AuthenticationFailed."""
        if not token:
            logger.info("Missing bearer token")
            raise AuthenticationFailed()
        try:
            return self.codec.verify(token)
        except TokenError as e:
            logger.warning(
                "Session token rejected",
                extra={"error_code": e.error_code, "reason": e.message},
            )
            raise AuthenticationFailed()

    def resolve_principal(self, claims: SessionClaims) -> User:
        """
        Find the local user for verified claims, recovering it if needed.

        Raises:
            AuthenticationFailed: no user can be resolved or recovered
        """
        if claims.uid and self.session_cache is not None:
            if self.session_cache.get(claims.uid) is not None:
                user = self.store.find_by_internal_id(claims.uid)
                if user is not None and _claims_match(user, claims):
                    return user

        user = self.store.find_by_external_provider_id(claims.sub)
        if user is not None:
            return user

        # Users without an external link carry their internal id as subject
        if claims.uid and claims.uid == claims.sub:
            user = self.store.find_by_internal_id(claims.uid)
            if user is not None:
                return user
            logger.warning("Unlinked user no longer exists", extra={"user_id": claims.uid})
            raise AuthenticationFailed()

        if self.recovery is None:
            logger.warning(
                "User not found and recovery unavailable",
                extra={"external_provider_id": claims.sub},
            )
            raise AuthenticationFailed()

        return self.recovery.recover(claims.sub)

    def authenticate(self, token: Optional[str]) -> AuthenticatedSession:
        claims = self.verify(token)
        user = self.resolve_principal(claims)
        return AuthenticatedSession(user=user, claims=claims)


# =============================================================================
# FastAPI Dependencies
# =============================================================================


def build_recovery_service(db: Session) -> IdentityRecoveryService:
    """Recovery service wired to the process-wide collaborators."""
    settings = get_settings()
    return IdentityRecoveryService(
        session=db,
        provider_client=get_identity_provider_client(),
        sync_counter=ManualSyncCounter(get_kv_store()),
        alert_manager=get_alert_manager(),
        alert_threshold=settings.manual_sync_alert_threshold,
    )


def get_authenticator(db: Session = Depends(get_db_session)) -> Authenticator:
    """FastAPI dependency building an Authenticator for this request."""
    return Authenticator(
        db_session=db,
        codec=get_token_codec(),
        session_cache=get_session_cache(),
        recovery=build_recovery_service(db),
    )


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    if credentials is None:
        return None
    return credentials.credentials


def require_auth(
    request: Request,
    token: Optional[str] = Depends(get_bearer_token),
    authenticator: Authenticator = Depends(get_authenticator),
) -> User:
    """
    FastAPI dependency that requires a valid session token.

    Raises AuthenticationFailed (401) on any failure. On success the
    principal is available as request.state.principal.
    """
    session = authenticator.authenticate(token)
    request.state.principal = session.user
    request.state.session_claims = session.claims
    return session.user


def get_current_user(request: Request) -> Optional[User]:
    """Principal attached by require_auth, or None."""
    return getattr(request.state, "principal", None)


def get_session_claims(request: Request) -> Optional[SessionClaims]:
    """Claims attached by require_auth, or None."""
    return getattr(request.state, "session_claims", None)


def require_onboarding(user: User = Depends(require_auth)) -> User:
    """
    FastAPI dependency that requires a user who finished onboarding.

    Raises AuthorizationFailed (403, onboarding_incomplete) otherwise.
    """
    if not user.onboarding_complete:
        raise AuthorizationFailed(
            "Please complete onboarding to access this resource.",
            error_code="onboarding_incomplete",
        )
    return user
