"""
Session token codec for Umbrella-issued tokens.

Umbrella issues its own short-lived session tokens after a user signs in at
the identity provider. Tokens are HS256 JWTs signed with
SESSION_TOKEN_SECRET.

Claims:
- sub: external provider user id (or the internal id for unlinked users)
- email: primary email at issue time (may be null)
- provider: OAuth provider of the linked account ("google" | "apple")
- provider_subject_id: subject id at that provider
- iat / exp: issue and expiry timestamps (Unix seconds)
- uid: internal user id, optional lookup accelerator

SECURITY:
- Tokens NEVER carry the user's role. Authorization re-reads the role from
  the database on every request, so role changes apply immediately.
- Token material is never logged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Optional, Dict, Any, Mapping, Union

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidSignatureError,
    InvalidTokenError,
    MissingRequiredClaimError,
)
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from umbrella.config import get_settings
from umbrella.models.user import User, DEFAULT_OAUTH_PROVIDER

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["sub", "email", "provider", "provider_subject_id", "iat", "exp"]

# PyJWT treats a null claim as missing; email may be null, so SessionClaims
# checks its presence instead.
JWT_REQUIRED_CLAIMS = [c for c in REQUIRED_CLAIMS if c != "email"]


class TokenError(Exception):
    """Base exception for session token failures."""

    error_code = "token_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EncodingError(TokenError):
    """Token could not be issued (no signing key or bad claims)."""
    error_code = "encoding_error"


class TokenExpired(TokenError):
    error_code = "token_expired"


class TokenMalformed(TokenError):
    error_code = "token_malformed"


class SignatureInvalid(TokenError):
    error_code = "signature_invalid"


class SessionClaims(BaseModel):
    """Validated claims of an Umbrella session token."""

    model_config = ConfigDict(extra="ignore")

    sub: str = Field(..., description="External provider user id, or internal id when unlinked")
    email: Optional[str] = Field(..., description="Primary email at issue time")
    provider: str = Field(..., description="OAuth provider of the linked account")
    provider_subject_id: str = Field(..., description="Subject id at the OAuth provider")
    iat: int = Field(..., description="Issued at timestamp (Unix)")
    exp: int = Field(..., description="Expiration timestamp (Unix)")
    uid: Optional[str] = Field(None, description="Internal user id (lookup accelerator)")

    @field_validator("sub", "provider", "provider_subject_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)

    def to_payload(self) -> Dict[str, Any]:
        payload = self.model_dump()
        if payload.get("uid") is None:
            payload.pop("uid", None)
        return payload


@dataclass
class IssuedToken:
    """A freshly signed token and its expiry."""
    token: str
    claims: SessionClaims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


class TokenCodec:
    """
    Issues and verifies Umbrella session tokens.

    verify() is pure: no I/O, no logging of token contents, no side effects
    beyond raising.

    Usage:
        codec = TokenCodec(secret="...")
        issued = codec.issue_for_user(user)
        claims = codec.verify(issued.token)
    """

    def __init__(self, secret: Optional[str], ttl_seconds: int = 7 * 24 * 60 * 60):
        self._secret = secret
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def issue(self, claims: Union[SessionClaims, Mapping[str, Any]]) -> str:
        """
        Sign claims into a token.

        Raises:
            EncodingError: signing key missing, or a required claim is
                missing or malformed
        """
        if not self._secret:
            raise EncodingError("Session signing key is not configured")

        if not isinstance(claims, SessionClaims):
            missing = [c for c in REQUIRED_CLAIMS if c not in claims]
            if missing:
                raise EncodingError(f"Missing required claims: {missing}")
            try:
                claims = SessionClaims.model_validate(dict(claims))
            except ValidationError as e:
                raise EncodingError(f"Malformed claims: {e.error_count()} invalid field(s)")

        return jwt.encode(claims.to_payload(), self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> SessionClaims:
        """
        Verify a token and return its claims.

        Raises:
            TokenExpired: now >= exp
            TokenMalformed: not a three-segment JWT, undecodable, or missing
                required claims
            SignatureInvalid: HMAC does not match
            EncodingError: no key to verify with
        """
        if not self._secret:
            raise EncodingError("Session signing key is not configured")
        if not token:
            raise TokenMalformed("Token is required")

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "require": JWT_REQUIRED_CLAIMS,
                },
            )
        except ExpiredSignatureError:
            raise TokenExpired("Token has expired")
        except InvalidSignatureError:
            raise SignatureInvalid("Token signature does not match")
        except MissingRequiredClaimError as e:
            raise TokenMalformed(f"Missing required claim: {e.claim}")
        except DecodeError:
            raise TokenMalformed("Token could not be decoded")
        except InvalidTokenError as e:
            raise TokenMalformed(f"Invalid token: {type(e).__name__}")

        try:
            return SessionClaims.model_validate(payload)
        except ValidationError as e:
            raise TokenMalformed(f"Malformed claims: {e.error_count()} invalid field(s)")

    def build_claims(
        self,
        user: User,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SessionClaims:
        """Build claims for a user. Role is deliberately absent."""
        issued_at = int((now or datetime.now(timezone.utc)).timestamp())
        ttl = self._ttl_seconds if ttl_seconds is None else ttl_seconds
        provider = user.oauth_provider or DEFAULT_OAUTH_PROVIDER
        return SessionClaims(
            sub=user.token_subject,
            email=user.email,
            provider=provider.value,
            provider_subject_id=user.oauth_subject_id,
            iat=issued_at,
            exp=issued_at + ttl,
            uid=user.id,
        )

    def issue_for_user(
        self,
        user: User,
        ttl_seconds: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> IssuedToken:
        """Issue a session token for a user (sign-in and refresh)."""
        claims = self.build_claims(user, ttl_seconds=ttl_seconds, now=now)
        return IssuedToken(token=self.issue(claims), claims=claims)


# Singleton codec instance
_codec_instance: Optional[TokenCodec] = None
_codec_lock = Lock()


def get_token_codec() -> TokenCodec:
    """Get the TokenCodec configured from the environment."""
    global _codec_instance

    with _codec_lock:
        if _codec_instance is None:
            settings = get_settings()
            if not settings.session_token_secret:
                logger.error("SESSION_TOKEN_SECRET not configured")
            _codec_instance = TokenCodec(
                secret=settings.session_token_secret,
                ttl_seconds=settings.session_ttl_seconds,
            )
        return _codec_instance


def reset_token_codec() -> None:
    """Drop the codec singleton (tests)."""
    global _codec_instance

    with _codec_lock:
        _codec_instance = None
