"""
Verifier for identity provider session JWTs.

Used only by the sign-in exchange: the client presents the session JWT it
got from the identity provider, and Umbrella answers with its own session
token. Provider JWTs are RS256 and verified against the provider's JWKS.

Provider JWT claims used:
- sub: external provider user id (e.g. "user_2abc123")
- iss: provider frontend API URL
- exp / iat / nbf: validity window
- sid: provider session id
"""

import time
import logging
from typing import Optional, Dict, Any
from threading import Lock

import jwt
from jwt import PyJWKClient, PyJWKClientError
from jwt.exceptions import (
    InvalidTokenError,
    ExpiredSignatureError,
    InvalidIssuerError,
)

from umbrella.config import get_settings

logger = logging.getLogger(__name__)


class ProviderVerificationError(Exception):
    """Exception raised when provider JWT verification fails."""

    def __init__(self, message: str, error_code: str = "verification_failed"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class ProviderTokenVerifier:
    """
    Verifies identity-provider-issued JWTs using JWKS.

    Usage:
        verifier = ProviderTokenVerifier(issuer="https://auth.umbrella.example")
        claims = verifier.verify_token(token)
        external_id = claims["sub"]
    """

    # JWKS cache duration in seconds
    JWKS_CACHE_DURATION = 3600

    # Clock skew tolerance in seconds (for exp/iat validation)
    CLOCK_SKEW_SECONDS = 60

    def __init__(
        self,
        issuer: Optional[str],
        jwks_url: Optional[str] = None,
        jwks_client: Optional[PyJWKClient] = None,
    ):
        if not issuer:
            raise ProviderVerificationError(
                "IDENTITY_PROVIDER_ISSUER_URL environment variable is required",
                error_code="config_error",
            )

        self._issuer = issuer
        self._jwks_url = jwks_url or f"{issuer.rstrip('/')}/.well-known/jwks.json"

        self._jwks_client: Optional[PyJWKClient] = jwks_client
        self._jwks_client_lock = Lock()
        self._jwks_last_refresh: float = time.time() if jwks_client else 0

        logger.info(
            "Initialized ProviderTokenVerifier",
            extra={"issuer": self._issuer, "jwks_url": self._jwks_url},
        )

    def _get_jwks_client(self) -> PyJWKClient:
        """Get or create the JWKS client, recreating it when the cache ages out."""
        with self._jwks_client_lock:
            now = time.time()
            if (
                self._jwks_client is None
                or now - self._jwks_last_refresh > self.JWKS_CACHE_DURATION
            ):
                self._jwks_client = PyJWKClient(
                    self._jwks_url,
                    cache_keys=True,
                    lifespan=self.JWKS_CACHE_DURATION,
                )
                self._jwks_last_refresh = now
                logger.debug("Refreshed JWKS client", extra={"jwks_url": self._jwks_url})
            return self._jwks_client

    def verify_token(self, token: str) -> Dict[str, Any]:
        """
        Verify a provider JWT and return its claims.

        Raises:
            ProviderVerificationError: If verification fails
        """
        if not token:
            raise ProviderVerificationError("Token is required", error_code="missing_token")

        try:
            signing_key = self._get_jwks_client().get_signing_key_from_jwt(token)
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256"],
                issuer=self._issuer,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_iat": True,
                    "verify_nbf": True,
                    "require": ["sub", "iss", "exp", "iat"],
                },
                leeway=self.CLOCK_SKEW_SECONDS,
            )
        except ExpiredSignatureError:
            logger.warning("Provider token has expired")
            raise ProviderVerificationError("Token has expired", error_code="token_expired")
        except InvalidIssuerError:
            logger.warning("Invalid provider token issuer")
            raise ProviderVerificationError("Invalid token issuer", error_code="invalid_issuer")
        except PyJWKClientError as e:
            logger.error(f"JWKS client error: {e}")
            raise ProviderVerificationError(
                f"Failed to fetch signing key: {e}",
                error_code="jwks_error",
            )
        except InvalidTokenError as e:
            logger.warning(f"Invalid provider token: {e}")
            raise ProviderVerificationError(f"Invalid token: {e}", error_code="invalid_token")

        logger.debug(
            "Provider token verified",
            extra={"sub": claims.get("sub"), "sid": claims.get("sid")},
        )
        return claims


# Singleton verifier instance (lazy initialization)
_verifier_instance: Optional[ProviderTokenVerifier] = None
_verifier_lock = Lock()


def get_provider_verifier() -> ProviderTokenVerifier:
    """
    Get the singleton ProviderTokenVerifier.

    Raises:
        ProviderVerificationError: If the issuer is not configured
    """
    global _verifier_instance

    with _verifier_lock:
        if _verifier_instance is None:
            _verifier_instance = ProviderTokenVerifier(issuer=get_settings().provider_issuer_url)
        return _verifier_instance


def set_provider_verifier(verifier: Optional[ProviderTokenVerifier]) -> None:
    """Replace the verifier singleton (tests)."""
    global _verifier_instance

    with _verifier_lock:
        _verifier_instance = verifier
