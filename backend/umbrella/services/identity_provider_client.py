"""
Client and payload models for the external identity provider.

The provider owns sign-in. Umbrella reads its user records in two places:
- identity webhooks (the event's `data` object is a provider user)
- webhook failure recovery (GET /v1/users/{id} on the provider backend API)

Both have the same shape:
    {
      "id": "user_2abc",
      "email_addresses": [{"id": "idn_1", "email_address": "a@x.com"}],
      "primary_email_address_id": "idn_1",
      "external_accounts": [
        {"id": "eac_1", "provider": "oauth_google", "provider_user_id": "1093..."}
      ]
    }
"""

import logging
from threading import Lock
from typing import Optional, List, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from umbrella.config import get_settings
from umbrella.models.user import OAuthProvider, DEFAULT_OAUTH_PROVIDER
from umbrella.platform.errors import ConfigurationError, UpstreamError, MissingPrimaryEmail

logger = logging.getLogger(__name__)

# Provider account-type strings -> internal enumeration
ACCOUNT_PROVIDER_MAP = {
    "oauth_google": OAuthProvider.GOOGLE,
    "google": OAuthProvider.GOOGLE,
    "oauth_apple": OAuthProvider.APPLE,
    "apple": OAuthProvider.APPLE,
}

# When several accounts are linked, the first provider in this list wins
PROVIDER_PRIORITY = [OAuthProvider.GOOGLE, OAuthProvider.APPLE]


class ProviderEmailAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    email_address: str


class ProviderExternalAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    provider: str
    provider_user_id: Optional[str] = None
    email_address: Optional[str] = None

    @property
    def oauth_provider(self) -> Optional[OAuthProvider]:
        return map_account_provider(self.provider)

    @property
    def subject_id(self) -> Optional[str]:
        return self.provider_user_id or self.id


class ProviderUser(BaseModel):
    """A user record as returned by the identity provider."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    email_addresses: List[ProviderEmailAddress] = Field(default_factory=list)
    primary_email_address_id: Optional[str] = None
    external_accounts: List[ProviderExternalAccount] = Field(default_factory=list)

    def primary_email(self) -> Optional[str]:
        """Email matching primary_email_address_id, or None."""
        for entry in self.email_addresses:
            if entry.id == self.primary_email_address_id:
                return entry.email_address
        return None

    def best_email(self) -> Optional[str]:
        """Primary email, falling back to the first listed address."""
        email = self.primary_email()
        if email is None and self.email_addresses:
            return self.email_addresses[0].email_address
        return email

    def oauth_identity(self) -> Tuple[OAuthProvider, str]:
        """(provider, subject id) for the local user row."""
        return derive_oauth_identity(self.id, self.external_accounts)


def map_account_provider(account_type: Optional[str]) -> Optional[OAuthProvider]:
    """Map a provider account-type string to OAuthProvider; None if unsupported."""
    if not account_type:
        return None
    return ACCOUNT_PROVIDER_MAP.get(account_type.strip().lower())


def select_linked_account(
    accounts: List[ProviderExternalAccount],
) -> Optional[ProviderExternalAccount]:
    """
    Choose the linked account that identifies the user locally.

    Unsupported providers and accounts without any id are skipped. Among
    the rest, google beats apple; for the same provider the first listed
    account wins.
    """
    supported = [a for a in accounts if a.oauth_provider is not None and a.subject_id]
    for provider in PROVIDER_PRIORITY:
        for account in supported:
            if account.oauth_provider == provider:
                return account
    return None


def derive_oauth_identity(
    external_id: str,
    accounts: List[ProviderExternalAccount],
) -> Tuple[OAuthProvider, str]:
    """
    Derive (provider, subject id) for a provider user.

    Falls back to the default provider with the provider's own user id as
    subject, so users without a linked account still get a unique key.
    """
    account = select_linked_account(accounts)
    if account is None:
        return DEFAULT_OAUTH_PROVIDER, external_id
    return account.oauth_provider, account.subject_id


class IdentityProviderClient:
    """
    Read-only client for the provider backend API.

    Every call is bounded by the configured timeout. Transport failures,
    timeouts, non-2xx responses and unparseable bodies all raise
    UpstreamError; response bodies are logged, never returned.
    """

    def __init__(
        self,
        api_url: str,
        secret_key: Optional[str],
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._secret_key = secret_key
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    def get_user(self, external_id: str) -> ProviderUser:
        """
        Fetch a user from the provider.

        Raises:
            ConfigurationError: provider secret key not configured
            UpstreamError: request failed, timed out or returned non-2xx
            MissingPrimaryEmail: no email matches primary_email_address_id
        """
        if not self._secret_key:
            raise ConfigurationError("IDENTITY_PROVIDER_SECRET_KEY is not configured")

        url = f"{self._api_url}/v1/users/{external_id}"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                response = client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {self._secret_key}",
                        "Content-Type": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            logger.error(
                "Identity provider request timed out",
                extra={"external_provider_id": external_id, "error": str(e)},
            )
            raise UpstreamError("Identity provider request timed out")
        except httpx.HTTPError as e:
            logger.error(
                "Identity provider request failed",
                extra={"external_provider_id": external_id, "error": str(e)},
            )
            raise UpstreamError("Identity provider request failed")

        if not response.is_success:
            logger.error(
                "Identity provider returned an error",
                extra={
                    "external_provider_id": external_id,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            raise UpstreamError(
                f"Identity provider returned {response.status_code}",
                details={"status_code": response.status_code},
            )

        try:
            user = ProviderUser.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(
                "Identity provider returned an unparseable user",
                extra={"external_provider_id": external_id, "error": str(e)},
            )
            raise UpstreamError("Identity provider returned an invalid user record")

        if user.primary_email() is None:
            raise MissingPrimaryEmail(f"No primary email found for provider user {external_id}")

        return user


# Singleton client
_client_instance: Optional[IdentityProviderClient] = None
_client_lock = Lock()


def get_identity_provider_client() -> IdentityProviderClient:
    """Get the IdentityProviderClient configured from the environment."""
    global _client_instance

    with _client_lock:
        if _client_instance is None:
            settings = get_settings()
            _client_instance = IdentityProviderClient(
                api_url=settings.provider_api_url,
                secret_key=settings.provider_secret_key,
                timeout_seconds=settings.provider_timeout_seconds,
            )
        return _client_instance


def set_identity_provider_client(client: Optional[IdentityProviderClient]) -> None:
    """Replace the client singleton (tests)."""
    global _client_instance

    with _client_lock:
        _client_instance = client
