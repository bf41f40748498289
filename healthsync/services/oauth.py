"""OAuth2 client adapters for the scale and calendar providers.

Every provider sits behind the same four operations (authorization URL,
code exchange, valid-token lookup with refresh, revoke). Subclasses only
describe their endpoints, request parameters and token response shape.
"""

import logging
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from healthsync.core.config import Settings
from healthsync.core.errors import (
    AuthExchangeError,
    ConfigurationError,
    NoCredentialError,
    RefreshError,
)
from healthsync.models.database import OAuthCredential, Provider, utcnow
from healthsync.services.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenGrant:
    """Parsed token endpoint response."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime


class OAuthClient(ABC):
    """Uniform OAuth2 contract shared by every provider adapter."""

    provider: Provider
    authorize_url: str
    token_url: str
    scopes: str

    def __init__(
        self,
        token_store: TokenStore,
        settings: Settings,
        http_client: httpx.AsyncClient,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.token_store = token_store
        self.settings = settings
        self.http_client = http_client
        self.clock = clock
        self.refresh_margin = timedelta(seconds=settings.token_refresh_margin_seconds)

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.app_url.rstrip('/')}/api/integrations/{self.provider.value}/callback"

    @property
    @abstractmethod
    def client_id(self) -> str:
        ...

    @property
    @abstractmethod
    def client_secret(self) -> str:
        ...

    @abstractmethod
    def _authorization_params(self) -> dict[str, str]:
        """Query parameters for the consent redirect."""

    @abstractmethod
    def _code_exchange_params(self, code: str) -> dict[str, str]:
        """Form body for the authorization-code grant."""

    @abstractmethod
    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        """Form body for the refresh-token grant."""

    @abstractmethod
    def _parse_token_response(self, response: httpx.Response) -> TokenGrant:
        """Parse a token endpoint response. Raises ValueError on rejection."""

    def _require_config(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                f"{self.provider.value} OAuth not configured (client id/secret missing)"
            )

    def _expires_at(self, expires_in: Any, default: int) -> datetime:
        if expires_in is None:
            expires_in = default
        try:
            seconds = int(expires_in)
        except (TypeError, ValueError) as e:
            raise ValueError(f"{self.provider.value} token response has invalid expires_in: {expires_in!r}") from e
        return self.clock() + timedelta(seconds=seconds)

    def needs_refresh(self, credential: OAuthCredential) -> bool:
        return credential.expires_at <= self.clock() + self.refresh_margin

    async def _request_token(self, params: dict[str, str]) -> TokenGrant:
        response = await self.http_client.post(self.token_url, data=params)
        return self._parse_token_response(response)

    def get_authorization_url(self) -> str:
        """Build the provider consent URL. No side effects."""
        self._require_config()
        query = urllib.parse.urlencode(self._authorization_params())
        return f"{self.authorize_url}?{query}"

    async def exchange_code_for_credential(self, code: str) -> OAuthCredential:
        """Exchange a one-time authorization code and store the resulting credential."""
        try:
            self._require_config()
            grant = await self._request_token(self._code_exchange_params(code))
        except ConfigurationError as e:
            raise AuthExchangeError(str(e)) from e
        except httpx.HTTPError as e:
            raise AuthExchangeError(f"{self.provider.value} token exchange failed: {e!r}") from e
        except ValueError as e:
            raise AuthExchangeError(f"{self.provider.value} rejected authorization code: {e}") from e

        if not grant.refresh_token:
            raise AuthExchangeError(f"{self.provider.value} token response missing refresh_token")

        try:
            credential = await self.token_store.save(
                self.provider,
                grant.access_token,
                grant.refresh_token,
                grant.expires_at,
                self.scopes,
            )
        except SQLAlchemyError as e:
            await self.token_store.session.rollback()
            raise AuthExchangeError(f"Failed to store {self.provider.value} credential: {e}") from e

        logger.info(f"Exchanged authorization code for {self.provider.value}")
        return credential

    async def get_valid_access_token(self) -> str:
        """
        Return a bearer token for the stored credential.

        Refreshes first when the token is expired or inside the safety
        margin, and persists the renewed credential.
        """
        credential = await self.token_store.get(self.provider)
        if credential is None:
            raise NoCredentialError(f"{self.provider.value} not connected")

        if not self.needs_refresh(credential):
            return credential.access_token

        logger.info(f"Refreshing {self.provider.value} access token (expired at {credential.expires_at.isoformat()})")
        try:
            self._require_config()
            grant = await self._request_token(self._refresh_params(credential.refresh_token))
        except ConfigurationError as e:
            raise RefreshError(str(e)) from e
        except httpx.HTTPError as e:
            raise RefreshError(f"{self.provider.value} token refresh failed: {e!r}") from e
        except ValueError as e:
            raise RefreshError(f"{self.provider.value} rejected refresh token: {e}") from e

        try:
            renewed = await self.token_store.save(
                self.provider,
                grant.access_token,
                grant.refresh_token or credential.refresh_token,
                grant.expires_at,
                credential.scopes,
            )
        except SQLAlchemyError as e:
            await self.token_store.session.rollback()
            raise RefreshError(f"Failed to store renewed {self.provider.value} credential: {e}") from e
        return renewed.access_token

    async def revoke(self) -> None:
        """Forget the stored credential. Succeeds when nothing is stored."""
        removed = await self.token_store.delete(self.provider)
        if removed:
            logger.info(f"Disconnected {self.provider.value}")


class WithingsOAuthClient(OAuthClient):
    """Withings OAuth2. Token calls carry action=requesttoken and answer in a status envelope."""

    provider = Provider.WITHINGS
    authorize_url = "https://account.withings.com/oauth2_user/authorize2"
    token_url = "https://wbsapi.withings.net/v2/oauth2"
    scopes = "user.metrics"

    @property
    def client_id(self) -> str:
        return self.settings.withings_client_id

    @property
    def client_secret(self) -> str:
        return self.settings.withings_client_secret

    def _authorization_params(self) -> dict[str, str]:
        return {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "state": "withings_auth",
        }

    def _code_exchange_params(self, code: str) -> dict[str, str]:
        return {
            "action": "requesttoken",
            "grant_type": "authorization_code",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "redirect_uri": self.redirect_uri,
        }

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        return {
            "action": "requesttoken",
            "grant_type": "refresh_token",
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
        }

    def _parse_token_response(self, response: httpx.Response) -> TokenGrant:
        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"Withings token response is not an object (HTTP {response.status_code})")

        body = payload.get("body")
        # Withings reports failures in-band with HTTP 200 and a non-zero status
        if response.status_code != 200 or payload.get("status") != 0 or not isinstance(body, dict) or not body:
            raise ValueError(
                f"Withings token error (HTTP {response.status_code}, "
                f"status={payload.get('status')}, error={payload.get('error')})"
            )

        if not body.get("access_token"):
            raise ValueError("Withings token response missing access_token")

        return TokenGrant(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            expires_at=self._expires_at(body.get("expires_in"), default=10800),
        )


class GoogleOAuthClient(OAuthClient):
    """Google OAuth2 for calendar access (offline access, forced consent)."""

    provider = Provider.GOOGLE
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    scopes = " ".join([
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    ])

    @property
    def client_id(self) -> str:
        return self.settings.google_client_id

    @property
    def client_secret(self) -> str:
        return self.settings.google_client_secret

    def _authorization_params(self) -> dict[str, str]:
        return {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scopes,
            "access_type": "offline",
            "prompt": "consent",
            "state": "google_auth",
        }

    def _code_exchange_params(self, code: str) -> dict[str, str]:
        return {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

    def _refresh_params(self, refresh_token: str) -> dict[str, str]:
        return {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }

    def _parse_token_response(self, response: httpx.Response) -> TokenGrant:
        if response.status_code != 200:
            raise ValueError(f"Google token error: HTTP {response.status_code}: {response.text[:200]}")

        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError("Google token response is not an object")

        access_token = payload.get("access_token")
        if not access_token:
            raise ValueError("Google token response missing access_token")

        return TokenGrant(
            access_token=access_token,
            # Google omits refresh_token on refresh grants
            refresh_token=payload.get("refresh_token"),
            expires_at=self._expires_at(payload.get("expires_in"), default=3600),
        )


_CLIENT_CLASSES: dict[Provider, type[OAuthClient]] = {
    Provider.WITHINGS: WithingsOAuthClient,
    Provider.GOOGLE: GoogleOAuthClient,
}


def get_oauth_client(
    provider: Provider,
    token_store: TokenStore,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> OAuthClient:
    """Select the adapter implementation for a provider tag."""
    return _CLIENT_CLASSES[provider](token_store, settings, http_client)
