"""Refresh-token exchange with the identity provider.

The session manager delegates the provider side of a refresh to a
RefreshExecutor. OIDCRefreshExecutor performs the OAuth2 ``refresh_token``
grant against a configured token endpoint:
- Client authentication with client_id / client_secret
- Rotated refresh tokens are propagated back to the session
- Provider errors are wrapped in TokenRefreshProviderError

Token values are never logged; only short hashes of session ids are.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from authlib.integrations.httpx_client import AsyncOAuth2Client
from pydantic import BaseModel, ConfigDict, SecretStr, field_validator

from ssokeeper.models.session import Session, ensure_utc

if TYPE_CHECKING:
    from ssokeeper.core.config import OIDCSettings

logger = logging.getLogger(__name__)


class TokenRefreshError(Exception):
    """Base exception for refresh-token exchange."""

    pass


class TokenRefreshConfigurationError(TokenRefreshError):
    """Raised when the refresh executor is misconfigured."""

    pass


class TokenRefreshProviderError(TokenRefreshError):
    """Raised when the token endpoint rejects or fails the exchange."""

    pass


class RefreshedTokens(BaseModel):
    """Tokens returned by a successful refresh.

    Attributes:
        access_token: New access token.
        refresh_token: Rotated refresh token (None keeps the current one).
        expires_at: Provider-side expiry of the new access token.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, v: datetime | None) -> datetime | None:
        """Treat a naive expiry as UTC."""
        return ensure_utc(v)


class RefreshExecutor(Protocol):
    """Exchanges a session's refresh token for new tokens."""

    async def refresh(self, session: Session) -> RefreshedTokens: ...


@dataclass(frozen=True, slots=True)
class OIDCClientConfig:
    """Token endpoint client configuration.

    Attributes:
        client_id: OAuth2 client ID.
        client_secret: OAuth2 client secret (sensitive).
        token_endpoint: URL of the token endpoint.
        scopes: Scopes to request on refresh (empty keeps the original grant).
        timeout: Request timeout in seconds.
    """

    client_id: str
    client_secret: SecretStr
    token_endpoint: str
    scopes: list[str] = field(default_factory=list)
    timeout: int = 30


class OIDCRefreshExecutor:
    """Performs the OAuth2 refresh_token grant using authlib.

    Example:
        executor = OIDCRefreshExecutor(config)
        tokens = await executor.refresh(session)
    """

    def __init__(self, config: OIDCClientConfig) -> None:
        """Initialize the executor.

        Args:
            config: Token endpoint client configuration.

        Raises:
            TokenRefreshConfigurationError: If required configuration is missing.
        """
        if not config.client_id:
            raise TokenRefreshConfigurationError("client_id is required")
        if not config.token_endpoint:
            raise TokenRefreshConfigurationError("token_endpoint is required")
        self._config = config

    async def refresh(self, session: Session) -> RefreshedTokens:
        """Exchange the session's refresh token at the token endpoint.

        Args:
            session: Session holding the refresh token.

        Returns:
            RefreshedTokens with the new access token and expiry.

        Raises:
            TokenRefreshError: If the session has no refresh token.
            TokenRefreshProviderError: If the exchange fails.
        """
        if not session.refresh_token:
            raise TokenRefreshError("Session has no refresh token")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": session.refresh_token,
        }
        if self._config.scopes:
            data["scope"] = " ".join(self._config.scopes)

        async with AsyncOAuth2Client(
            client_id=self._config.client_id,
            client_secret=self._config.client_secret.get_secret_value(),
            timeout=self._config.timeout,
        ) as client:
            try:
                response = await client.post(self._config.token_endpoint, data=data)
                response.raise_for_status()
                token_data: dict[str, Any] = response.json()
            except Exception as e:
                raise TokenRefreshProviderError(f"Token refresh failed: {e}") from e

        if "error" in token_data:
            raise TokenRefreshProviderError(
                f"Token endpoint error: {token_data.get('error_description', token_data['error'])}"
            )
        if not token_data.get("access_token"):
            raise TokenRefreshProviderError("Token endpoint returned no access_token")

        expires_at = None
        expires_in = token_data.get("expires_in")
        if expires_in is not None:
            expires_at = datetime.now(UTC) + timedelta(seconds=int(expires_in))

        logger.info(
            "Refresh token exchanged: session=%s, rotated=%s",
            _hash_for_log(session.session_id),
            bool(token_data.get("refresh_token")),
        )

        return RefreshedTokens(
            access_token=token_data["access_token"],
            refresh_token=token_data.get("refresh_token"),
            expires_at=expires_at,
        )


def _hash_for_log(value: str) -> str:
    """First 8 hex characters of the SHA-256 of a value, for log correlation."""
    return hashlib.sha256(value.encode()).hexdigest()[:8]


def create_refresh_executor(settings: OIDCSettings) -> OIDCRefreshExecutor | None:
    """Create the OIDC refresh executor from settings.

    Returns:
        Configured executor, or None if OIDC refresh is disabled.
    """
    if not settings.enabled:
        return None

    config = OIDCClientConfig(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        token_endpoint=settings.token_endpoint,
        scopes=list(settings.scopes),
        timeout=settings.timeout,
    )
    return OIDCRefreshExecutor(config)
