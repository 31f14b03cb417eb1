"""Session model for SSO-authenticated users.

This module provides the in-memory Session record created after a successful
identity-provider login, along with the enumerations describing how the user
authenticated and which directory vouched for them.

Sessions are mutable: the session manager updates expiry, activity and state
in place under the session store lock. Readers that need a stable view take a
snapshot().
"""

from __future__ import annotations

import copy
import enum
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field, field_validator


class SessionState(enum.Enum):
    """Session lifecycle states.

    States:
        ACTIVE: Session is usable and eligible for refresh
        REFRESHING: A refresh is in flight for this session
        EXPIRING: Session is close to expiry
        EXPIRED: Session passed its expiry time
        REVOKED: Session was explicitly revoked (terminal)
    """

    ACTIVE = "active"
    REFRESHING = "refreshing"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    REVOKED = "revoked"


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return value as an aware datetime, reading naive values as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class AuthenticationMode(str, enum.Enum):
    """How the user authenticated against the identity provider."""

    PASSWORD = "password"
    CERTIFICATE = "certificate"
    FEDERATED = "federated"
    KERBEROS = "kerberos"
    INTEGRATED = "integrated"
    DEVICE_CODE = "device_code"
    CLIENT_CREDENTIALS = "client_credentials"


class DirectoryType(str, enum.Enum):
    """Directory or identity provider family that issued the identity."""

    ACTIVE_DIRECTORY = "active_directory"
    AZURE_AD = "azure_ad"
    OPEN_LDAP = "open_ldap"
    APPLE_DIRECTORY = "apple_directory"
    OIDC = "oidc"
    OTHER = "other"


class AuthResult(BaseModel):
    """Outcome of an authentication attempt, produced by the identity provider.

    Attributes:
        is_authenticated: Whether authentication succeeded
        user_id: Stable user identifier (subject)
        username: Login name
        user_distinguished_name: Directory DN, if any
        email: Email address claim
        display_name: Human-readable name
        directory_type: Directory family that authenticated the user
        authentication_mode: Authentication method used
        access_token: Access token issued by the provider
        refresh_token: Refresh token, enables background refresh
        expires_at: Provider-side token expiry
        groups: Group memberships
        claims: Additional claims
        error_message: Failure description when not authenticated
    """

    is_authenticated: bool
    user_id: str | None = None
    username: str | None = None
    user_distinguished_name: str | None = None
    email: str | None = None
    display_name: str | None = None
    directory_type: DirectoryType = DirectoryType.OTHER
    authentication_mode: AuthenticationMode = AuthenticationMode.FEDERATED
    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    groups: list[str] | None = None
    claims: dict[str, Any] | None = None
    error_message: str | None = None

    @field_validator("expires_at")
    @classmethod
    def normalize_expires_at(cls, v: datetime | None) -> datetime | None:
        """Treat a naive provider expiry as UTC."""
        return ensure_utc(v)

    @classmethod
    def failed(cls, error_message: str) -> AuthResult:
        """Build a failed authentication result."""
        return cls(is_authenticated=False, error_message=error_message)


@dataclass(slots=True)
class Session:
    """An authenticated SSO session.

    Attributes:
        session_id: Unique opaque identifier
        user_id: Identifier of the session owner
        username: Login name of the owner
        created_at: Creation time (start of the absolute lifetime)
        expires_at: Current expiry time
        state: Lifecycle state
        access_token: Current access token (never logged)
        refresh_token: Refresh token; sessions without one are never refreshed
        last_refreshed_at: Time of the last successful refresh
        last_activity_at: Time of the last validated activity
        device_id: Device the session is bound to
        ip_address: IP address the session is bound to
        user_agent: Client user agent
    """

    session_id: str
    user_id: str
    username: str
    created_at: datetime
    expires_at: datetime
    state: SessionState = SessionState.ACTIVE
    user_distinguished_name: str | None = None
    email: str | None = None
    display_name: str | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    authentication_mode: AuthenticationMode = AuthenticationMode.FEDERATED
    directory_type: DirectoryType = DirectoryType.OTHER
    last_refreshed_at: datetime | None = None
    last_activity_at: datetime | None = None
    device_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    groups: list[str] | None = None
    claims: dict[str, Any] | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the session has reached its expiry time."""
        now = now or datetime.now(UTC)
        return now >= self.expires_at

    def is_active(self, now: datetime | None = None) -> bool:
        """Check if the session is active and not expired."""
        return self.state == SessionState.ACTIVE and not self.is_expired(now)

    def time_to_expiry(self, now: datetime | None = None) -> timedelta:
        """Remaining lifetime, never negative."""
        now = now or datetime.now(UTC)
        return max(self.expires_at - now, timedelta(0))

    def _raw_elapsed_fraction(self, now: datetime) -> float:
        lifetime = self.expires_at - self.created_at
        if lifetime <= timedelta(0):
            return 1.0
        return (now - self.created_at) / lifetime

    def elapsed_fraction(self, now: datetime | None = None) -> float:
        """Fraction of the current lifetime that has elapsed, clamped to [0, 1].

        A session whose lifetime is zero or negative counts as fully elapsed.
        """
        now = now or datetime.now(UTC)
        return min(max(self._raw_elapsed_fraction(now), 0.0), 1.0)

    def needs_refresh(self, threshold: float, now: datetime | None = None) -> bool:
        """Check whether the session should be refreshed.

        Args:
            threshold: Fraction of lifetime after which refresh is due, in [0, 1].
            now: Reference time (defaults to current UTC time).

        Returns:
            True if the session is active, holds a refresh token and has used
            at least ``threshold`` of its lifetime.

        Raises:
            ValueError: If threshold is outside [0, 1].
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Refresh threshold must be between 0 and 1, got {threshold}")

        if self.refresh_token is None or self.state != SessionState.ACTIVE:
            return False

        now = now or datetime.now(UTC)
        return self._raw_elapsed_fraction(now) >= threshold

    def snapshot(self) -> Session:
        """Return a detached copy of this session."""
        return replace(
            self,
            groups=list(self.groups) if self.groups is not None else None,
            claims=copy.deepcopy(self.claims) if self.claims is not None else None,
        )
