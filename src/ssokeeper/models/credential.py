"""Credential records persisted by credential stores.

A Credential is the persistence projection of a Session: tokens, expiry and a
flat string metadata map carrying the session identity and context. The
session manager writes one credential per session under the key returned by
``session_key()``.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from ssokeeper.models.session import (
    AuthenticationMode,
    DirectoryType,
    Session,
    SessionState,
)

SESSION_KEY_PREFIX = "sso:session:"

# Metadata keys written for every session credential
META_SESSION_ID = "session_id"
META_USERNAME = "username"
META_CREATED_AT = "created_at"
META_STATE = "state"


class CredentialType(enum.Enum):
    """Kind of secret held by a credential."""

    USERNAME_PASSWORD = "username_password"
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    CERTIFICATE = "certificate"
    KERBEROS = "kerberos"
    INTEGRATED_WINDOWS = "integrated_windows"


@dataclass(slots=True)
class Credential:
    """A persisted credential.

    Attributes:
        user_id: Owner of the credential
        username: Login name of the owner
        credential_type: Kind of secret stored
        access_token: Access token (never logged)
        refresh_token: Refresh token (never logged)
        created_at: When the credential was first stored
        expires_at: When the credential stops being usable (None = never)
        directory_type: Directory family that issued the identity
        metadata: Flat string map of additional attributes
    """

    user_id: str
    username: str = ""
    credential_type: CredentialType = CredentialType.ACCESS_TOKEN
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
    directory_type: DirectoryType = DirectoryType.OTHER
    metadata: dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if the credential has an expiry that has passed."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return now >= self.expires_at

    @property
    def can_refresh(self) -> bool:
        """Check if the credential carries a refresh token."""
        return bool(self.refresh_token)

    def copy(self) -> Credential:
        """Return a copy with its own metadata map."""
        return Credential(
            user_id=self.user_id,
            username=self.username,
            credential_type=self.credential_type,
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            created_at=self.created_at,
            expires_at=self.expires_at,
            directory_type=self.directory_type,
            metadata=dict(self.metadata),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "user_id": self.user_id,
            "username": self.username,
            "credential_type": self.credential_type.value,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "directory_type": self.directory_type.value,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        """Deserialize from a dictionary produced by to_dict().

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has an invalid value.
        """
        expires_at = data.get("expires_at")
        return cls(
            user_id=data["user_id"],
            username=data.get("username", ""),
            credential_type=CredentialType(
                data.get("credential_type", CredentialType.ACCESS_TOKEN.value)
            ),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
            directory_type=DirectoryType(data.get("directory_type", DirectoryType.OTHER.value)),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
        )


def session_key(session_id: str) -> str:
    """Credential store key under which a session is persisted."""
    return f"{SESSION_KEY_PREFIX}{session_id}"


def _put(metadata: dict[str, str], key: str, value: str | None) -> None:
    if value is not None:
        metadata[key] = value


def credential_from_session(session: Session) -> Credential:
    """Project a session onto its persisted credential form.

    Args:
        session: Session to project.

    Returns:
        Credential carrying the session tokens, expiry and identity metadata.
    """
    metadata: dict[str, str] = {
        META_SESSION_ID: session.session_id,
        META_USERNAME: session.username,
        META_CREATED_AT: session.created_at.isoformat(),
        META_STATE: session.state.value,
        "authentication_mode": session.authentication_mode.value,
    }
    _put(metadata, "user_dn", session.user_distinguished_name)
    _put(metadata, "email", session.email)
    _put(metadata, "display_name", session.display_name)
    _put(metadata, "device_id", session.device_id)
    _put(metadata, "ip_address", session.ip_address)
    _put(metadata, "user_agent", session.user_agent)
    if session.last_refreshed_at is not None:
        metadata["last_refreshed_at"] = session.last_refreshed_at.isoformat()
    if session.last_activity_at is not None:
        metadata["last_activity_at"] = session.last_activity_at.isoformat()
    if session.groups is not None:
        metadata["groups"] = json.dumps(session.groups)
    if session.claims is not None:
        metadata["claims"] = json.dumps(session.claims, default=str)

    return Credential(
        user_id=session.user_id,
        username=session.username,
        credential_type=CredentialType.ACCESS_TOKEN,
        access_token=session.access_token,
        refresh_token=session.refresh_token,
        created_at=session.created_at,
        expires_at=session.expires_at,
        directory_type=session.directory_type,
        metadata=metadata,
    )


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def session_from_credential(
    session_id: str,
    credential: Credential,
    now: datetime | None = None,
) -> Session:
    """Rebuild a session from its persisted credential.

    Missing metadata falls back to: username = user_id, created_at = now,
    state = active, and expires_at = now when the credential has no expiry.

    Args:
        session_id: Identifier of the session being restored.
        credential: Persisted credential.
        now: Reference time for fallbacks (defaults to current UTC time).

    Returns:
        Reconstructed Session.

    Raises:
        ValueError: If metadata holds malformed timestamps or enum values.
    """
    now = now or datetime.now(UTC)
    metadata = credential.metadata or {}

    groups = metadata.get("groups")
    claims = metadata.get("claims")
    state = SessionState(metadata.get(META_STATE, SessionState.ACTIVE.value))
    if state == SessionState.REFRESHING:
        # An in-flight refresh does not survive a restart
        state = SessionState.ACTIVE

    return Session(
        session_id=session_id,
        user_id=credential.user_id,
        username=metadata.get(META_USERNAME) or credential.username or credential.user_id,
        created_at=_parse_time(metadata.get(META_CREATED_AT)) or now,
        expires_at=credential.expires_at or now,
        state=state,
        user_distinguished_name=metadata.get("user_dn"),
        email=metadata.get("email"),
        display_name=metadata.get("display_name"),
        access_token=credential.access_token,
        refresh_token=credential.refresh_token,
        authentication_mode=AuthenticationMode(
            metadata.get("authentication_mode", AuthenticationMode.FEDERATED.value)
        ),
        directory_type=credential.directory_type,
        last_refreshed_at=_parse_time(metadata.get("last_refreshed_at")),
        last_activity_at=_parse_time(metadata.get("last_activity_at")),
        device_id=metadata.get("device_id"),
        ip_address=metadata.get("ip_address"),
        user_agent=metadata.get("user_agent"),
        groups=json.loads(groups) if groups else None,
        claims=json.loads(claims) if claims else None,
    )
