"""ssokeeper service layer.

This package contains the session lifecycle services:
- SessionManager: session creation, validation, refresh and revocation
- SessionStore: thread-safe in-memory session table
- CredentialStore implementations: in-memory, encrypted file, ephemeral
- EventBus: session lifecycle event dispatch
- SessionMetrics: in-process counters and durations
- OIDCRefreshExecutor: OAuth2 refresh_token grant
"""

from ssokeeper.services.credential_store import (
    CredentialStore,
    CredentialStoreCorruptError,
    CredentialStoreError,
    EncryptedFileCredentialStore,
    EphemeralCredentialStore,
    InMemoryCredentialStore,
    create_credential_store,
)
from ssokeeper.services.events import EventBus
from ssokeeper.services.metrics import SessionMetrics
from ssokeeper.services.session_manager import (
    SessionError,
    SessionInvalidArgumentError,
    SessionInvalidStateError,
    SessionLimitExceededError,
    SessionManager,
    SessionNotFoundError,
    SessionRefreshInProgressError,
)
from ssokeeper.services.session_store import SessionStore
from ssokeeper.services.token_refresh import (
    OIDCRefreshExecutor,
    RefreshedTokens,
    TokenRefreshError,
)

__all__ = [
    "CredentialStore",
    "CredentialStoreCorruptError",
    "CredentialStoreError",
    "EncryptedFileCredentialStore",
    "EphemeralCredentialStore",
    "EventBus",
    "InMemoryCredentialStore",
    "OIDCRefreshExecutor",
    "RefreshedTokens",
    "SessionError",
    "SessionInvalidArgumentError",
    "SessionInvalidStateError",
    "SessionLimitExceededError",
    "SessionManager",
    "SessionMetrics",
    "SessionNotFoundError",
    "SessionRefreshInProgressError",
    "SessionStore",
    "TokenRefreshError",
    "create_credential_store",
]
