"""Domain models for ssokeeper.

This package provides the in-memory records shared by the services:
- Session and its state/authentication/directory enumerations
- AuthResult (identity provider output)
- Credential (persistence projection of a session)
- ValidationResult and failure reasons
"""

from ssokeeper.models.credential import (
    SESSION_KEY_PREFIX,
    Credential,
    CredentialType,
    credential_from_session,
    session_from_credential,
    session_key,
)
from ssokeeper.models.session import (
    AuthenticationMode,
    AuthResult,
    DirectoryType,
    Session,
    SessionState,
)
from ssokeeper.models.validation import (
    DEFAULT_FAILURE_MESSAGES,
    ValidationFailureReason,
    ValidationResult,
)

__all__ = [
    "DEFAULT_FAILURE_MESSAGES",
    "SESSION_KEY_PREFIX",
    "AuthResult",
    "AuthenticationMode",
    "Credential",
    "CredentialType",
    "DirectoryType",
    "Session",
    "SessionState",
    "ValidationFailureReason",
    "ValidationResult",
    "credential_from_session",
    "session_from_credential",
    "session_key",
]
