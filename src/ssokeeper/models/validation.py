"""Session validation outcomes.

Validation never raises for an invalid session; callers inspect the
ValidationResult instead.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ssokeeper.models.session import Session


class ValidationFailureReason(enum.Enum):
    """Why a session failed validation."""

    SESSION_NOT_FOUND = "session_not_found"
    SESSION_EXPIRED = "session_expired"
    SESSION_REVOKED = "session_revoked"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    DEVICE_MISMATCH = "device_mismatch"
    IP_MISMATCH = "ip_mismatch"
    USER_DISABLED = "user_disabled"
    USER_NOT_FOUND = "user_not_found"
    DIRECTORY_UNAVAILABLE = "directory_unavailable"
    VALIDATION_ERROR = "validation_error"


DEFAULT_FAILURE_MESSAGES: dict[ValidationFailureReason, str] = {
    ValidationFailureReason.SESSION_NOT_FOUND: "The session was not found.",
    ValidationFailureReason.SESSION_EXPIRED: "The session has expired.",
    ValidationFailureReason.SESSION_REVOKED: "The session has been revoked.",
    ValidationFailureReason.TOKEN_INVALID: "The session token is invalid.",
    ValidationFailureReason.TOKEN_EXPIRED: "The session token has expired.",
    ValidationFailureReason.DEVICE_MISMATCH: "The request originated from a different device.",
    ValidationFailureReason.IP_MISMATCH: "The request originated from a different IP address.",
    ValidationFailureReason.USER_DISABLED: "The user account has been disabled.",
    ValidationFailureReason.USER_NOT_FOUND: "The user account was not found.",
    ValidationFailureReason.DIRECTORY_UNAVAILABLE: "The directory service is unavailable.",
    ValidationFailureReason.VALIDATION_ERROR: "An error occurred during validation.",
}


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Result of validating a session.

    Attributes:
        is_valid: Whether the session is usable
        session: The validated session (only when valid)
        failure_reason: Why validation failed (only when invalid)
        error_message: Human-readable failure description
        validated_at: When validation ran
    """

    is_valid: bool
    session: Session | None = None
    failure_reason: ValidationFailureReason | None = None
    error_message: str | None = None
    validated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def success(cls, session: Session) -> ValidationResult:
        """Build a successful result for a session."""
        return cls(is_valid=True, session=session)

    @classmethod
    def failed(
        cls,
        reason: ValidationFailureReason,
        message: str | None = None,
    ) -> ValidationResult:
        """Build a failed result, using the default message for the reason if none given."""
        return cls(
            is_valid=False,
            failure_reason=reason,
            error_message=message or DEFAULT_FAILURE_MESSAGES[reason],
        )
