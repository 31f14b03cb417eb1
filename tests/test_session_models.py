"""Tests for session, credential and validation models.

Tests cover:
- Session expiry, elapsed fraction and refresh threshold checks
- Session snapshots
- Credential serialization and expiry
- Session <-> credential projection, including missing metadata fallbacks
- Validation results and default failure messages
"""

from datetime import UTC, datetime, timedelta

import pytest

from ssokeeper.models.credential import (
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

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)


def _session(**overrides) -> Session:
    values = {
        "session_id": "sess-1",
        "user_id": "user-1",
        "username": "jdoe",
        "created_at": T0,
        "expires_at": T0 + timedelta(seconds=100),
        "refresh_token": "rt",
    }
    values.update(overrides)
    return Session(**values)


class TestSessionExpiry:
    """Tests for Session expiry helpers."""

    def test_not_expired_before_deadline(self):
        session = _session()
        assert not session.is_expired(T0 + timedelta(seconds=99))
        assert session.is_active(T0 + timedelta(seconds=99))

    def test_expired_at_deadline(self):
        """A session is expired exactly at expires_at."""
        session = _session()
        assert session.is_expired(T0 + timedelta(seconds=100))
        assert not session.is_active(T0 + timedelta(seconds=100))

    def test_inactive_when_revoked(self):
        session = _session(state=SessionState.REVOKED)
        assert not session.is_active(T0)

    def test_time_to_expiry_never_negative(self):
        session = _session()
        assert session.time_to_expiry(T0 + timedelta(seconds=40)) == timedelta(seconds=60)
        assert session.time_to_expiry(T0 + timedelta(seconds=500)) == timedelta(0)


class TestSessionRefreshThreshold:
    """Tests for elapsed fraction and needs_refresh()."""

    def test_elapsed_fraction(self):
        session = _session()
        assert session.elapsed_fraction(T0 + timedelta(seconds=25)) == pytest.approx(0.25)

    def test_elapsed_fraction_is_clamped(self):
        session = _session()
        assert session.elapsed_fraction(T0 - timedelta(seconds=10)) == 0.0
        assert session.elapsed_fraction(T0 + timedelta(seconds=300)) == 1.0

    def test_zero_lifetime_counts_as_fully_elapsed(self):
        session = _session(expires_at=T0)
        assert session.elapsed_fraction(T0) == 1.0
        assert session.needs_refresh(0.8, T0)

    def test_needs_refresh_below_threshold(self):
        session = _session()
        assert not session.needs_refresh(0.8, T0 + timedelta(seconds=79))

    def test_needs_refresh_past_threshold(self):
        session = _session()
        assert session.needs_refresh(0.8, T0 + timedelta(seconds=81))

    def test_needs_refresh_requires_refresh_token(self):
        session = _session(refresh_token=None)
        assert not session.needs_refresh(0.8, T0 + timedelta(seconds=99))

    def test_needs_refresh_requires_active_state(self):
        for state in (SessionState.REFRESHING, SessionState.EXPIRED, SessionState.REVOKED):
            session = _session(state=state)
            assert not session.needs_refresh(0.8, T0 + timedelta(seconds=99))

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_invalid_threshold_rejected(self, threshold):
        session = _session()
        with pytest.raises(ValueError, match="between 0 and 1"):
            session.needs_refresh(threshold, T0)

    def test_threshold_bounds_are_accepted(self):
        session = _session()
        assert session.needs_refresh(0.0, T0)
        assert not session.needs_refresh(1.0, T0 + timedelta(seconds=99))


class TestSessionSnapshot:
    """Tests for Session.snapshot()."""

    def test_snapshot_is_detached(self):
        session = _session(groups=["a"], claims={"roles": ["admin"]})
        snap = session.snapshot()

        session.state = SessionState.REVOKED
        session.groups.append("b")
        session.claims["roles"].append("owner")

        assert snap.state == SessionState.ACTIVE
        assert snap.groups == ["a"]
        assert snap.claims == {"roles": ["admin"]}

    def test_tokens_hidden_from_repr(self):
        session = _session(access_token="secret-access")
        assert "secret-access" not in repr(session)
        assert "secret-access" not in repr(AuthResult(is_authenticated=True, access_token="secret-access"))


class TestAuthResult:
    """Tests for AuthResult."""

    def test_defaults(self):
        result = AuthResult(is_authenticated=True, user_id="u")
        assert result.directory_type == DirectoryType.OTHER
        assert result.authentication_mode == AuthenticationMode.FEDERATED

    def test_failed(self):
        result = AuthResult.failed("bad password")
        assert result.is_authenticated is False
        assert result.error_message == "bad password"


class TestCredential:
    """Tests for the Credential record."""

    def test_no_expiry_never_expires(self):
        credential = Credential(user_id="u", expires_at=None)
        assert not credential.is_expired(T0 + timedelta(days=3650))

    def test_expiry(self):
        credential = Credential(user_id="u", expires_at=T0)
        assert credential.is_expired(T0)
        assert not credential.is_expired(T0 - timedelta(seconds=1))

    def test_can_refresh(self):
        assert Credential(user_id="u", refresh_token="rt").can_refresh
        assert not Credential(user_id="u").can_refresh

    def test_copy_has_own_metadata(self):
        credential = Credential(user_id="u", metadata={"a": "1"})
        copied = credential.copy()
        copied.metadata["a"] = "2"
        assert credential.metadata["a"] == "1"

    def test_dict_round_trip(self):
        credential = Credential(
            user_id="u",
            username="jdoe",
            credential_type=CredentialType.REFRESH_TOKEN,
            access_token="at",
            refresh_token="rt",
            created_at=T0,
            expires_at=T0 + timedelta(hours=1),
            directory_type=DirectoryType.OPEN_LDAP,
            metadata={"k": "v"},
        )
        assert Credential.from_dict(credential.to_dict()) == credential

    def test_from_dict_missing_user_id(self):
        with pytest.raises(KeyError):
            Credential.from_dict({"created_at": T0.isoformat()})


class TestSessionCredentialProjection:
    """Tests for credential_from_session() and session_from_credential()."""

    def test_session_key(self):
        assert session_key("abc") == "sso:session:abc"

    def test_round_trip_preserves_session(self):
        session = _session(
            access_token="at",
            email="jdoe@example.org",
            display_name="J. Doe",
            user_distinguished_name="CN=jdoe,DC=example,DC=org",
            authentication_mode=AuthenticationMode.KERBEROS,
            directory_type=DirectoryType.ACTIVE_DIRECTORY,
            last_refreshed_at=T0 + timedelta(seconds=10),
            last_activity_at=T0 + timedelta(seconds=20),
            device_id="laptop-1",
            ip_address="10.0.0.1",
            user_agent="agent/1.0",
            groups=["staff", "admins"],
            claims={"tid": "t1", "amr": ["pwd"]},
        )

        credential = credential_from_session(session)
        restored = session_from_credential("sess-1", credential, now=T0)

        assert restored == session

    def test_credential_carries_tokens_and_expiry(self):
        session = _session(access_token="at")
        credential = credential_from_session(session)

        assert credential.user_id == "user-1"
        assert credential.access_token == "at"
        assert credential.refresh_token == "rt"
        assert credential.expires_at == session.expires_at
        assert credential.metadata["session_id"] == "sess-1"
        assert credential.metadata["state"] == "active"

    def test_missing_metadata_fallbacks(self):
        now = T0 + timedelta(minutes=5)
        credential = Credential(user_id="user-9", access_token="at", expires_at=None)

        session = session_from_credential("sess-9", credential, now=now)

        assert session.username == "user-9"
        assert session.created_at == now
        assert session.expires_at == now
        assert session.state == SessionState.ACTIVE
        assert session.groups is None
        assert session.claims is None

    def test_refreshing_state_restored_as_active(self):
        session = _session(state=SessionState.REFRESHING)
        restored = session_from_credential("sess-1", credential_from_session(session), now=T0)
        assert restored.state == SessionState.ACTIVE

    def test_malformed_state_rejected(self):
        credential = Credential(user_id="u", metadata={"state": "bogus"})
        with pytest.raises(ValueError):
            session_from_credential("s", credential, now=T0)


class TestValidationResult:
    """Tests for ValidationResult."""

    def test_success(self):
        session = _session()
        result = ValidationResult.success(session)
        assert result.is_valid
        assert result.session is session
        assert result.failure_reason is None

    def test_failed_uses_default_message(self):
        result = ValidationResult.failed(ValidationFailureReason.SESSION_REVOKED)
        assert not result.is_valid
        assert result.session is None
        assert result.error_message == "The session has been revoked."

    def test_failed_with_custom_message(self):
        result = ValidationResult.failed(ValidationFailureReason.VALIDATION_ERROR, "boom")
        assert result.error_message == "boom"

    def test_every_reason_has_a_message(self):
        for reason in ValidationFailureReason:
            assert DEFAULT_FAILURE_MESSAGES[reason]
