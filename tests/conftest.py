"""Pytest configuration and shared fixtures.

Session tests run against a controllable clock so that expiry, refresh
thresholds and retry backoff can be exercised without sleeping.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from ssokeeper.core.config import SessionSettings
from ssokeeper.models.session import AuthResult, DirectoryType
from ssokeeper.services.credential_store import InMemoryCredentialStore
from ssokeeper.services.events import EventBus, SessionEvent
from ssokeeper.services.metrics import SessionMetrics
from ssokeeper.services.session_manager import SessionManager

T0 = datetime(2026, 1, 5, 9, 0, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        self.current += delta if delta is not None else timedelta(**kwargs)
        return self.current


# ---------------------------------------------------------------------------
# Clock and settings fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    """Clock starting at a fixed instant."""
    return FakeClock()


@pytest.fixture
def session_settings() -> SessionSettings:
    """Session policy with short, round lifetimes.

    Sessions live 100 seconds, the absolute ceiling is 1000 seconds and
    sliding expiration is disabled unless a test enables it.
    """
    return SessionSettings(
        default_session_duration=timedelta(seconds=100),
        max_session_duration=timedelta(seconds=1000),
        sliding_expiration=None,
        refresh_threshold=0.8,
        refresh_check_interval=timedelta(seconds=10),
        expiration_warning_time=timedelta(seconds=30),
        cleanup_interval=timedelta(seconds=60),
        enable_auto_refresh=True,
        persist_sessions=True,
        max_sessions_per_user=5,
        revoke_oldest_on_max_reached=True,
        enforce_device_binding=False,
        enforce_ip_binding=False,
        max_refresh_retries=3,
        base_retry_delay=timedelta(seconds=5),
        use_exponential_backoff=True,
    )


# ---------------------------------------------------------------------------
# Domain fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def make_auth_result() -> Callable[..., AuthResult]:
    """Factory for successful authentication results."""

    def _make(
        user_id: str = "user-1",
        refresh_token: str | None = "refresh-token-1",
        **overrides,
    ) -> AuthResult:
        values = {
            "is_authenticated": True,
            "user_id": user_id,
            "username": f"{user_id}@example.org",
            "email": f"{user_id}@example.org",
            "display_name": "Test User",
            "directory_type": DirectoryType.AZURE_AD,
            "access_token": "access-token-1",
            "refresh_token": refresh_token,
            "groups": ["staff"],
            "claims": {"tid": "tenant-1"},
        }
        values.update(overrides)
        return AuthResult(**values)

    return _make


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    """Empty in-memory credential store."""
    return InMemoryCredentialStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[SessionEvent]:
    """Every event published on the event_bus fixture, in order."""
    events: list[SessionEvent] = []
    event_bus.subscribe(SessionEvent, events.append)
    return events


@pytest.fixture
def metrics() -> SessionMetrics:
    return SessionMetrics()


@pytest.fixture
def manager(
    session_settings: SessionSettings,
    credential_store: InMemoryCredentialStore,
    event_bus: EventBus,
    metrics: SessionMetrics,
    clock: FakeClock,
) -> SessionManager:
    """Session manager with in-memory persistence and no refresh executor."""
    return SessionManager(
        session_settings,
        credential_store=credential_store,
        event_bus=event_bus,
        metrics=metrics,
        clock=clock,
    )
