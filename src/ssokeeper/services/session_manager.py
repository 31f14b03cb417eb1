"""SSO session lifecycle management.

This module provides the SessionManager, which owns every state transition of
an SSO session:
- Session creation from a successful authentication result
- Validation with expiry, device binding and IP binding checks
- Sliding expiration bounded by an absolute lifetime ceiling
- Token refresh (delegated to an optional refresh executor)
- Per-user session limits with oldest-first eviction or rejection
- Revocation (single, all of a user's, all but the current one)
- Periodic expiry sweep and pre-expiry warnings

Persistence writes happen before the in-memory commit: a failed or cancelled
write leaves the in-memory session untouched. The store lock is never held
across an await.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from ssokeeper.models.credential import (
    credential_from_session,
    session_from_credential,
    session_key,
)
from ssokeeper.models.session import AuthResult, Session, SessionState
from ssokeeper.models.validation import ValidationFailureReason, ValidationResult
from ssokeeper.services import metrics as m
from ssokeeper.services.events import (
    EventBus,
    SessionCreated,
    SessionEvent,
    SessionExpired,
    SessionExpiring,
    SessionRefreshed,
    SessionRevoked,
)
from ssokeeper.services.metrics import SessionMetrics
from ssokeeper.services.session_store import SessionStore

if TYPE_CHECKING:
    from ssokeeper.core.config import SessionSettings
    from ssokeeper.services.credential_store import CredentialStore
    from ssokeeper.services.token_refresh import RefreshExecutor
    from ssokeeper.worker.refresh_scheduler import RefreshScheduler

logger = logging.getLogger(__name__)

SESSION_ID_BYTES = 32  # 256 bits of entropy


class SessionError(Exception):
    """Base exception for session operations."""

    pass


class SessionInvalidArgumentError(SessionError, ValueError):
    """Raised when a required identifier is missing or malformed."""

    pass


class SessionInvalidStateError(SessionError):
    """Raised when an operation is not valid for the session's current state."""

    pass


class SessionLimitExceededError(SessionInvalidStateError):
    """Raised when a user is at the session limit and eviction is disabled."""

    pass


class SessionRefreshInProgressError(SessionInvalidStateError):
    """Raised when a refresh is requested while another is in flight."""

    pass


class SessionNotFoundError(SessionError):
    """Raised when a session is unknown to the store."""

    pass


class SessionManager:
    """Manages SSO sessions for authenticated users.

    Example:
        manager = SessionManager(settings.session, credential_store=store)
        scheduler = RefreshScheduler(manager, settings.session)
        manager.attach_scheduler(scheduler)

        session = await manager.create_session(auth_result, device_id="laptop-1")
        result = await manager.validate_session(session.session_id, device_id="laptop-1")
        if not result.is_valid:
            print(result.error_message)

        await manager.revoke_session(session.session_id)

    Sessions returned by the manager are live records: holders observe later
    transitions (e.g. revocation) but must not mutate them directly.
    """

    def __init__(
        self,
        settings: SessionSettings,
        *,
        credential_store: CredentialStore | None = None,
        refresh_executor: RefreshExecutor | None = None,
        event_bus: EventBus | None = None,
        metrics: SessionMetrics | None = None,
        store: SessionStore | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            settings: Session lifetime, refresh and binding policy.
            credential_store: Optional persistence for session credentials.
            refresh_executor: Optional provider-side token exchange.
            event_bus: Bus receiving lifecycle events (a private one if omitted).
            metrics: Metrics registry (a private one if omitted).
            store: In-memory session store (a new one if omitted).
            clock: Source of the current UTC time.
        """
        self._settings = settings
        self._credential_store = credential_store
        self._refresh_executor = refresh_executor
        self._events = event_bus or EventBus()
        self._metrics = metrics or SessionMetrics()
        self._store = store or SessionStore()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._scheduler: RefreshScheduler | None = None
        self._expiry_warnings: dict[str, datetime] = {}

    @property
    def settings(self) -> SessionSettings:
        return self._settings

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def scheduler(self) -> RefreshScheduler | None:
        return self._scheduler

    def now(self) -> datetime:
        """Current time according to the manager's clock."""
        return self._clock()

    def attach_scheduler(self, scheduler: RefreshScheduler | None) -> None:
        """Wire the refresh scheduler that receives session registrations."""
        self._scheduler = scheduler

    @property
    def _persistence_enabled(self) -> bool:
        return self._settings.persist_sessions and self._credential_store is not None

    def _auto_refresh_eligible(self, session: Session) -> bool:
        return (
            self._settings.enable_auto_refresh
            and self._scheduler is not None
            and session.refresh_token is not None
        )

    def _emit(self, event: SessionEvent) -> None:
        self._events.publish(event)

    def _update_active_gauge(self) -> None:
        self._metrics.set_gauge(m.ACTIVE_SESSIONS, self.get_active_session_count())

    async def _persist(self, session: Session) -> None:
        if self._persistence_enabled:
            assert self._credential_store is not None
            await self._credential_store.store(
                session_key(session.session_id),
                credential_from_session(session),
            )

    async def _forget(self, session_id: str) -> None:
        if self._credential_store is not None:
            await self._credential_store.remove(session_key(session_id))

    def _new_session_id(self) -> str:
        while True:
            session_id = secrets.token_urlsafe(SESSION_ID_BYTES)
            if not self._store.contains(session_id) and not self._store.is_revoked(session_id):
                return session_id

    async def create_session(
        self,
        auth_result: AuthResult,
        device_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Session:
        """Create a session from a successful authentication.

        Args:
            auth_result: Outcome of the identity provider login.
            device_id: Device the session is created from.
            ip_address: Client IP address.
            user_agent: Client user agent.

        Returns:
            The new (live) session.

        Raises:
            SessionInvalidStateError: If the authentication did not succeed.
            SessionInvalidArgumentError: If the result carries no user id.
            SessionLimitExceededError: If the user is at the session limit and
                eviction is disabled.
        """
        if not auth_result.is_authenticated:
            raise SessionInvalidStateError(
                "Cannot create a session from a failed authentication"
                + (f": {auth_result.error_message}" if auth_result.error_message else "")
            )
        if not auth_result.user_id:
            raise SessionInvalidArgumentError("Authentication result has no user_id")

        user_id = auth_result.user_id
        await self._enforce_session_limit(user_id)

        now = self.now()
        ceiling = now + self._settings.max_session_duration
        expires_at = auth_result.expires_at or now + self._settings.default_session_duration
        expires_at = max(min(expires_at, ceiling), now)

        session = Session(
            session_id=self._new_session_id(),
            user_id=user_id,
            username=auth_result.username or user_id,
            created_at=now,
            expires_at=expires_at,
            state=SessionState.ACTIVE,
            user_distinguished_name=auth_result.user_distinguished_name,
            email=auth_result.email,
            display_name=auth_result.display_name,
            access_token=auth_result.access_token,
            refresh_token=auth_result.refresh_token,
            authentication_mode=auth_result.authentication_mode,
            directory_type=auth_result.directory_type,
            last_activity_at=now,
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            groups=list(auth_result.groups) if auth_result.groups is not None else None,
            claims=dict(auth_result.claims) if auth_result.claims is not None else None,
        )

        await self._persist(session)
        self._store.insert(session)

        if self._auto_refresh_eligible(session):
            assert self._scheduler is not None
            self._scheduler.register(session)

        self._metrics.inc(m.SESSIONS_CREATED, tags={"directory": session.directory_type.value})
        self._update_active_gauge()

        logger.info(
            "Session created: session_id=%s, user_id=%s, expires_at=%s, auto_refresh=%s",
            session.session_id,
            user_id,
            expires_at.isoformat(),
            self._auto_refresh_eligible(session),
        )

        self._emit(SessionCreated(session=session.snapshot(), occurred_at=now))
        return session

    async def _enforce_session_limit(self, user_id: str) -> None:
        limit = self._settings.max_sessions_per_user
        if limit <= 0:
            return

        existing = self._store.user_sessions(user_id)
        if len(existing) < limit:
            return

        if not self._settings.revoke_oldest_on_max_reached:
            logger.warning(
                "Session limit reached: user_id=%s, count=%d, limit=%d",
                user_id,
                len(existing),
                limit,
            )
            raise SessionLimitExceededError(
                f"User {user_id} already has {len(existing)} sessions (limit {limit})"
            )

        oldest_first = sorted(existing, key=lambda s: s.created_at)
        for session in oldest_first[: len(existing) - limit + 1]:
            logger.info(
                "Evicting oldest session: session_id=%s, user_id=%s, limit=%d",
                session.session_id,
                user_id,
                limit,
            )
            await self.revoke_session(session.session_id)

    async def validate_session(
        self,
        session_id: str,
        device_id: str | None = None,
        ip_address: str | None = None,
    ) -> ValidationResult:
        """Validate a session for use.

        Never raises for validation outcomes; inspect the returned result.

        Args:
            session_id: Session to validate.
            device_id: Device presenting the session.
            ip_address: IP address presenting the session.

        Returns:
            ValidationResult with the session on success, or a failure reason.
        """
        result = await self._validate(session_id, device_id, ip_address)
        outcome = "valid" if result.is_valid else result.failure_reason.value  # type: ignore[union-attr]
        self._metrics.inc(m.VALIDATION_COUNT, tags={"outcome": outcome})
        return result

    async def _validate(
        self,
        session_id: str,
        device_id: str | None,
        ip_address: str | None,
    ) -> ValidationResult:
        if not session_id:
            return ValidationResult.failed(ValidationFailureReason.SESSION_NOT_FOUND)

        if self._store.is_revoked(session_id):
            logger.debug("Session validation failed: revoked, session_id=%s", session_id)
            return ValidationResult.failed(ValidationFailureReason.SESSION_REVOKED)

        session = self._store.get(session_id)
        if session is None and self._persistence_enabled:
            try:
                session = await self._restore_session(session_id)
            except Exception:
                logger.exception(
                    "Session validation failed: could not load persisted session, session_id=%s",
                    session_id,
                )
                return ValidationResult.failed(ValidationFailureReason.VALIDATION_ERROR)

        if session is None:
            logger.debug("Session validation failed: not found, session_id=%s", session_id)
            return ValidationResult.failed(ValidationFailureReason.SESSION_NOT_FOUND)

        now = self.now()
        newly_expired = False
        with self._store.lock():
            state = session.state
            if state != SessionState.REVOKED and (
                state == SessionState.EXPIRED or session.is_expired(now)
            ):
                newly_expired = state != SessionState.EXPIRED
                session.state = SessionState.EXPIRED
                state = SessionState.EXPIRED

        if state == SessionState.REVOKED:
            return ValidationResult.failed(ValidationFailureReason.SESSION_REVOKED)

        if state == SessionState.EXPIRED:
            if newly_expired:
                logger.info("Session expired: session_id=%s, user_id=%s", session_id, session.user_id)
                self._metrics.inc(m.SESSIONS_EXPIRED)
                self._emit(SessionExpired(session=session.snapshot(), occurred_at=now))
            return ValidationResult.failed(ValidationFailureReason.SESSION_EXPIRED)

        if (
            self._settings.enforce_device_binding
            and session.device_id is not None
            and device_id is not None
            and session.device_id.casefold() != device_id.casefold()
        ):
            logger.warning(
                "Device mismatch: session_id=%s, expected=%s, actual=%s",
                session_id,
                session.device_id,
                device_id,
            )
            return ValidationResult.failed(ValidationFailureReason.DEVICE_MISMATCH)

        if (
            self._settings.enforce_ip_binding
            and session.ip_address is not None
            and ip_address is not None
            and session.ip_address != ip_address
        ):
            logger.warning(
                "IP mismatch: session_id=%s, expected=%s, actual=%s",
                session_id,
                session.ip_address,
                ip_address,
            )
            return ValidationResult.failed(ValidationFailureReason.IP_MISMATCH)

        if self._settings.sliding_enabled:
            try:
                await self._extend(session, now)
            except Exception:
                logger.exception(
                    "Session validation failed: could not persist activity, session_id=%s",
                    session_id,
                )
                return ValidationResult.failed(ValidationFailureReason.VALIDATION_ERROR)

        return ValidationResult.success(session)

    async def _restore_session(self, session_id: str) -> Session | None:
        """Load a session from the credential store and cache it in memory."""
        assert self._credential_store is not None
        credential = await self._credential_store.get(session_key(session_id))
        if credential is None:
            return None

        restored = session_from_credential(session_id, credential, now=self.now())
        if restored.state == SessionState.REVOKED:
            self._store.mark_revoked(session_id, self.now())
            return restored

        with self._store.lock():
            existing = self._store.get(session_id)
            if existing is not None:
                return existing
            if self._store.is_revoked(session_id):
                return None
            self._store.insert(restored)

        logger.info(
            "Session restored from credential store: session_id=%s, user_id=%s",
            session_id,
            restored.user_id,
        )

        if restored.state == SessionState.ACTIVE and self._auto_refresh_eligible(restored):
            assert self._scheduler is not None
            self._scheduler.register(restored)

        self._update_active_gauge()
        return restored

    async def touch_session(self, session_id: str) -> None:
        """Record activity and apply sliding expiration.

        No-op when sliding expiration is disabled or the session is unknown.
        """
        if not self._settings.sliding_enabled:
            return
        session = self._store.get(session_id)
        if session is None:
            return
        await self._extend(session, self.now())

    async def _extend(self, session: Session, now: datetime) -> None:
        sliding = self._settings.sliding_expiration
        if sliding is None:
            return

        ceiling = session.created_at + self._settings.max_session_duration
        with self._store.lock():
            if session.state in (SessionState.REVOKED, SessionState.EXPIRED):
                return
            candidate = min(now + sliding, ceiling)
            projected = session.snapshot()
            projected.last_activity_at = now
            if candidate > projected.expires_at:
                projected.expires_at = candidate

        await self._persist(projected)

        with self._store.lock():
            if session.state == SessionState.REVOKED:
                return
            session.last_activity_at = now
            if candidate > session.expires_at:
                session.expires_at = candidate

    async def refresh_session(self, session_id: str) -> Session:
        """Refresh a session and extend its expiry.

        The provider exchange (when a refresh executor is configured) runs
        while the session is marked ``refreshing``; validators keep treating
        it as valid in the meantime.

        Args:
            session_id: Session to refresh.

        Returns:
            The refreshed (live) session.

        Raises:
            SessionNotFoundError: If the session is not in the store.
            SessionInvalidStateError: If the session is revoked or has no
                refresh token.
            SessionRefreshInProgressError: If another refresh is in flight.
        """
        with self._store.lock():
            session = self._store.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            if session.state == SessionState.REVOKED:
                raise SessionInvalidStateError(f"Session is revoked: {session_id}")
            if session.refresh_token is None:
                raise SessionInvalidStateError(f"Session has no refresh token: {session_id}")
            if session.state == SessionState.REFRESHING:
                raise SessionRefreshInProgressError(f"Refresh already in progress: {session_id}")
            session.state = SessionState.REFRESHING
            previous_expires_at = session.expires_at
            request = session.snapshot()

        started = time.monotonic()
        try:
            tokens = None
            if self._refresh_executor is not None:
                tokens = await self._refresh_executor.refresh(request)

            now = self.now()
            new_expires_at = now + self._settings.default_session_duration
            if tokens is not None and tokens.expires_at is not None:
                new_expires_at = min(tokens.expires_at, new_expires_at)
            new_expires_at = min(
                new_expires_at,
                session.created_at + self._settings.max_session_duration,
            )

            projected = request
            projected.state = SessionState.ACTIVE
            projected.expires_at = new_expires_at
            projected.last_refreshed_at = now
            if tokens is not None:
                projected.access_token = tokens.access_token
                if tokens.refresh_token:
                    projected.refresh_token = tokens.refresh_token

            await self._persist(projected)

            with self._store.lock():
                revoked = session.state == SessionState.REVOKED
                if not revoked:
                    session.expires_at = new_expires_at
                    session.last_refreshed_at = now
                    session.access_token = projected.access_token
                    session.refresh_token = projected.refresh_token
                    session.state = SessionState.ACTIVE
        except (Exception, asyncio.CancelledError):
            with self._store.lock():
                if session.state == SessionState.REFRESHING:
                    session.state = SessionState.ACTIVE
            raise

        if revoked:
            await self._forget(session_id)
            raise SessionInvalidStateError(f"Session was revoked during refresh: {session_id}")

        if self._auto_refresh_eligible(session):
            assert self._scheduler is not None
            self._scheduler.update_registration(session)

        self._metrics.observe(m.REFRESH_DURATION, time.monotonic() - started)

        logger.info(
            "Session refreshed: session_id=%s, user_id=%s, expires_at=%s",
            session_id,
            session.user_id,
            new_expires_at.isoformat(),
        )

        self._emit(
            SessionRefreshed(
                session=session.snapshot(),
                occurred_at=now,
                previous_expires_at=previous_expires_at,
                new_expires_at=new_expires_at,
            )
        )
        return session

    async def revoke_session(self, session_id: str) -> bool:
        """Revoke a session. Revoking an unknown or revoked session is a no-op.

        Returns:
            True if a session was revoked by this call.
        """
        if not session_id:
            return False

        now = self.now()
        with self._store.lock():
            session = self._store.remove(session_id)
            if session is not None:
                session.state = SessionState.REVOKED
                self._store.mark_revoked(session_id, now)

        if session is None:
            if self._credential_store is not None and not self._store.is_revoked(session_id):
                if await self._credential_store.remove(session_key(session_id)):
                    self._store.mark_revoked(session_id, now)
                    logger.info("Persisted session revoked: session_id=%s", session_id)
            return False

        self._expiry_warnings.pop(session_id, None)
        if self._scheduler is not None:
            self._scheduler.unregister(session_id)

        try:
            await self._forget(session_id)
        finally:
            self._metrics.inc(m.SESSIONS_REVOKED)
            self._metrics.observe(m.SESSION_DURATION, (now - session.created_at).total_seconds())
            self._update_active_gauge()
            logger.info("Session revoked: session_id=%s, user_id=%s", session_id, session.user_id)
            self._emit(SessionRevoked(session=session.snapshot(), occurred_at=now, revoked_at=now))

        return True

    async def revoke_all_user_sessions(self, user_id: str) -> int:
        """Revoke every session a user has at call time.

        Returns:
            Number of sessions revoked.
        """
        if not user_id:
            raise SessionInvalidArgumentError("user_id is required")

        revoked = 0
        for session_id in self._store.user_session_ids(user_id):
            if await self.revoke_session(session_id):
                revoked += 1

        logger.info("User sessions revoked: user_id=%s, count=%d", user_id, revoked)
        return revoked

    async def revoke_other_sessions(self, user_id: str, except_session_id: str) -> int:
        """Revoke every session of a user except one (e.g. the current one).

        Returns:
            Number of sessions revoked.
        """
        if not user_id:
            raise SessionInvalidArgumentError("user_id is required")

        revoked = 0
        for session_id in self._store.user_session_ids(user_id):
            if session_id == except_session_id:
                continue
            if await self.revoke_session(session_id):
                revoked += 1

        logger.info(
            "Other user sessions revoked: user_id=%s, kept=%s, count=%d",
            user_id,
            except_session_id,
            revoked,
        )
        return revoked

    def get_session(self, session_id: str) -> Session | None:
        """Look up a live session in memory."""
        return self._store.get(session_id)

    def get_user_sessions(self, user_id: str) -> list[Session]:
        """All in-memory sessions of a user."""
        return self._store.user_sessions(user_id)

    def get_user_session_count(self, user_id: str) -> int:
        return self._store.user_session_count(user_id)

    def get_active_session_count(self) -> int:
        """Number of sessions that are active and not expired."""
        now = self.now()
        return sum(1 for s in self._store.all_sessions() if s.is_active(now))

    async def sweep_expired_sessions(self) -> int:
        """Remove expired sessions from memory and persistence.

        Also forgets revocation tombstones older than the maximum session
        lifetime, since those ids could no longer validate anyway.

        Returns:
            Number of sessions removed.
        """
        now = self.now()
        removed = 0

        for session in self._store.all_sessions():
            with self._store.lock():
                if session.state in (SessionState.REVOKED, SessionState.REFRESHING):
                    continue
                if session.state != SessionState.EXPIRED and not session.is_expired(now):
                    continue
                was_marked = session.state == SessionState.EXPIRED

            await self._forget(session.session_id)

            with self._store.lock():
                if self._store.get(session.session_id) is not session:
                    continue
                self._store.remove(session.session_id)
                session.state = SessionState.EXPIRED

            self._expiry_warnings.pop(session.session_id, None)
            if self._scheduler is not None:
                self._scheduler.unregister(session.session_id)

            removed += 1
            self._metrics.observe(
                m.SESSION_DURATION, (session.expires_at - session.created_at).total_seconds()
            )
            logger.info(
                "Expired session removed: session_id=%s, user_id=%s",
                session.session_id,
                session.user_id,
            )
            if not was_marked:
                self._metrics.inc(m.SESSIONS_EXPIRED)
                self._emit(
                    SessionExpired(session=session.snapshot(), occurred_at=now, was_revoked=False)
                )

        pruned = self._store.prune_revoked(now - self._settings.max_session_duration)

        if removed or pruned:
            self._update_active_gauge()
            logger.info("Expiry sweep completed: removed=%d, tombstones_pruned=%d", removed, pruned)
        return removed

    def warn_expiring_sessions(self) -> int:
        """Emit SessionExpiring for active sessions close to expiry.

        Each session is warned once per expiry deadline; an extension
        (refresh or sliding) re-arms the warning.

        Returns:
            Number of warnings emitted.
        """
        now = self.now()
        window = self._settings.expiration_warning_time
        warned = 0

        live_ids = set()
        for session in self._store.all_sessions():
            live_ids.add(session.session_id)
            if not session.is_active(now):
                continue
            remaining = session.time_to_expiry(now)
            if remaining > window:
                continue
            if self._expiry_warnings.get(session.session_id) == session.expires_at:
                continue

            self._expiry_warnings[session.session_id] = session.expires_at
            warned += 1
            logger.info(
                "Session expiring: session_id=%s, user_id=%s, seconds_left=%d",
                session.session_id,
                session.user_id,
                int(remaining.total_seconds()),
            )
            self._emit(
                SessionExpiring(
                    session=session.snapshot(),
                    occurred_at=now,
                    time_to_expiry=remaining,
                )
            )

        for session_id in list(self._expiry_warnings):
            if session_id not in live_ids:
                del self._expiry_warnings[session_id]

        return warned

    def close(self) -> None:
        """Drop all in-memory state. Persisted credentials are kept."""
        count = self._store.count()
        self._store.clear()
        self._expiry_warnings.clear()
        logger.info("Session manager closed: sessions_dropped=%d", count)
