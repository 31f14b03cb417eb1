"""Background refresh of sessions approaching expiry.

This module provides the RefreshScheduler, which decides independently of
request traffic which sessions need a proactive refresh:
- Sessions with a refresh token are registered at creation
- A periodic check refreshes sessions past the refresh threshold
- Failed refreshes are retried with exponential backoff from an explicit
  retry queue
- Registrations whose retries are exhausted are dropped; the session stays in
  the store and expires naturally unless refreshed manually

The scheduler owns its asyncio task. stop() cancels the task together with
any pending retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ssokeeper.services import metrics as m
from ssokeeper.services.events import (
    EventBus,
    RefreshCompleted,
    RefreshFailed,
    RefreshNeeded,
)
from ssokeeper.services.session_manager import (
    SessionInvalidStateError,
    SessionNotFoundError,
    SessionRefreshInProgressError,
)

if TYPE_CHECKING:
    from ssokeeper.core.config import SessionSettings
    from ssokeeper.models.session import Session
    from ssokeeper.services.metrics import SessionMetrics
    from ssokeeper.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class SessionRefreshRegistration:
    """Refresh bookkeeping for one registered session.

    Attributes:
        session: The live session record.
        registered_at: When the session was (re-)registered.
        last_refresh_attempt: When a refresh was last attempted.
        retry_count: Consecutive failed attempts.
        next_retry_at: When the next retry is due (None = no retry pending).
    """

    session: Session
    registered_at: datetime
    last_refresh_attempt: datetime | None = None
    retry_count: int = 0
    next_retry_at: datetime | None = None

    @property
    def session_id(self) -> str:
        return self.session.session_id


class RefreshScheduler:
    """Proactively refreshes registered sessions.

    Example:
        scheduler = RefreshScheduler(manager, settings.session)
        manager.attach_scheduler(scheduler)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        manager: SessionManager,
        settings: SessionSettings,
        *,
        event_bus: EventBus | None = None,
        metrics: SessionMetrics | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            manager: Session manager performing the refreshes.
            settings: Refresh threshold, interval and retry policy.
            event_bus: Bus receiving refresh events (the manager's if omitted).
            metrics: Metrics registry (the manager's if omitted).
            clock: Source of the current UTC time (the manager's if omitted).
        """
        self._manager = manager
        self._settings = settings
        self._events = event_bus or manager.events
        self._metrics = metrics or manager.metrics
        self._clock = clock or manager.now

        self._lock = threading.Lock()
        self._registrations: dict[str, SessionRefreshRegistration] = {}

        self._successful = 0
        self._failed = 0
        self._last_check_time: datetime | None = None
        self._next_check_time: datetime | None = None

        self._task: asyncio.Task[None] | None = None
        self._shutdown: asyncio.Event | None = None
        self._wake: asyncio.Event | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def registered_count(self) -> int:
        with self._lock:
            return len(self._registrations)

    @property
    def pending_retry_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._registrations.values() if r.next_retry_at is not None)

    @property
    def successful_refresh_count(self) -> int:
        return self._successful

    @property
    def failed_refresh_count(self) -> int:
        return self._failed

    @property
    def last_check_time(self) -> datetime | None:
        return self._last_check_time

    @property
    def next_check_time(self) -> datetime | None:
        return self._next_check_time

    def register(self, session: Session) -> bool:
        """Register a session for background refresh.

        Re-registering replaces the existing entry and resets its retries.
        Sessions without a refresh token are ignored.

        Returns:
            True if the session is now registered.
        """
        if session.refresh_token is None:
            logger.debug(
                "Refresh registration skipped, no refresh token: session_id=%s",
                session.session_id,
            )
            return False

        with self._lock:
            self._registrations[session.session_id] = SessionRefreshRegistration(
                session=session,
                registered_at=self._clock(),
            )
        logger.debug("Session registered for refresh: session_id=%s", session.session_id)
        return True

    def unregister(self, session_id: str) -> bool:
        """Remove a session's registration, dropping any pending retry."""
        with self._lock:
            removed = self._registrations.pop(session_id, None) is not None
        if removed:
            logger.debug("Session unregistered from refresh: session_id=%s", session_id)
        return removed

    def update_registration(self, session: Session) -> None:
        """Record a successful refresh: reset retries, or register if absent."""
        with self._lock:
            registration = self._registrations.get(session.session_id)
            if registration is not None:
                registration.session = session
                registration.retry_count = 0
                registration.next_retry_at = None
                return
        self.register(session)

    def is_registered(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._registrations

    def get_registration(self, session_id: str) -> SessionRefreshRegistration | None:
        with self._lock:
            return self._registrations.get(session_id)

    def _snapshot(self) -> list[SessionRefreshRegistration]:
        with self._lock:
            return list(self._registrations.values())

    async def tick(self) -> int:
        """Run one periodic check.

        Refreshes registered sessions past the refresh threshold (emitting
        RefreshNeeded first) and runs retries that have fallen due.

        Returns:
            Number of successful refreshes.
        """
        now = self._clock()
        self._last_check_time = now
        self._next_check_time = now + self._settings.refresh_check_interval

        refreshed = await self.run_due_retries(now)

        for registration in self._snapshot():
            if registration.next_retry_at is not None:
                continue
            session = registration.session
            if self._manager.get_session(session.session_id) is not session:
                self._drop_stale(registration)
                continue
            if not session.needs_refresh(self._settings.refresh_threshold, now):
                continue

            self._events.publish(
                RefreshNeeded(
                    session=session.snapshot(),
                    occurred_at=now,
                    elapsed_fraction=session.elapsed_fraction(now),
                    time_to_expiry=session.time_to_expiry(now),
                )
            )
            if await self._attempt(registration):
                refreshed += 1

        logger.debug(
            "Refresh check completed: registered=%d, refreshed=%d, pending_retries=%d",
            self.registered_count,
            refreshed,
            self.pending_retry_count,
        )
        return refreshed

    async def run_due_retries(self, now: datetime | None = None) -> int:
        """Attempt every queued retry whose due time has passed.

        Returns:
            Number of successful refreshes.
        """
        now = now or self._clock()
        with self._lock:
            due = [
                r
                for r in self._registrations.values()
                if r.next_retry_at is not None and r.next_retry_at <= now
            ]
            for registration in due:
                registration.next_retry_at = None

        refreshed = 0
        for registration in due:
            logger.info(
                "Retrying session refresh: session_id=%s, attempt=%d/%d",
                registration.session_id,
                registration.retry_count + 1,
                self._settings.max_refresh_retries,
            )
            if await self._attempt(registration):
                refreshed += 1
        return refreshed

    async def refresh_now(self, session_id: str) -> Session | None:
        """Refresh a registered session immediately, bypassing the timer.

        Returns:
            The refreshed session, or None if the session is not registered
            or the refresh failed.
        """
        with self._lock:
            registration = self._registrations.get(session_id)
            if registration is None:
                return None
            registration.next_retry_at = None

        if await self._attempt(registration):
            return self._manager.get_session(session_id)
        return None

    async def refresh_all_pending(self) -> int:
        """Refresh every registration that is due or waiting for a retry.

        Returns:
            Number of successful refreshes.
        """
        now = self._clock()
        pending = []
        with self._lock:
            for registration in self._registrations.values():
                if registration.next_retry_at is not None or registration.session.needs_refresh(
                    self._settings.refresh_threshold, now
                ):
                    registration.next_retry_at = None
                    pending.append(registration)

        refreshed = 0
        for registration in pending:
            if await self._attempt(registration):
                refreshed += 1
        return refreshed

    def _drop_stale(self, registration: SessionRefreshRegistration) -> None:
        with self._lock:
            if self._registrations.get(registration.session_id) is registration:
                del self._registrations[registration.session_id]
        logger.debug(
            "Dropped refresh registration for unknown session: session_id=%s",
            registration.session_id,
        )

    async def _attempt(self, registration: SessionRefreshRegistration) -> bool:
        session_id = registration.session_id
        now = self._clock()
        registration.last_refresh_attempt = now
        started = time.monotonic()

        try:
            session = await self._manager.refresh_session(session_id)
        except SessionRefreshInProgressError:
            logger.debug("Refresh already in progress: session_id=%s", session_id)
            return False
        except (SessionNotFoundError, SessionInvalidStateError) as e:
            self._record_failure(registration, e, now, retryable=False)
            return False
        except Exception as e:
            self._record_failure(registration, e, now, retryable=True)
            return False

        duration = timedelta(seconds=time.monotonic() - started)
        self._successful += 1
        self._metrics.inc(m.REFRESH_COUNT, tags={"success": True})

        with self._lock:
            registration.retry_count = 0
            registration.next_retry_at = None

        self._events.publish(
            RefreshCompleted(
                session=session.snapshot(),
                occurred_at=self._clock(),
                new_expires_at=session.expires_at,
                duration=duration,
            )
        )
        return True

    def retry_delay(self, retry_count: int) -> timedelta:
        """Delay before the retry following ``retry_count`` consecutive failures."""
        base = self._settings.base_retry_delay
        if not self._settings.use_exponential_backoff:
            return base
        # delay = base * 2^(retry_count - 1)
        return base * (2 ** max(retry_count - 1, 0))

    def _record_failure(
        self,
        registration: SessionRefreshRegistration,
        error: Exception,
        now: datetime,
        *,
        retryable: bool,
    ) -> None:
        max_retries = self._settings.max_refresh_retries
        session_id = registration.session_id

        with self._lock:
            registration.retry_count += 1
            retry_count = registration.retry_count
            will_retry = retryable and retry_count < max_retries
            if will_retry:
                registration.next_retry_at = now + self.retry_delay(retry_count)
            elif self._registrations.get(session_id) is registration:
                del self._registrations[session_id]

        self._failed += 1
        self._metrics.inc(m.REFRESH_COUNT, tags={"success": False})

        if will_retry:
            logger.warning(
                "Session refresh scheduled for retry: session_id=%s, attempt=%d/%d, "
                "retry_at=%s, error=%s",
                session_id,
                retry_count,
                max_retries,
                registration.next_retry_at.isoformat() if registration.next_retry_at else None,
                error,
            )
            if self._wake is not None:
                self._wake.set()
        else:
            logger.error(
                "Session refresh abandoned: session_id=%s, attempts=%d, error=%s",
                session_id,
                retry_count,
                error,
            )

        self._events.publish(
            RefreshFailed(
                session=registration.session.snapshot(),
                occurred_at=now,
                error=error,
                will_retry=will_retry,
                retry_attempt=retry_count,
                max_retries=max_retries,
            )
        )

    def _seconds_until_next_run(self) -> float:
        interval = self._settings.refresh_check_interval.total_seconds()
        with self._lock:
            retry_times = [
                r.next_retry_at for r in self._registrations.values() if r.next_retry_at is not None
            ]
        if not retry_times:
            return interval
        until_retry = (min(retry_times) - self._clock()).total_seconds()
        return max(0.0, min(interval, until_retry))

    async def _run(self) -> None:
        assert self._shutdown is not None and self._wake is not None
        logger.info(
            "Refresh scheduler started: check_interval=%ss, threshold=%s",
            self._settings.refresh_check_interval.total_seconds(),
            self._settings.refresh_threshold,
        )

        while not self._shutdown.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception("Error in refresh scheduler loop: %s", e)

            # Wait for the next check; a newly scheduled retry or shutdown wakes us early
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._seconds_until_next_run())
            self._wake.clear()

        logger.info("Refresh scheduler stopped")

    def start(self) -> None:
        """Start the background check loop on the running event loop."""
        if self.is_running:
            return
        self._shutdown = asyncio.Event()
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="ssokeeper-refresh-scheduler")

    async def stop(self) -> None:
        """Stop the background loop and drop pending retries."""
        if self._shutdown is not None:
            self._shutdown.set()
        if self._wake is not None:
            self._wake.set()

        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        with self._lock:
            dropped = 0
            for registration in self._registrations.values():
                if registration.next_retry_at is not None:
                    registration.next_retry_at = None
                    dropped += 1
        if dropped:
            logger.info("Pending refresh retries dropped: count=%d", dropped)
