"""Session lifecycle events and an in-process event bus.

Events are immutable records carrying a snapshot of the session they concern.
Handlers subscribe by event class; subscribing to a base class receives every
subclass, so ``subscribe(SessionEvent, handler)`` observes everything.

Handlers run synchronously on the publishing task. A failing handler is
logged and skipped; it never affects the operation that published the event
or the remaining handlers.

Example:
    bus = EventBus()
    bus.subscribe(SessionRevoked, lambda ev: audit(ev.session.session_id))
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TypeVar

from ssokeeper.models.session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionEvent:
    """Base class for all session events.

    Attributes:
        session: Snapshot of the session at publication time
        occurred_at: When the event was raised
    """

    session: Session
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def session_id(self) -> str:
        return self.session.session_id


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionCreated(SessionEvent):
    """A session was created after a successful login."""


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionRefreshed(SessionEvent):
    """A session was refreshed and its expiry moved."""

    previous_expires_at: datetime
    new_expires_at: datetime


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionExpired(SessionEvent):
    """A session was found past its expiry time."""

    was_revoked: bool = False


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionRevoked(SessionEvent):
    """A session was explicitly revoked."""

    revoked_at: datetime


@dataclass(frozen=True, slots=True, kw_only=True)
class SessionExpiring(SessionEvent):
    """An active session is about to expire."""

    time_to_expiry: timedelta


@dataclass(frozen=True, slots=True, kw_only=True)
class RefreshNeeded(SessionEvent):
    """The refresh scheduler found a session past its refresh threshold."""

    elapsed_fraction: float
    time_to_expiry: timedelta


@dataclass(frozen=True, slots=True, kw_only=True)
class RefreshCompleted(SessionEvent):
    """A scheduled or forced refresh succeeded."""

    new_expires_at: datetime
    duration: timedelta


@dataclass(frozen=True, slots=True, kw_only=True)
class RefreshFailed(SessionEvent):
    """A scheduled or forced refresh failed.

    Attributes:
        error: The exception raised by the refresh
        will_retry: Whether another attempt is scheduled
        retry_attempt: Number of consecutive failures so far
        max_retries: Configured attempt limit
    """

    error: BaseException
    will_retry: bool
    retry_attempt: int
    max_retries: int


E = TypeVar("E", bound=SessionEvent)
EventHandler = Callable[[E], None]


class EventBus:
    """Synchronous publish/subscribe dispatcher for session events."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[type[SessionEvent], Callable[[SessionEvent], None]]] = []

    def subscribe(
        self,
        event_type: type[E],
        handler: Callable[[E], None],
    ) -> Callable[[], None]:
        """Register a handler for an event class and its subclasses.

        Args:
            event_type: Event class to observe.
            handler: Callable invoked with each matching event.

        Returns:
            A callable that removes this subscription.

        Raises:
            ValueError: If handler is not callable.
        """
        if not callable(handler):
            raise ValueError("handler must be callable")
        entry = (event_type, handler)
        with self._lock:
            self._subscribers.append(entry)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)  # type: ignore[arg-type]

        return unsubscribe

    def unsubscribe(self, handler: Callable[..., None]) -> int:
        """Remove every subscription of a handler.

        Returns:
            Number of subscriptions removed.
        """
        with self._lock:
            before = len(self._subscribers)
            self._subscribers = [s for s in self._subscribers if s[1] is not handler]
            return before - len(self._subscribers)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: SessionEvent) -> int:
        """Deliver an event to every matching handler.

        Returns:
            Number of handlers that completed without raising.
        """
        with self._lock:
            handlers = [h for t, h in self._subscribers if isinstance(event, t)]

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Event handler failed: event=%s, session_id=%s, handler=%s",
                    type(event).__name__,
                    event.session_id,
                    getattr(handler, "__name__", repr(handler)),
                )
        return delivered
