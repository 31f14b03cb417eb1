"""In-memory session store.

Holds live sessions keyed by session id, a per-user index of session ids, and
revocation tombstones for recently revoked ids. All access is serialized by a
single re-entrant lock; the store never performs I/O, so the lock is never
held across an await.
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager
from datetime import UTC, datetime

from ssokeeper.models.session import Session

logger = logging.getLogger(__name__)


class SessionStore:
    """Thread-safe table of live sessions with a per-user index.

    Session objects returned by the store are the live records. Mutations of
    those records by the session manager happen under ``lock()``.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._user_index: dict[str, set[str]] = {}
        self._revoked: dict[str, datetime] = {}

    def lock(self) -> AbstractContextManager[bool]:
        """The lock guarding the store and in-place session mutations."""
        return self._lock

    def insert(self, session: Session) -> None:
        """Insert a session, replacing any record with the same id."""
        with self._lock:
            previous = self._sessions.get(session.session_id)
            if previous is not None and previous.user_id != session.user_id:
                self._unindex(previous)
            self._sessions[session.session_id] = session
            self._user_index.setdefault(session.user_id, set()).add(session.session_id)

    def get(self, session_id: str) -> Session | None:
        """Look up a live session."""
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        """Remove a session from the table and the user index.

        Returns:
            The removed session, or None if it was not present.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._unindex(session)
            return session

    def _unindex(self, session: Session) -> None:
        ids = self._user_index.get(session.user_id)
        if ids is None:
            return
        ids.discard(session.session_id)
        if not ids:
            del self._user_index[session.user_id]

    def contains(self, session_id: str) -> bool:
        """Check whether a session id is live in the store."""
        with self._lock:
            return session_id in self._sessions

    def user_session_ids(self, user_id: str) -> list[str]:
        """Point-in-time list of a user's session ids."""
        with self._lock:
            return list(self._user_index.get(user_id, ()))

    def user_sessions(self, user_id: str) -> list[Session]:
        """Point-in-time list of a user's sessions."""
        with self._lock:
            return [
                self._sessions[sid]
                for sid in self._user_index.get(user_id, ())
                if sid in self._sessions
            ]

    def user_session_count(self, user_id: str) -> int:
        """Number of live sessions for a user."""
        with self._lock:
            return len(self._user_index.get(user_id, ()))

    def count(self) -> int:
        """Number of live sessions."""
        with self._lock:
            return len(self._sessions)

    def all_sessions(self) -> list[Session]:
        """Point-in-time list of all live sessions."""
        with self._lock:
            return list(self._sessions.values())

    def clear(self) -> None:
        """Drop every session, index entry and tombstone."""
        with self._lock:
            self._sessions.clear()
            self._user_index.clear()
            self._revoked.clear()

    def mark_revoked(self, session_id: str, at: datetime | None = None) -> None:
        """Remember that a session id was revoked."""
        with self._lock:
            self._revoked[session_id] = at or datetime.now(UTC)

    def is_revoked(self, session_id: str) -> bool:
        """Check whether a session id carries a revocation tombstone."""
        with self._lock:
            return session_id in self._revoked

    def prune_revoked(self, older_than: datetime) -> int:
        """Forget tombstones recorded before a cutoff.

        Returns:
            Number of tombstones removed.
        """
        with self._lock:
            stale = [sid for sid, at in self._revoked.items() if at < older_than]
            for sid in stale:
                del self._revoked[sid]
        if stale:
            logger.debug("Pruned revocation tombstones: count=%d", len(stale))
        return len(stale)
