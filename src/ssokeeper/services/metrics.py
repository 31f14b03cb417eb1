"""In-process session metrics.

Thread-safe counters, gauges and bounded duration samples recorded by the
session manager and the refresh scheduler. A snapshot() is cheap and can be
logged or exported by the host application.

Metric names:
    sso.sessions.created      counter
    sso.sessions.expired      counter
    sso.sessions.revoked      counter
    sso.validations.count     counter, tagged with outcome
    sso.refresh.count         counter, tagged with success
    sso.sessions.active       gauge
    sso.refresh.duration      samples (seconds)
    sso.session.duration      samples (seconds, creation to expiry/revocation)
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Any

SESSIONS_CREATED = "sso.sessions.created"
SESSIONS_EXPIRED = "sso.sessions.expired"
SESSIONS_REVOKED = "sso.sessions.revoked"
VALIDATION_COUNT = "sso.validations.count"
REFRESH_COUNT = "sso.refresh.count"
ACTIVE_SESSIONS = "sso.sessions.active"
REFRESH_DURATION = "sso.refresh.duration"
SESSION_DURATION = "sso.session.duration"

DEFAULT_MAX_SAMPLES = 200

TagKey = tuple[tuple[str, str], ...]


def _tag_key(tags: dict[str, Any] | None) -> TagKey:
    if not tags:
        return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items() if v is not None))


def _format_key(name: str, tags: TagKey) -> str:
    if not tags:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in tags) + "}"


class SessionMetrics:
    """Thread-safe metrics registry with bounded memory."""

    def __init__(self, *, max_samples: int = DEFAULT_MAX_SAMPLES) -> None:
        self._max_samples = max(10, max_samples)
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, TagKey], int] = {}
        self._gauges: dict[tuple[str, TagKey], float] = {}
        self._samples: dict[tuple[str, TagKey], deque[float]] = {}

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._gauges.clear()
            self._samples.clear()

    def inc(self, name: str, n: int = 1, tags: dict[str, Any] | None = None) -> None:
        key = (name, _tag_key(tags))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + n

    def set_gauge(self, name: str, value: float, tags: dict[str, Any] | None = None) -> None:
        key = (name, _tag_key(tags))
        with self._lock:
            self._gauges[key] = value

    def observe(self, name: str, value: float, tags: dict[str, Any] | None = None) -> None:
        key = (name, _tag_key(tags))
        with self._lock:
            samples = self._samples.get(key)
            if samples is None:
                samples = self._samples[key] = deque(maxlen=self._max_samples)
            samples.append(float(value))

    def counter(self, name: str, tags: dict[str, Any] | None = None) -> int:
        """Current value of a counter (0 if never incremented)."""
        with self._lock:
            return self._counters.get((name, _tag_key(tags)), 0)

    def gauge(self, name: str, tags: dict[str, Any] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get((name, _tag_key(tags)))

    def samples(self, name: str, tags: dict[str, Any] | None = None) -> list[float]:
        with self._lock:
            return list(self._samples.get((name, _tag_key(tags)), ()))

    def snapshot(self) -> dict[str, Any]:
        """Flattened view of every metric.

        Returns:
            Dictionary with ``counters``, ``gauges`` and ``durations`` maps.
            Durations are summarized as count/min/max/avg.
        """
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            samples = {k: list(v) for k, v in self._samples.items()}

        durations: dict[str, dict[str, float]] = {}
        for (name, tags), values in samples.items():
            if not values:
                continue
            durations[_format_key(name, tags)] = {
                "count": len(values),
                "min": min(values),
                "max": max(values),
                "avg": sum(values) / len(values),
            }

        return {
            "counters": {_format_key(n, t): v for (n, t), v in counters.items()},
            "gauges": {_format_key(n, t): v for (n, t), v in gauges.items()},
            "durations": durations,
        }
