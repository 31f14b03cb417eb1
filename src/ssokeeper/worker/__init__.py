"""ssokeeper background workers.

- RefreshScheduler: proactive session refresh with retry/backoff
- Expiry sweeper: pre-expiry warnings and expired-session cleanup
- Service runner with graceful SIGTERM/SIGINT shutdown

Usage:
    python -m ssokeeper.worker.main
"""

from ssokeeper.worker.main import SessionRuntime, build_runtime, run
from ssokeeper.worker.refresh_scheduler import RefreshScheduler, SessionRefreshRegistration

__all__ = [
    "RefreshScheduler",
    "SessionRefreshRegistration",
    "SessionRuntime",
    "build_runtime",
    "run",
]
