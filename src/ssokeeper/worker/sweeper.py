"""Periodic expiry sweep.

Runs the session manager's maintenance at a fixed interval:
- SessionExpiring warnings for sessions close to expiry
- Removal of expired sessions from memory and persistence
- Cleanup of expired credentials left in the credential store
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ssokeeper.services.credential_store import CredentialStore
    from ssokeeper.services.session_manager import SessionManager

logger = logging.getLogger(__name__)


async def sweep_once(
    manager: SessionManager,
    credential_store: CredentialStore | None = None,
) -> int:
    """Run one maintenance pass.

    Args:
        manager: Session manager to sweep.
        credential_store: Store whose expired credentials are cleaned up.

    Returns:
        Number of expired sessions removed.
    """
    manager.warn_expiring_sessions()
    removed = await manager.sweep_expired_sessions()
    if credential_store is not None:
        await credential_store.cleanup_expired(manager.now())
    return removed


async def run_sweeper_loop(
    manager: SessionManager,
    credential_store: CredentialStore | None = None,
    check_interval: float = 300.0,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the expiry sweep as a background task.

    Args:
        manager: Session manager to sweep.
        credential_store: Store whose expired credentials are cleaned up.
        check_interval: Seconds between sweeps.
        shutdown_event: Event to signal shutdown.
    """
    if shutdown_event is None:
        shutdown_event = asyncio.Event()

    logger.info("Expiry sweeper starting: check_interval=%ss", check_interval)

    while not shutdown_event.is_set():
        try:
            removed = await sweep_once(manager, credential_store)
            if removed:
                logger.debug("Sweep removed %d expired sessions", removed)
        except Exception as e:
            logger.exception("Error in sweeper loop: %s", e)

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=check_interval)

    logger.info("Expiry sweeper stopped")
