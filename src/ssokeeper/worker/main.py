"""ssokeeper service entry point.

This module wires the session runtime from configuration and runs it:
- Builds the credential store, refresh executor, session manager and
  refresh scheduler from settings
- Runs the refresh scheduler and the expiry sweeper until shutdown
- Handles graceful shutdown via SIGTERM/SIGINT
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, NoReturn

from ssokeeper.services.credential_store import create_credential_store
from ssokeeper.services.events import EventBus
from ssokeeper.services.metrics import SessionMetrics
from ssokeeper.services.session_manager import SessionManager
from ssokeeper.services.token_refresh import create_refresh_executor
from ssokeeper.worker.refresh_scheduler import RefreshScheduler
from ssokeeper.worker.sweeper import run_sweeper_loop

if TYPE_CHECKING:
    from ssokeeper.core.config import Settings
    from ssokeeper.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0


@dataclass
class SessionRuntime:
    """The wired set of session components.

    Attributes:
        settings: Application settings the runtime was built from.
        manager: Session manager.
        scheduler: Refresh scheduler attached to the manager.
        credential_store: Credential persistence backend.
        event_bus: Bus shared by manager and scheduler.
        metrics: Metrics shared by manager and scheduler.
        shutdown_timeout: Seconds to wait for background tasks on stop.
    """

    settings: Settings
    manager: SessionManager
    scheduler: RefreshScheduler
    credential_store: CredentialStore
    event_bus: EventBus
    metrics: SessionMetrics
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    _shutdown_event: asyncio.Event | None = field(default=None, repr=False)
    _sweeper_task: asyncio.Task[None] | None = field(default=None, repr=False)

    async def start(self) -> None:
        """Start the refresh scheduler and the expiry sweeper."""
        self._shutdown_event = asyncio.Event()
        if self.settings.session.enable_auto_refresh:
            self.scheduler.start()
        self._sweeper_task = asyncio.create_task(
            run_sweeper_loop(
                self.manager,
                self.credential_store,
                check_interval=self.settings.session.cleanup_interval.total_seconds(),
                shutdown_event=self._shutdown_event,
            ),
            name="ssokeeper-sweeper",
        )
        logger.info(
            "Session runtime started: auto_refresh=%s, credential_store=%s",
            self.settings.session.enable_auto_refresh,
            self.settings.credential_store.provider.value,
        )

    async def stop(self) -> None:
        """Stop background tasks and release in-memory state."""
        if self._shutdown_event is not None:
            self._shutdown_event.set()

        await self.scheduler.stop()

        task = self._sweeper_task
        self._sweeper_task = None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=self.shutdown_timeout)
            except TimeoutError:
                logger.warning("Sweeper did not stop within timeout, forcing shutdown")
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        self.manager.close()
        logger.info(
            "Session runtime stopped: refreshed=%d, refresh_failures=%d, metrics=%s",
            self.scheduler.successful_refresh_count,
            self.scheduler.failed_refresh_count,
            self.metrics.snapshot()["counters"],
        )


def build_runtime(settings: Settings) -> SessionRuntime:
    """Wire the session components from settings.

    Args:
        settings: Validated application settings.

    Returns:
        SessionRuntime ready to start.
    """
    event_bus = EventBus()
    metrics = SessionMetrics()
    credential_store = create_credential_store(settings.credential_store)
    manager = SessionManager(
        settings.session,
        credential_store=credential_store,
        refresh_executor=create_refresh_executor(settings.oidc),
        event_bus=event_bus,
        metrics=metrics,
    )
    scheduler = RefreshScheduler(manager, settings.session)
    manager.attach_scheduler(scheduler)

    return SessionRuntime(
        settings=settings,
        manager=manager,
        scheduler=scheduler,
        credential_store=credential_store,
        event_bus=event_bus,
        metrics=metrics,
        shutdown_timeout=float(
            os.environ.get("SSOKEEPER_SHUTDOWN_TIMEOUT", DEFAULT_SHUTDOWN_TIMEOUT)
        ),
    )


# Global shutdown event for signal handlers
_shutdown_event: asyncio.Event | None = None


def _handle_shutdown(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    logger.info("Shutdown signal received (signal=%d)", signum)
    if _shutdown_event is not None:
        _shutdown_event.get_loop().call_soon_threadsafe(_shutdown_event.set)


async def _async_main(shutdown_event: asyncio.Event, settings: Settings) -> None:
    """Async entry point for the service.

    Args:
        shutdown_event: Event to signal shutdown request.
        settings: Validated service settings.
    """
    runtime = build_runtime(settings)
    await runtime.start()
    try:
        await shutdown_event.wait()
    finally:
        await runtime.stop()


def configure_logging(settings: Settings) -> None:
    """Apply the configured log level to the root logger."""
    logging.getLogger().setLevel(settings.log_level)
    logger.debug("Log level set: level=%s", settings.log_level)


def run() -> NoReturn:
    """Run the service process.

    Loads configuration from the environment, sets up logging from it,
    registers signal handlers and runs until SIGTERM/SIGINT.
    """
    global _shutdown_event

    from ssokeeper.core.settings import get_settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = get_settings()
    configure_logging(settings)

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    logger.info("ssokeeper starting...")

    async def _run_with_event() -> None:
        global _shutdown_event
        _shutdown_event = asyncio.Event()
        await _async_main(_shutdown_event, settings)

    try:
        asyncio.run(_run_with_event())
    except KeyboardInterrupt:
        logger.info("ssokeeper interrupted")
    except Exception as e:
        logger.exception("ssokeeper failed: %s", e)
        sys.exit(1)

    logger.info("ssokeeper shutdown complete")
    sys.exit(0)


if __name__ == "__main__":
    run()
